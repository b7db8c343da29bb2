import asyncio
from datetime import timedelta

import pytest

from activity import WEEKDAYS, ActivityLog, weekday_name


def test_weekday_names(clock):
    assert weekday_name(clock.now) == "Tue"
    assert weekday_name(clock.now - timedelta(days=2)) == "Sun"


def test_weekly_counts_cover_the_last_seven_days(store, alice, bob, clock):
    log = ActivityLog(store)
    now = clock.now

    async def run():
        for hours in (1, 2, 24, 72, 24 * 8):
            await log.log_activity(alice, "task_completed", {"minutes": 5}, at=now - timedelta(hours=hours))
        await log.log_activity(bob, "room_added", at=now - timedelta(hours=1))
        return await log.get_weekly_activity_counts(alice, now)

    counts = asyncio.run(run())
    assert list(counts) == WEEKDAYS
    assert counts["Tue"] == 2
    assert counts["Mon"] == 1
    assert counts["Sat"] == 1
    assert sum(counts.values()) == 4


def test_recent_activities_newest_first(store, alice, clock):
    log = ActivityLog(store)

    async def run():
        await log.log_activity(alice, "room_added", {"name": "Hall"}, at=clock.now - timedelta(minutes=10))
        await log.log_activity(alice, "room_completed", at=clock.now)
        await log.log_activity(alice, "focus_session", activity_id="fixed", at=clock.now - timedelta(days=1))
        await log.log_activity(alice, "focus_session", activity_id="fixed", at=clock.now - timedelta(days=1))
        return await log.get_recent_activities(alice, limit=10)

    entries = asyncio.run(run())
    assert [e.type for e in entries] == ["room_completed", "room_added", "focus_session"]
    assert entries[1].data == {"name": "Hall"}


def test_unknown_type_is_rejected(store, alice):
    with pytest.raises(ValueError):
        asyncio.run(ActivityLog(store).log_activity(alice, "sneezed"))


def test_without_user_or_backend(offline_store, store, alice):
    async def run():
        return (
            await ActivityLog(offline_store).log_activity(alice, "task_completed"),
            await ActivityLog(store).log_activity(None, "task_completed"),
            await ActivityLog(offline_store).get_weekly_activity_counts(alice),
            await ActivityLog(store).get_recent_activities(None),
        )

    assert asyncio.run(run()) == (False, False, {}, [])
