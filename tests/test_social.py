import asyncio
from datetime import timedelta

import pytest

from schemas import Room
from social import SocialCoordinator, can_transition, connection_id


@pytest.fixture
def social(store, clock):
    return SocialCoordinator(store, clock=clock)


def _participants(challenge):
    return [(p.user_id, p.progress, p.completed) for p in challenge.participants]


def test_create_and_join_challenge(social, alice, bob):
    async def run():
        created = await social.create_challenge(alice, "tasks_count", "Ten tasks", "", 10, 7)
        joined = await social.join_challenge(bob, created.invite_code.lower())
        again = await social.join_challenge(bob, created.invite_code)
        mine = await social.get_my_challenges(bob)
        return created, joined, again, mine

    created, joined, again, mine = asyncio.run(run())
    assert created.status == "in_progress"
    assert created.participants[0].user_id == "alice"
    assert [p.user_id for p in joined.participants] == ["alice", "bob"]
    assert again is None
    assert [c.id for c in mine] == [created.id]


def test_joining_an_expired_challenge_fails_without_mutation(social, store, alice, bob, clock):
    async def run():
        created = await social.create_challenge(alice, "streak", "Three days", "", 3, 1)
        clock.advance(days=2)
        joined = await social.join_challenge(bob, created.invite_code)
        return joined, await social.get_challenge(created.id)

    joined, stored = asyncio.run(run())
    assert joined is None
    assert [p.user_id for p in stored.participants] == ["alice"]


def test_progress_is_monotonic_and_completion_sticks(social, alice, bob, clock):
    async def run():
        c = await social.create_challenge(alice, "tasks_count", "Five tasks", "", 5, 7)
        await social.join_challenge(bob, c.invite_code)
        await social.update_challenge_progress(alice, c.id, 3)
        lowered = await social.update_challenge_progress(alice, c.id, 1)
        done = await social.update_challenge_progress(alice, c.id, 5)
        clock.advance(minutes=5)
        more = await social.update_challenge_progress(alice, c.id, 6)
        stranger = await social.update_challenge_progress(bob.model_copy(update={"uid": "eve"}), c.id, 2)
        return lowered, done, more, stranger

    lowered, done, more, stranger = asyncio.run(run())
    assert _participants(lowered)[0] == ("alice", 3, False)
    assert _participants(done)[0] == ("alice", 5, True)
    assert done.status == "in_progress"
    assert _participants(more)[0] == ("alice", 6, True)
    assert more.participants[0].completed_at == done.participants[0].completed_at
    assert stranger is None


def test_concurrent_progress_updates_are_both_kept(social, alice, bob):
    async def run():
        c = await social.create_challenge(alice, "time_spent", "Minutes", "", 100, 7)
        await social.join_challenge(bob, c.invite_code)
        await asyncio.gather(
            social.update_challenge_progress(alice, c.id, 40),
            social.update_challenge_progress(bob, c.id, 60),
        )
        return await social.get_challenge(c.id)

    assert sorted(_participants(asyncio.run(run()))) == [("alice", 40, False), ("bob", 60, False)]


def test_everyone_finishing_completes_the_challenge_at_close(social, alice, bob, clock):
    async def run():
        c = await social.create_challenge(alice, "tasks_count", "Two", "", 2, 7)
        await social.join_challenge(bob, c.invite_code)
        await social.update_challenge_progress(alice, c.id, 2)
        both = await social.update_challenge_progress(bob, c.id, 2)
        clock.advance(days=8)
        return both, await social.close_challenge(c.id)

    both, closed = asyncio.run(run())
    assert [p.completed for p in both.participants] == [True, True]
    assert both.status == "in_progress"
    assert closed.status == "completed"


def test_finishing_early_keeps_the_challenge_open_to_joiners(social, alice, bob, clock):
    async def run():
        c = await social.create_challenge(alice, "tasks_count", "Sprint", "", 5, 7)
        done = await social.update_challenge_progress(alice, c.id, 5)
        clock.advance(hours=1)
        return done, await social.join_challenge(bob, c.invite_code)

    done, joined = asyncio.run(run())
    assert done.status == "in_progress"
    assert joined is not None
    assert [p.user_id for p in joined.participants] == ["alice", "bob"]


@pytest.mark.parametrize("progress,expected", [(None, "expired"), (1, "failed"), (2, "completed")])
def test_closing_after_the_window(social, alice, clock, progress, expected):
    async def run():
        c = await social.create_challenge(alice, "tasks_count", "Solo", "", 2, 1)
        if progress is not None:
            await social.update_challenge_progress(alice, c.id, progress)
        early = await social.close_challenge(c.id)
        clock.advance(days=2)
        closed = await social.close_challenge(c.id)
        twice = await social.close_challenge(c.id)
        return early, closed, twice

    early, closed, twice = asyncio.run(run())
    assert early is None
    assert closed.status == expected
    assert twice is None


def test_status_transitions_only_move_forward():
    assert can_transition("pending", "in_progress")
    assert can_transition("in_progress", "expired")
    assert not can_transition("completed", "in_progress")
    assert not can_transition("expired", "failed")
    assert not can_transition("in_progress", "pending")


def test_last_session_slot_goes_to_exactly_one(social, alice, bob, carol):
    async def run():
        session = await social.create_session(alice, "Tidy hour", 60, max_participants=2)
        results = await asyncio.gather(
            social.join_session(bob, session.invite_code),
            social.join_session(carol, session.invite_code),
        )
        return results, await social.get_session(session.id)

    results, stored = asyncio.run(run())
    assert sum(1 for r in results if r is not None) == 1
    assert stored.active_count == 2
    assert len(stored.participants) == 2


def test_session_rejoin_and_leave(social, alice, bob):
    async def run():
        session = await social.create_session(alice, "Laundry", 30, max_participants=2)
        first = await social.join_session(bob, session.invite_code)
        again = await social.join_session(bob, session.invite_code)
        left = await social.leave_session(bob, session.id)
        left_twice = await social.leave_session(bob, session.id)
        back = await social.join_session(bob, session.invite_code)
        return first, again, left, left_twice, back

    first, again, left, left_twice, back = asyncio.run(run())
    assert first.active_count == 2
    assert again.id == first.id and again.active_count == 2
    assert (left, left_twice) == (True, False)
    assert [p.user_id for p in back.participants] == ["alice", "bob"]
    assert back.active_count == 2


def test_only_the_host_starts_and_ends(social, alice, bob, clock):
    async def run():
        session = await social.create_session(alice, "Later", 25, scheduled_at=clock.now + timedelta(hours=1))
        bob_start = await social.start_session(bob, session.id)
        started = await social.start_session(alice, session.id)
        bob_end = await social.end_session(bob, session.id)
        ended = await social.end_session(alice, session.id)
        rejoin = await social.join_session(bob, session.invite_code)
        active = await social.get_active_sessions()
        return session, bob_start, started, bob_end, ended, rejoin, active

    session, bob_start, started, bob_end, ended, rejoin, active = asyncio.run(run())
    assert session.status == "scheduled" and session.started_at is None
    assert bob_start is None
    assert started.status == "active" and started.started_at == clock.now
    assert (bob_end, ended) == (False, True)
    assert rejoin is None
    assert active == []


def test_session_past_its_duration_cannot_be_joined(social, alice, bob, clock):
    async def run():
        session = await social.create_session(alice, "Sprint", 15)
        clock.advance(minutes=16)
        return await social.join_session(bob, session.invite_code)

    assert asyncio.run(run()) is None


def test_shared_room_membership(social, alice, bob, clock):
    room = Room(id="r1", name="Living room", type="living", emoji="🛋️", created_at=clock.now)

    async def run():
        shared = await social.share_room(alice, room)
        owner = await social.join_shared_room(alice, shared.invite_code)
        first = await social.join_shared_room(bob, shared.invite_code)
        second = await social.join_shared_room(bob, shared.invite_code)
        return owner, first, second, await social.get_shared_with_me(bob)

    owner, first, second, visible = asyncio.run(run())
    assert owner.shared_with == []
    assert first.shared_with == ["bob"]
    assert second.shared_with == ["bob"]
    assert [s.room_name for s in visible] == ["Living room"]


def test_connections(social, store, alice, bob):
    async def run():
        await store.set("users/bob", {"name": "Bobby", "avatar": "bob.png"})
        added = await social.add_connection(alice, "bob")
        self_link = await social.add_connection(alice, "alice")
        challenge = await social.create_challenge(alice, "tasks_count", "Pair", "", 3, 7)
        await social.join_challenge(bob, challenge.invite_code)
        mine = await social.get_connections(alice)
        theirs = await social.get_connections(bob)
        removed = await social.remove_connection(bob, "alice")
        return added, self_link, mine, theirs, removed, await social.get_connections(alice)

    added, self_link, mine, theirs, removed, after = asyncio.run(run())
    assert connection_id("bob", "alice") == "alice_bob"
    assert (added, self_link, removed) == (True, False, True)
    assert [(c.user_id, c.display_name, c.avatar_url, c.mutual_challenges) for c in mine] == [
        ("bob", "Bobby", "bob.png", 1)
    ]
    assert [c.user_id for c in theirs] == ["alice"]
    assert after == []


def test_signed_out_and_offline_degrade(offline_store, store, alice):
    offline = SocialCoordinator(offline_store)
    online = SocialCoordinator(store)

    async def run():
        return (
            await offline.create_challenge(alice, "streak", "x", "", 1, 1),
            await offline.get_my_challenges(alice),
            await offline.end_session(alice, "s1"),
            await online.join_challenge(None, "ABCDEF"),
            await online.get_shared_with_me(None),
        )

    assert asyncio.run(run()) == (None, [], False, None, [])


def test_user_passed_by_keyword_is_honoured(social, alice):
    async def run():
        created = await social.create_challenge(
            user=alice, type="streak", title="Daily tidy", description="", target=1, duration_days=1
        )
        return created, await social.get_challenge(created.id)

    created, stored = asyncio.run(run())
    assert created.creator_id == "alice"
    assert stored.title == "Daily tidy"


def test_malformed_session_is_skipped_in_listing(social, store, alice, clock, caplog):
    async def run():
        await store.set("bodyDoublingSessions/broken", {"id": "broken", "status": "active", "created_at": clock.now})
        good = await social.create_session(alice, "Desk", 25)
        return good, await social.get_active_sessions()

    with caplog.at_level("WARNING", logger="social"):
        good, active = asyncio.run(run())
    assert [s.id for s in active] == [good.id]
    assert "broken" in caplog.text
