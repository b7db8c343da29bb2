from datetime import date, datetime, timedelta, timezone

from bson.timestamp import Timestamp

from timestamps import SERVER_TIMESTAMP, resolve_server_timestamps, to_date, to_server_value, utcnow


def test_round_trip_keeps_milliseconds():
    d = datetime(2026, 1, 2, 3, 4, 5, 678901, tzinfo=timezone.utc)
    assert to_date(to_server_value(d)) == d.replace(microsecond=678000)


def test_naive_values_from_driver_are_utc():
    stored = datetime(2026, 1, 2, 3, 4, 5, 678000)
    assert to_date(stored) == stored.replace(tzinfo=timezone.utc)


def test_other_offsets_normalized():
    d = datetime(2026, 1, 2, 12, 0, tzinfo=timezone(timedelta(hours=2)))
    assert to_server_value(d) == datetime(2026, 1, 2, 10, 0, tzinfo=timezone.utc)


def test_none_stays_none_on_encode():
    assert to_server_value(None) is None


def test_optional_missing_field_is_none_not_now():
    assert to_date(None, optional=True) is None
    assert to_date(SERVER_TIMESTAMP, optional=True) is None


def test_required_missing_field_is_now():
    before = utcnow()
    assert to_date(None) >= before


def test_other_encodings():
    assert to_date("2026-01-02T03:04:05Z") == datetime(2026, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    assert to_date(0) == datetime(1970, 1, 1, tzinfo=timezone.utc)
    assert to_date(date(2026, 5, 1)) == datetime(2026, 5, 1, tzinfo=timezone.utc)
    assert to_date(Timestamp(10, 1)) == datetime(1970, 1, 1, 0, 0, 10, tzinfo=timezone.utc)


def test_garbage_on_optional_field_is_none():
    assert to_date("yesterday-ish", optional=True) is None


def test_resolve_server_timestamps_nested():
    now = datetime(2026, 1, 1, tzinfo=timezone.utc)
    doc = {"a": SERVER_TIMESTAMP, "b": [{"c": SERVER_TIMESTAMP}], "d": 1}
    assert resolve_server_timestamps(doc, now) == {"a": now, "b": [{"c": now}], "d": 1}
