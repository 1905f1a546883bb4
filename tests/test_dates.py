from datetime import datetime, timedelta, timezone

from lending.utils.dates import parse_datetime, to_iso


def test_to_iso_is_fixed_width():
    assert to_iso(datetime(999, 1, 2, 3, 4, 5, tzinfo=timezone.utc)) == "0999-01-02T03:04:05.000000Z"
    assert to_iso(datetime(2030, 3, 1, 12, 0, tzinfo=timezone.utc)) == "2030-03-01T12:00:00.000000Z"
    assert to_iso(None) is None


def test_to_iso_round_trips_through_parse():
    value = datetime(42, 7, 8, 9, 10, 11, 123456, tzinfo=timezone.utc)
    assert parse_datetime(to_iso(value)) == value


def test_to_iso_normalises_to_utc():
    local = datetime(2030, 1, 1, 2, 0, tzinfo=timezone(timedelta(hours=2)))
    assert to_iso(local) == "2030-01-01T00:00:00.000000Z"
    assert to_iso(datetime(2030, 1, 1)) == "2030-01-01T00:00:00.000000Z"
