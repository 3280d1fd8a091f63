# Scheduled-message sweep tests: fire-time arithmetic, the trailing one-hour window, scan window and dedup.
from __future__ import annotations

from contextlib import contextmanager
from datetime import date, datetime, time, timezone
from zoneinfo import ZoneInfo

import pytest

from app import ledger, models, sweepers
from app.sweepers import compute_fire_time, is_due, sweep_scheduled_messages


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


# Helper: the stock "day before arrival at 09:00" trigger
def day_before_trigger(make_trigger, template, **kwargs):
    return make_trigger(
        template,
        trigger_type="time_based",
        offset_value=1,
        offset_unit="days",
        reference="before_checkin",
        send_time=time(9, 0),
        **kwargs,
    )


def test_compute_fire_time_day_before_checkin():
    fire_at = compute_fire_time(date(2025, 12, 15), date(2025, 12, 18), 1, "days", "before_checkin", time(9, 0))
    assert fire_at == utc(2025, 12, 14, 9, 0)


# The offset picks the day; send_time always sets the time of day
def test_compute_fire_time_hours_and_after_references():
    hours = compute_fire_time(date(2025, 12, 15), date(2025, 12, 18), 3, "hours", "before_checkin", time(10, 0))
    assert hours == utc(2025, 12, 14, 10, 0)

    after_checkout = compute_fire_time(date(2025, 12, 15), date(2025, 12, 18), 2, "days", "after_checkout", time(12, 0))
    assert after_checkout == utc(2025, 12, 20, 12, 0)

    before_checkout = compute_fire_time(date(2025, 12, 15), date(2025, 12, 18), 0, "days", "before_checkout", time(8, 30))
    assert before_checkout == utc(2025, 12, 18, 8, 30)

    after_checkin = compute_fire_time(date(2025, 12, 15), date(2025, 12, 18), 1, "days", "after_checkin", time(18, 0))
    assert after_checkin == utc(2025, 12, 16, 18, 0)


# Local send times are interpreted in the configured zone
def test_compute_fire_time_in_local_zone():
    fire_at = compute_fire_time(
        date(2025, 12, 15),
        date(2025, 12, 18),
        1,
        "days",
        "before_checkin",
        time(9, 0),
        tz=ZoneInfo("Asia/Kuala_Lumpur"),
    )
    assert fire_at == utc(2025, 12, 14, 1, 0)


def test_compute_fire_time_rejects_unknown_values():
    with pytest.raises(ValueError):
        compute_fire_time(date(2025, 12, 15), date(2025, 12, 18), 1, "days", "during_stay", time(9, 0))
    with pytest.raises(ValueError):
        compute_fire_time(date(2025, 12, 15), date(2025, 12, 18), 1, "weeks", "before_checkin", time(9, 0))


# Window is [now - 1h, now], inclusive at both ends
def test_is_due_window_edges():
    fire_at = utc(2025, 12, 14, 9, 0)
    assert is_due(fire_at, utc(2025, 12, 14, 9, 0))
    assert is_due(fire_at, utc(2025, 12, 14, 10, 0))
    assert not is_due(fire_at, utc(2025, 12, 14, 10, 0, 1))
    assert not is_due(fire_at, utc(2025, 12, 14, 8, 59))


# 09:00 fire time: a 09:30 sweep sends it, an 11:01 sweep does not
def test_sweep_window_boundary(db, org, make_property, make_booking, make_template, make_trigger, transport):
    booking = make_booking(make_property())
    day_before_trigger(make_trigger, make_template(title="Pre-arrival Info"))

    late = sweep_scheduled_messages(now=utc(2025, 12, 14, 11, 1), db=db)
    assert (late.processed, late.sent, late.skipped, late.failed) == (1, 0, 1, 0)
    assert transport.calls == 0

    on_time = sweep_scheduled_messages(now=utc(2025, 12, 14, 9, 30), db=db)
    assert (on_time.processed, on_time.sent, on_time.skipped, on_time.failed) == (1, 1, 0, 0)
    assert transport.sent[0]["subject"] == "Check-in Tomorrow - Sunset Villa"
    assert transport.sent[0]["to"] == booking.guest_email


# Overlapping sweeps inside the same window never re-send a delivered pair
def test_repeat_sweep_does_not_resend(db, org, make_property, make_booking, make_template, make_trigger, transport):
    booking = make_booking(make_property())
    trigger = day_before_trigger(make_trigger, make_template())

    first = sweep_scheduled_messages(now=utc(2025, 12, 14, 9, 30), db=db)
    second = sweep_scheduled_messages(now=utc(2025, 12, 14, 9, 45), db=db)

    assert first.sent == 1
    assert (second.sent, second.skipped) == (0, 1)
    assert transport.calls == 1
    assert ledger.has_sent(db, booking.id, trigger.id)


# A failed send stays eligible and goes out on the next sweep inside the window
def test_failed_send_is_picked_up_by_next_sweep(db, org, make_property, make_booking, make_template, make_trigger, transport):
    booking = make_booking(make_property())
    day_before_trigger(make_trigger, make_template())

    transport.fail_with = "Provider outage"
    failed = sweep_scheduled_messages(now=utc(2025, 12, 14, 9, 10), db=db)
    assert (failed.sent, failed.failed) == (0, 1)

    transport.fail_with = None
    recovered = sweep_scheduled_messages(now=utc(2025, 12, 14, 9, 50), db=db)
    assert (recovered.sent, recovered.failed) == (1, 0)

    statuses = sorted(
        m.status for m in db.query(models.SentMessage).filter(models.SentMessage.booking_id == booking.id)
    )
    assert statuses == ["failed", "sent"]


# Bookings without email, outside the trigger's properties, or outside the scan window are not considered
def test_sweep_candidate_filtering(db, org, make_property, make_booking, make_template, make_trigger, transport):
    villa = make_property("Sunset Villa")
    loft = make_property("Hillside Loft")
    make_booking(villa)
    make_booking(villa, guest_email=None, check_in=date(2025, 12, 20), check_out=date(2025, 12, 22))
    make_booking(loft)
    day_before_trigger(make_trigger, make_template(), properties=[villa])

    stats = sweep_scheduled_messages(now=utc(2025, 12, 14, 9, 30), db=db)

    assert stats.processed == 1
    assert stats.sent == 1
    assert [e["subject"] for e in transport.sent] == ["Booking Confirmed - Sunset Villa"]


# A 60-day-ahead reminder falls outside the 30-day lookahead and is never discovered
def test_scan_window_bounds_discovery(db, org, make_property, make_booking, make_template, make_trigger, transport):
    make_booking(make_property(), check_in=date(2026, 2, 1), check_out=date(2026, 2, 3))
    make_trigger(
        make_template(),
        trigger_type="time_based",
        offset_value=60,
        offset_unit="days",
        reference="before_checkin",
        send_time=time(9, 0),
    )

    stats = sweep_scheduled_messages(now=utc(2025, 12, 3, 9, 30), db=db)

    assert stats.processed == 0
    assert transport.calls == 0


# Inactive and event triggers are not part of the sweep
def test_sweep_ignores_inactive_and_event_triggers(db, org, make_property, make_booking, make_template, make_trigger, transport):
    make_booking(make_property())
    template = make_template()
    day_before_trigger(make_trigger, template, is_active=False)
    make_trigger(template, event_type="booking_confirmed")

    stats = sweep_scheduled_messages(now=utc(2025, 12, 14, 9, 30), db=db)

    assert stats.model_dump() == {"processed": 0, "sent": 0, "failed": 0, "skipped": 0}
    assert transport.calls == 0


# Naive datetimes are read as UTC
def test_sweep_accepts_naive_now(db, org, make_property, make_booking, make_template, make_trigger, transport):
    make_booking(make_property())
    day_before_trigger(make_trigger, make_template())

    stats = sweep_scheduled_messages(now=datetime(2025, 12, 14, 9, 30), db=db)

    assert stats.sent == 1


# Another process holding the sweep lock turns this run into a no-op
def test_sweep_skips_when_lock_held(db, org, make_property, make_booking, make_template, make_trigger, transport, monkeypatch):
    make_booking(make_property())
    day_before_trigger(make_trigger, make_template())

    @contextmanager
    def held_elsewhere(key, ttl_ms=5000):
        yield False

    monkeypatch.setattr(sweepers, "try_lock", held_elsewhere)

    stats = sweep_scheduled_messages(now=utc(2025, 12, 14, 9, 30), db=db)

    assert stats.processed == 0
    assert transport.calls == 0
