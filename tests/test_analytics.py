from datetime import datetime, timedelta

import pytest

from analytics import confidence, estimate_wait_minutes, mm1, queue_position, summarize_queue
from models import Appointment, AppointmentStatus

NOW = datetime(2026, 3, 10, 11, 0)


def appt(id, token, status=AppointmentStatus.scheduled, minute=0):
    return Appointment(
        id=id,
        tenant_id="clinic-1",
        provider_id="dr-a",
        scheduled_at=NOW.replace(hour=9) + timedelta(minutes=minute),
        status=status,
        token_number=token,
    )


# ===== M/M/1 =====

def test_mm1_closed_forms():
    m = mm1(5.0, 6.0)

    assert m.is_stable
    assert m.utilization == pytest.approx(5 / 6)
    assert m.avg_number_in_system == pytest.approx(5.0)
    assert m.avg_number_in_queue == pytest.approx(4.1667, abs=1e-4)
    assert m.wait_in_system_minutes == pytest.approx(60.0)
    assert m.wait_in_queue_minutes == pytest.approx(50.0)


def test_mm1_satisfies_littles_law():
    for lam, mu in [(5.0, 6.0), (0.5, 4.0), (3.9, 4.0)]:
        m = mm1(lam, mu)
        assert m.avg_number_in_system == pytest.approx(lam * m.avg_time_in_system)
        assert m.avg_number_in_queue == pytest.approx(lam * m.avg_time_in_queue)


def test_mm1_idle_queue():
    m = mm1(0.0, 4.0)
    assert m.is_stable
    assert m.avg_number_in_system == 0
    assert m.wait_in_system_minutes == pytest.approx(15.0)
    assert m.wait_in_queue_minutes == 0


@pytest.mark.parametrize("lam,mu", [(10.0, 8.0), (4.0, 4.0)])
def test_mm1_unstable_has_no_closed_forms(lam, mu):
    m = mm1(lam, mu)

    assert not m.is_stable
    assert m.utilization == pytest.approx(lam / mu)
    assert m.avg_number_in_system is None
    assert m.avg_number_in_queue is None
    assert m.wait_in_system_minutes is None
    assert m.wait_in_queue_minutes is None


@pytest.mark.parametrize("lam,mu", [(1.0, 0.0), (1.0, -2.0), (-1.0, 4.0)])
def test_mm1_rejects_invalid_rates(lam, mu):
    with pytest.raises(ValueError):
        mm1(lam, mu)


# ===== WAIT ESTIMATES =====

def test_stable_wait_is_wq_per_patient_ahead():
    assert estimate_wait_minutes(mm1(5.0, 6.0), 3, 0.0) == pytest.approx(150.0)


def test_unstable_wait_uses_mean_service_time():
    assert estimate_wait_minutes(mm1(10.0, 8.0), 4, 12.0) == pytest.approx(48.0)


def test_wait_credits_time_since_check_in():
    minutes = estimate_wait_minutes(
        mm1(5.0, 6.0), 3, 0.0,
        status=AppointmentStatus.confirmed,
        checked_in_at=NOW - timedelta(minutes=20),
        now=NOW,
    )
    assert minutes == pytest.approx(130.0)


def test_wait_never_goes_negative():
    minutes = estimate_wait_minutes(
        mm1(5.0, 6.0), 1, 0.0,
        status=AppointmentStatus.confirmed,
        checked_in_at=NOW - timedelta(hours=3),
        now=NOW,
    )
    assert minutes == 0.0


@pytest.mark.parametrize("status", [
    AppointmentStatus.in_progress,
    AppointmentStatus.completed,
    AppointmentStatus.cancelled,
    AppointmentStatus.no_show,
])
def test_no_wait_once_seen_or_out_of_queue(status):
    assert estimate_wait_minutes(mm1(5.0, 6.0), 3, 10.0, status=status) == 0.0


def test_first_in_line_waits_nothing():
    assert estimate_wait_minutes(mm1(5.0, 6.0), 0, 0.0) == 0.0


# ===== POSITION =====

def test_position_ignores_finished_and_cancelled():
    day = [
        appt(1, 1, AppointmentStatus.completed),
        appt(2, 2, AppointmentStatus.in_progress),
        appt(3, 3, AppointmentStatus.cancelled),
        appt(4, 4, AppointmentStatus.scheduled),
        appt(5, 5, AppointmentStatus.confirmed),
        appt(6, 6, AppointmentStatus.scheduled),
        appt(7, 7, AppointmentStatus.no_show),
    ]

    place = queue_position(day, day[4])

    assert place.ahead_count == 2
    assert place.position == 3
    assert place.queue_length == 4


def test_untokened_position_uses_scheduled_time():
    day = [appt(1, 1, minute=0), appt(2, 2, minute=60), appt(3, None, minute=30)]
    place = queue_position(day, day[2])
    assert place.ahead_count == 1
    assert place.position == 2


# ===== CONFIDENCE & SUMMARY =====

def test_confidence_levels():
    assert confidence(mm1(1.0, 4.0), used_default_rates=False) == "HIGH"
    assert confidence(mm1(3.6, 4.0), used_default_rates=False) == "MEDIUM"
    assert confidence(mm1(1.0, 4.0), used_default_rates=True) == "LOW"
    assert confidence(mm1(5.0, 4.0), used_default_rates=False) == "LOW"


def test_summary_for_stable_queue():
    day = [
        appt(1, 1, AppointmentStatus.completed),
        appt(2, 2, AppointmentStatus.in_progress),
        appt(3, 3, AppointmentStatus.confirmed),
        appt(4, 4, AppointmentStatus.scheduled),
        appt(5, 5, AppointmentStatus.cancelled),
    ]

    summary = summarize_queue(day, mm1(1.0, 4.0), 0.0)

    assert summary.current_token == 2
    assert summary.next_token == 3
    assert summary.patients_waiting == 2
    assert summary.estimated_wait_minutes == pytest.approx(20.0)


def test_summary_for_unstable_queue_uses_heuristic():
    day = [appt(i, i) for i in range(1, 4)]
    summary = summarize_queue(day, mm1(10.0, 8.0), 12.0)

    assert summary.current_token is None
    assert summary.next_token == 1
    assert summary.estimated_wait_minutes == pytest.approx(36.0)


def test_summary_for_empty_day():
    summary = summarize_queue([], mm1(0.0, 4.0), 0.0)
    assert summary.current_token is None
    assert summary.next_token is None
    assert summary.patients_waiting == 0
