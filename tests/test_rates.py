from datetime import time, timedelta

import pytest

import config
import rates
from conftest import FIXED_NOW, TODAY
from models import AppointmentStatus, ProviderSchedule
from store import open_session

YESTERDAY = TODAY - timedelta(days=1)


@pytest.fixture
def session(engine):
    with open_session(engine) as s:
        yield s


@pytest.fixture
def tuesday_schedule(engine):
    # TODAY is a Tuesday
    with open_session(engine, write=True) as s, s.begin():
        s.add(ProviderSchedule(
            tenant_id="clinic-1",
            provider_id="dr-a",
            day_of_week=TODAY.weekday(),
            start_time=time(9, 0),
            end_time=time(17, 0),
            break_start_time=time(12, 0),
            break_end_time=time(13, 0),
        ))


def test_service_rate_defaults_without_history(session):
    estimate = rates.service_rate(session, "clinic-1", "dr-a", TODAY)
    assert estimate.is_default
    assert estimate.value == config.DEFAULT_SERVICE_RATE
    assert estimate.samples == 0


def test_service_rate_defaults_below_minimum_samples(session, make_completed):
    make_completed(config.MIN_SERVICE_SAMPLES - 1, YESTERDAY)
    estimate = rates.service_rate(session, "clinic-1", "dr-a", TODAY)
    assert estimate.is_default
    assert estimate.samples == config.MIN_SERVICE_SAMPLES - 1


def test_service_rate_over_active_days(session, make_completed):
    make_completed(4, YESTERDAY)
    make_completed(4, TODAY - timedelta(days=3))

    estimate = rates.service_rate(session, "clinic-1", "dr-a", TODAY)

    assert not estimate.is_default
    assert estimate.samples == 8
    assert estimate.hours == pytest.approx(16.0)
    assert estimate.value == pytest.approx(0.5)


def test_service_rate_ignores_completions_outside_window(session, make_completed):
    make_completed(6, TODAY - timedelta(days=config.SERVICE_RATE_WINDOW_DAYS + 1))
    assert rates.service_rate(session, "clinic-1", "dr-a", TODAY).is_default


def test_service_rate_ignores_other_providers(session, make_completed):
    make_completed(6, YESTERDAY, provider_id="dr-b")
    assert rates.service_rate(session, "clinic-1", "dr-a", TODAY).is_default


def test_arrival_rate_counts_everything_but_cancellations(session, make_appointment):
    for status in (
        AppointmentStatus.scheduled,
        AppointmentStatus.scheduled,
        AppointmentStatus.confirmed,
        AppointmentStatus.completed,
        AppointmentStatus.no_show,
        AppointmentStatus.cancelled,
    ):
        make_appointment(scheduled_at=FIXED_NOW, status=status)

    estimate = rates.arrival_rate(session, "clinic-1", "dr-a", TODAY)

    assert estimate.samples == 5
    assert estimate.hours == pytest.approx(config.DEFAULT_OPERATING_HOURS)
    assert estimate.value == pytest.approx(5 / 8)


def test_arrival_rate_defaults_on_empty_day(session):
    estimate = rates.arrival_rate(session, "clinic-1", "dr-a", TODAY)
    assert estimate.is_default
    assert estimate.value == config.DEFAULT_ARRIVAL_RATE


def test_operating_hours_subtract_breaks(session, tuesday_schedule):
    assert rates.operating_hours(session, "clinic-1", "dr-a", TODAY) == pytest.approx(7.0)
    # Monday has no schedule row: fall back rather than divide by zero
    assert rates.operating_hours(session, "clinic-1", "dr-a", YESTERDAY) == config.DEFAULT_OPERATING_HOURS


def test_arrival_rate_uses_schedule_hours(session, tuesday_schedule, make_appointment):
    for _ in range(7):
        make_appointment(scheduled_at=FIXED_NOW)
    assert rates.arrival_rate(session, "clinic-1", "dr-a", TODAY).value == pytest.approx(1.0)


def test_operating_window(session, tuesday_schedule):
    assert rates.operating_window(session, "clinic-1", "dr-a", TODAY) == (time(9, 0), time(17, 0))
    assert rates.operating_window(session, "clinic-1", "dr-b", TODAY) == (
        config.DEFAULT_DAY_START, config.DEFAULT_DAY_END,
    )


def test_mean_service_minutes_from_history(session, make_completed):
    make_completed(5, YESTERDAY, minutes=12)
    assert rates.mean_service_minutes(session, "clinic-1", "dr-a", TODAY) == pytest.approx(12.0)


def test_mean_service_minutes_falls_back_to_rate(session):
    assert rates.mean_service_minutes(session, "clinic-1", "dr-a", TODAY, fallback_rate=5.0) == pytest.approx(12.0)
    assert rates.mean_service_minutes(session, "clinic-1", "dr-a", TODAY) == pytest.approx(
        60.0 / config.DEFAULT_SERVICE_RATE
    )


def test_rate_estimate_round_trips_through_dict():
    estimate = rates.RateEstimate(value=0.5, samples=8, hours=16.0)
    assert rates.RateEstimate.from_dict(estimate.to_dict()) == estimate
