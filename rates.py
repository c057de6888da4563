"""Historical rate estimation.

Service rate (mu) is completed-appointment throughput over a trailing
window; arrival rate (lambda) is the day's booked load over the provider's
operating hours.  Both fall back to configured defaults when there are too
few samples to be meaningful, flagging ``is_default`` instead of raising.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import date, datetime, time, timedelta
from statistics import mean
from typing import Any, Dict, List, Optional, Tuple

from sqlmodel import Session

import config
from models import ProviderSchedule
from store import find_completed_in_window, find_provider_day, find_schedules

logger = logging.getLogger(__name__)


@dataclass
class RateEstimate:
    """A rate in patients/hour and the evidence behind it."""

    value: float
    samples: int
    hours: float = 0.0
    is_default: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RateEstimate":
        return cls(**data)


def _span_hours(start: time, end: time) -> float:
    today = date.today()
    delta = datetime.combine(today, end) - datetime.combine(today, start)
    return max(delta.total_seconds() / 3600.0, 0.0)


def _schedule_hours(schedule: ProviderSchedule) -> float:
    hours = _span_hours(schedule.start_time, schedule.end_time)
    if schedule.break_start_time and schedule.break_end_time:
        hours -= _span_hours(schedule.break_start_time, schedule.break_end_time)
    return max(hours, 0.0)


def _hours_on(schedules: List[ProviderSchedule], day: date) -> float:
    if not schedules:
        return config.DEFAULT_OPERATING_HOURS
    hours = sum(
        _schedule_hours(s) for s in schedules
        if s.day_of_week == day.weekday() and s.is_available
    )
    # Appointments on an unscheduled day still need a positive denominator
    return hours if hours > 0 else config.DEFAULT_OPERATING_HOURS


def operating_hours(session: Session, tenant_id: str, provider_id: str, day: date) -> float:
    return _hours_on(find_schedules(session, tenant_id, provider_id), day)


def operating_window(session: Session, tenant_id: str, provider_id: str, day: date) -> Tuple[time, time]:
    """Earliest start and latest end of the provider's schedule on ``day``."""
    active = [
        s for s in find_schedules(session, tenant_id, provider_id)
        if s.day_of_week == day.weekday() and s.is_available
    ]
    if not active:
        return config.DEFAULT_DAY_START, config.DEFAULT_DAY_END
    return min(s.start_time for s in active), max(s.end_time for s in active)


def _window(today: date) -> Tuple[datetime, datetime]:
    start = datetime.combine(today - timedelta(days=config.SERVICE_RATE_WINDOW_DAYS), time.min)
    end = datetime.combine(today + timedelta(days=1), time.min)
    return start, end


def service_rate(session: Session, tenant_id: str, provider_id: str, today: Optional[date] = None) -> RateEstimate:
    """Estimate mu from completions over the trailing window.

    The denominator is provider-active hours: operating hours summed over
    the distinct days on which the provider completed appointments.
    """
    today = today or date.today()
    start, end = _window(today)
    completed = find_completed_in_window(session, tenant_id, provider_id, start, end)
    samples = len(completed)

    if samples < config.MIN_SERVICE_SAMPLES:
        logger.debug(
            "Insufficient history for service rate: provider=%s samples=%d, using default %.2f/hr",
            provider_id, samples, config.DEFAULT_SERVICE_RATE,
        )
        return RateEstimate(value=config.DEFAULT_SERVICE_RATE, samples=samples, is_default=True)

    schedules = find_schedules(session, tenant_id, provider_id)
    active_days = {a.completed_at.date() for a in completed}
    hours = sum(_hours_on(schedules, d) for d in active_days)
    rate = max(samples / hours, config.MIN_SERVICE_RATE)

    logger.debug("Service rate for provider %s: %.3f patients/hour (%d over %.1fh)", provider_id, rate, samples, hours)
    return RateEstimate(value=rate, samples=samples, hours=hours)


def arrival_rate(session: Session, tenant_id: str, provider_id: str, day: Optional[date] = None) -> RateEstimate:
    """Estimate lambda from the day's non-cancelled bookings."""
    day = day or date.today()
    appointments = find_provider_day(session, tenant_id, provider_id, day)
    samples = sum(1 for a in appointments if a.status.counts_as_arrival)

    if samples < config.MIN_ARRIVAL_SAMPLES:
        return RateEstimate(value=config.DEFAULT_ARRIVAL_RATE, samples=samples, is_default=True)

    hours = operating_hours(session, tenant_id, provider_id, day)
    rate = samples / hours
    logger.debug("Arrival rate for provider %s on %s: %.3f patients/hour", provider_id, day, rate)
    return RateEstimate(value=rate, samples=samples, hours=hours)


def mean_service_minutes(
    session: Session,
    tenant_id: str,
    provider_id: str,
    today: Optional[date] = None,
    fallback_rate: Optional[float] = None,
) -> float:
    """Average observed consultation length in minutes.

    Uses completions in the service-rate window that recorded a start time;
    otherwise derives it from ``fallback_rate`` (or the default mu).
    """
    today = today or date.today()
    start, end = _window(today)
    durations = [
        (a.completed_at - a.started_at).total_seconds() / 60.0
        for a in find_completed_in_window(session, tenant_id, provider_id, start, end)
        if a.started_at is not None and a.completed_at > a.started_at
    ]
    if durations:
        return mean(durations)
    rate = fallback_rate if fallback_rate and fallback_rate > 0 else config.DEFAULT_SERVICE_RATE
    return 60.0 / rate
