"""M/M/1 queue analytics.

Pure functions over rates and appointment snapshots; nothing here touches
the store or the cache.

    rho = lambda / mu
    L   = rho / (1 - rho)        Lq = rho^2 / (1 - rho)
    W   = 1 / (mu - lambda)      Wq = rho / (mu - lambda)

The closed forms only hold for rho < 1.  At or above saturation the
denominators are non-positive, so the metrics are left undefined and wait
estimates switch to ``mean service time x patients ahead``.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, NamedTuple, Optional

import config
from models import Appointment, AppointmentStatus


@dataclass
class QueueMetrics:
    arrival_rate: float
    service_rate: float
    utilization: float
    is_stable: bool
    avg_number_in_system: Optional[float] = None  # L
    avg_number_in_queue: Optional[float] = None  # Lq
    avg_time_in_system: Optional[float] = None  # W, hours
    avg_time_in_queue: Optional[float] = None  # Wq, hours

    @property
    def wait_in_system_minutes(self) -> Optional[float]:
        return None if self.avg_time_in_system is None else self.avg_time_in_system * 60.0

    @property
    def wait_in_queue_minutes(self) -> Optional[float]:
        return None if self.avg_time_in_queue is None else self.avg_time_in_queue * 60.0


def mm1(arrival_rate: float, service_rate: float) -> QueueMetrics:
    """Closed-form M/M/1 metrics, or an unstable result with no closed forms."""
    if service_rate <= 0:
        raise ValueError(f"service rate must be positive, got {service_rate}")
    if arrival_rate < 0:
        raise ValueError(f"arrival rate must be non-negative, got {arrival_rate}")

    rho = arrival_rate / service_rate
    if rho >= 1.0:
        return QueueMetrics(arrival_rate, service_rate, rho, is_stable=False)

    spare = service_rate - arrival_rate
    return QueueMetrics(
        arrival_rate=arrival_rate,
        service_rate=service_rate,
        utilization=rho,
        is_stable=True,
        avg_number_in_system=rho / (1.0 - rho),
        avg_number_in_queue=rho * rho / (1.0 - rho),
        avg_time_in_system=1.0 / spare,
        avg_time_in_queue=rho / spare,
    )


class Position(NamedTuple):
    position: int
    ahead_count: int
    queue_length: int


def queue_position(appointments: Iterable[Appointment], target: Appointment) -> Position:
    """Where ``target`` stands among the same provider-day appointments.

    Appointments ahead are those with a smaller token that are still in
    the queue (not cancelled, no-show or completed).  Untokened targets
    are ordered by scheduled time instead.
    """
    ahead = 0
    length = 0
    for other in appointments:
        if not other.status.blocks_queue:
            continue
        length += 1
        if other.id == target.id:
            continue
        if target.token_number is not None and other.token_number is not None:
            if other.token_number < target.token_number:
                ahead += 1
        elif other.scheduled_at < target.scheduled_at:
            ahead += 1
    return Position(position=ahead + 1, ahead_count=ahead, queue_length=length)


def estimate_wait_minutes(
    metrics: QueueMetrics,
    ahead_count: int,
    mean_service_minutes: float,
    status: AppointmentStatus = AppointmentStatus.scheduled,
    checked_in_at: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> float:
    """Minutes until this appointment is likely to be seen.

    Stable queues use ``Wq x ahead_count``; unstable ones use the observed
    mean consultation length instead.  Time already spent waiting since
    check-in is credited.  Never negative or infinite.
    """
    if not status.blocks_queue or status is AppointmentStatus.in_progress:
        return 0.0

    if metrics.is_stable:
        per_patient = metrics.wait_in_queue_minutes
    else:
        per_patient = mean_service_minutes
    wait = per_patient * ahead_count

    if checked_in_at is not None:
        now = now or datetime.now()
        elapsed = max((now - checked_in_at).total_seconds() / 60.0, 0.0)
        wait -= elapsed

    if not math.isfinite(wait):
        return 0.0
    return max(wait, 0.0)


def confidence(metrics: QueueMetrics, used_default_rates: bool) -> str:
    if not metrics.is_stable or used_default_rates:
        return "LOW"
    if metrics.utilization < config.HIGH_UTILIZATION_THRESHOLD:
        return "HIGH"
    return "MEDIUM"


class QueueSummary(NamedTuple):
    current_token: Optional[int]
    next_token: Optional[int]
    patients_waiting: int
    estimated_wait_minutes: float


def summarize_queue(
    appointments: List[Appointment], metrics: QueueMetrics, mean_service_minutes: float
) -> QueueSummary:
    """Display-board view of a provider's day."""
    serving = [a.token_number for a in appointments
               if a.status is AppointmentStatus.in_progress and a.token_number is not None]
    waiting = [a for a in appointments if a.status.is_waiting]
    waiting_tokens = [a.token_number for a in waiting if a.token_number is not None]

    if metrics.is_stable:
        estimate = metrics.wait_in_system_minutes
    else:
        estimate = mean_service_minutes * len(waiting)

    return QueueSummary(
        current_token=min(serving) if serving else None,
        next_token=min(waiting_tokens) if waiting_tokens else None,
        patients_waiting=len(waiting),
        estimated_wait_minutes=estimate if math.isfinite(estimate) else 0.0,
    )
