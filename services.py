"""Queue business logic.

``QueueService`` ties the store, the rate estimator, the M/M/1 analytics
and the cache together.  Reads are cache-first; on a miss they hit the
store once and cache the derived view.  If the store cannot be read the
views degrade to ``available = False`` because queue figures are advisory.
Writes (bookings and status changes) propagate their errors and evict the
affected provider's cache entries afterwards.
"""

from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Callable, List, Optional, Tuple

from sqlmodel import Session

import config
import rates
from analytics import QueueMetrics, confidence, estimate_wait_minutes, mm1, queue_position, summarize_queue
from cache import (
    QueueCache,
    arrival_rate_key,
    position_key,
    service_rate_key,
    status_key,
    wait_key,
)
from exceptions import StorageUnavailable
from models import Appointment, AppointmentStatus
from rates import RateEstimate
from schemas import QueuePositionView, QueueStatusView, WaitEstimateView
from store import apply_status, find_provider_day, get_appointment, open_session, storage_errors
from tokens import assign_pending_tokens, book_appointment

logger = logging.getLogger(__name__)


class QueueService:
    def __init__(self, engine, cache: Optional[QueueCache] = None, clock: Callable[[], datetime] = datetime.now):
        self.engine = engine
        self.cache = cache or QueueCache(None)
        self.clock = clock

    # ===== RATES (cached) =====

    def service_rate(self, session: Session, tenant_id: str, provider_id: str, today: date) -> RateEstimate:
        key = service_rate_key(tenant_id, provider_id)
        cached, hit = self.cache.get(key)
        if hit:
            return RateEstimate.from_dict(cached)
        estimate = rates.service_rate(session, tenant_id, provider_id, today)
        self.cache.set(key, estimate.to_dict(), config.SERVICE_RATE_TTL)
        return estimate

    def arrival_rate(self, session: Session, tenant_id: str, provider_id: str, day: date) -> RateEstimate:
        key = arrival_rate_key(tenant_id, provider_id, day)
        cached, hit = self.cache.get(key)
        if hit:
            return RateEstimate.from_dict(cached)
        estimate = rates.arrival_rate(session, tenant_id, provider_id, day)
        self.cache.set(key, estimate.to_dict(), config.ARRIVAL_RATE_TTL)
        return estimate

    def _metrics(
        self, session: Session, tenant_id: str, provider_id: str, day: date
    ) -> Tuple[QueueMetrics, RateEstimate, RateEstimate]:
        service = self.service_rate(session, tenant_id, provider_id, self.clock().date())
        arrival = self.arrival_rate(session, tenant_id, provider_id, day)
        metrics = mm1(arrival.value, service.value)
        if not metrics.is_stable:
            logger.warning(
                "Queue unstable tenant=%s provider=%s date=%s rho=%.3f",
                tenant_id, provider_id, day, metrics.utilization,
            )
        return metrics, service, arrival

    def _mean_service_minutes(
        self, session: Session, tenant_id: str, provider_id: str, metrics: QueueMetrics, service: RateEstimate
    ) -> float:
        # Only the unstable path needs the observed consultation length
        if metrics.is_stable:
            return 0.0
        return rates.mean_service_minutes(
            session, tenant_id, provider_id, self.clock().date(), fallback_rate=service.value
        )

    # ===== READS =====

    def get_queue_status(self, tenant_id: str, provider_id: str) -> QueueStatusView:
        key = status_key(tenant_id, provider_id)
        cached, hit = self.cache.get(key)
        if hit:
            return QueueStatusView.model_validate(cached)

        today = self.clock().date()
        try:
            with storage_errors(), open_session(self.engine) as session:
                appointments = find_provider_day(session, tenant_id, provider_id, today)
                metrics, service, arrival = self._metrics(session, tenant_id, provider_id, today)
                mean_minutes = self._mean_service_minutes(session, tenant_id, provider_id, metrics, service)
        except StorageUnavailable as e:
            logger.warning("Queue status unavailable tenant=%s provider=%s: %s", tenant_id, provider_id, e)
            return QueueStatusView(provider_id=provider_id, available=False)

        summary = summarize_queue(appointments, metrics, mean_minutes)
        view = QueueStatusView(
            provider_id=provider_id,
            current_token=summary.current_token,
            next_token=summary.next_token,
            patients_waiting=summary.patients_waiting,
            estimated_wait_minutes=round(summary.estimated_wait_minutes),
            utilization=metrics.utilization,
            is_stable=metrics.is_stable,
            arrival_rate=arrival.value,
            service_rate=service.value,
            generated_at=self.clock(),
        )
        self.cache.set(key, view.model_dump(mode="json"), config.QUEUE_STATUS_TTL)
        return view

    def get_wait_estimate(self, tenant_id: str, appointment_id: int) -> WaitEstimateView:
        """Wait estimate for one appointment.

        Raises ``AppointmentNotFound`` for unknown or foreign appointments.
        """
        try:
            with storage_errors(), open_session(self.engine) as session:
                appointment = get_appointment(session, tenant_id, appointment_id)
                key = wait_key(tenant_id, appointment.provider_id, appointment_id)
                cached, hit = self.cache.get(key)
                if hit:
                    return WaitEstimateView.model_validate(cached)

                day = appointment.scheduled_at.date()
                appointments = find_provider_day(session, tenant_id, appointment.provider_id, day)
                metrics, service, arrival = self._metrics(session, tenant_id, appointment.provider_id, day)
                mean_minutes = self._mean_service_minutes(
                    session, tenant_id, appointment.provider_id, metrics, service
                )
        except StorageUnavailable as e:
            logger.warning("Wait estimate unavailable tenant=%s appointment=%s: %s", tenant_id, appointment_id, e)
            return WaitEstimateView(appointment_id=appointment_id, available=False)

        place = queue_position(appointments, appointment)
        minutes = estimate_wait_minutes(
            metrics,
            place.ahead_count,
            mean_minutes,
            status=appointment.status,
            checked_in_at=appointment.checked_in_at,
            now=self.clock(),
        )
        view = WaitEstimateView(
            appointment_id=appointment_id,
            estimated_wait_minutes=round(minutes),
            ahead_count=place.ahead_count,
            is_stable=metrics.is_stable,
            confidence=confidence(metrics, service.is_default or arrival.is_default),
            utilization=metrics.utilization,
            arrival_rate=arrival.value,
            service_rate=service.value,
        )
        self.cache.set(key, view.model_dump(mode="json"), config.WAIT_ESTIMATE_TTL)
        return view

    def get_queue_position(self, tenant_id: str, appointment_id: int) -> QueuePositionView:
        try:
            with storage_errors(), open_session(self.engine) as session:
                appointment = get_appointment(session, tenant_id, appointment_id)
                key = position_key(tenant_id, appointment.provider_id, appointment_id)
                cached, hit = self.cache.get(key)
                if hit:
                    return QueuePositionView.model_validate(cached)
                appointments = find_provider_day(
                    session, tenant_id, appointment.provider_id, appointment.scheduled_at.date()
                )
        except StorageUnavailable as e:
            logger.warning("Queue position unavailable tenant=%s appointment=%s: %s", tenant_id, appointment_id, e)
            return QueuePositionView(appointment_id=appointment_id, available=False)

        place = queue_position(appointments, appointment)
        view = QueuePositionView(
            appointment_id=appointment_id,
            token_number=appointment.token_number,
            position=place.position,
            ahead_count=place.ahead_count,
            queue_length=place.queue_length,
        )
        self.cache.set(key, view.model_dump(mode="json"), config.QUEUE_POSITION_TTL)
        return view

    # ===== WRITES =====

    def book(
        self,
        tenant_id: str,
        provider_id: str,
        scheduled_at: datetime,
        patient_ref: Optional[str] = None,
        status: AppointmentStatus = AppointmentStatus.scheduled,
    ) -> Appointment:
        appointment = book_appointment(self.engine, tenant_id, provider_id, scheduled_at, patient_ref, status)
        self.cache.invalidate_provider(tenant_id, provider_id, scheduled_at.date())
        return appointment

    def assign_pending(self, tenant_id: str, provider_id: str, day: date) -> List[Tuple[int, int]]:
        assigned = assign_pending_tokens(self.engine, tenant_id, provider_id, day)
        if assigned:
            self.cache.invalidate_provider(tenant_id, provider_id, day)
        return assigned

    def record_status_change(self, tenant_id: str, appointment_id: int, new_status: AppointmentStatus) -> Appointment:
        """Apply a status transition and evict the provider's cached views."""
        with storage_errors(), open_session(self.engine, write=True) as session:
            with session.begin():
                appointment = get_appointment(session, tenant_id, appointment_id)
                old_status = appointment.status
                apply_status(appointment, new_status, now=self.clock())
                session.add(appointment)

        logger.info(
            "Appointment %s status %s -> %s tenant=%s provider=%s",
            appointment_id, old_status.value, new_status.value, tenant_id, appointment.provider_id,
        )
        self.cache.invalidate_provider(tenant_id, appointment.provider_id, appointment.scheduled_at.date())
        return appointment
