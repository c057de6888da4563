"""Daily queue metrics aggregation.

Once per day each provider's M/M/1 figures are computed from the store,
validated, and appended as a ``QueueMetricsSnapshot``.  Snapshots are never
updated in place: re-running a day is rejected unless the caller asks to
supersede, in which case a new revision is appended and the overwrite is
logged.  A snapshot that fails validation is never written; the batch run
logs the failure for that provider and moves on to the next one.
"""

from __future__ import annotations

import logging
import math
from datetime import date
from typing import Dict, List, Optional, Tuple

from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlmodel import Session, select

import config
import rates
from analytics import mm1
from exceptions import InvariantViolation, QueueEngineError, SnapshotExists, StorageUnavailable
from models import AppointmentStatus, QueueMetricsSnapshot
from schemas import AggregationReport, ProviderFailure
from store import find_provider_day, open_session, providers_with_appointments, storage_errors

logger = logging.getLogger(__name__)


def compute_snapshot(session: Session, tenant_id: str, provider_id: str, day: date) -> QueueMetricsSnapshot:
    """Build (but do not save) the snapshot for one provider-day.

    The service-rate window ends on ``day`` so re-running a past day sees
    the same history it would have seen at the time.
    """
    service = rates.service_rate(session, tenant_id, provider_id, day)
    arrival = rates.arrival_rate(session, tenant_id, provider_id, day)
    metrics = mm1(arrival.value, service.value)

    appointments = find_provider_day(session, tenant_id, provider_id, day)
    statuses = [a.status for a in appointments]
    start, end = rates.operating_window(session, tenant_id, provider_id, day)

    return QueueMetricsSnapshot(
        tenant_id=tenant_id,
        provider_id=provider_id,
        metric_date=day,
        arrival_rate=metrics.arrival_rate,
        service_rate=metrics.service_rate,
        utilization=metrics.utilization,
        avg_wait_in_system=metrics.wait_in_system_minutes,
        avg_wait_in_queue=metrics.wait_in_queue_minutes,
        avg_number_in_system=metrics.avg_number_in_system,
        avg_number_in_queue=metrics.avg_number_in_queue,
        is_stable=metrics.is_stable,
        total_appointments=len(statuses),
        completed_count=statuses.count(AppointmentStatus.completed),
        no_show_count=statuses.count(AppointmentStatus.no_show),
        cancelled_count=statuses.count(AppointmentStatus.cancelled),
        metric_start_time=start,
        metric_end_time=end,
    )


def _close(a: float, b: float, tolerance: float) -> bool:
    return math.isclose(a, b, rel_tol=tolerance, abs_tol=tolerance)


def validate_snapshot(snapshot: QueueMetricsSnapshot) -> None:
    """Raise ``InvariantViolation`` listing every broken invariant."""
    s = snapshot
    violations: List[str] = []

    if s.service_rate is None or s.service_rate <= 0:
        violations.append(f"service_rate must be positive (got {s.service_rate})")
    if s.arrival_rate is None or s.arrival_rate < 0:
        violations.append(f"arrival_rate must be non-negative (got {s.arrival_rate})")
    if s.utilization is None or s.utilization < 0:
        violations.append(f"utilization must be non-negative (got {s.utilization})")

    if not violations:
        expected = s.arrival_rate / s.service_rate
        if abs(s.utilization - expected) >= config.UTILIZATION_TOLERANCE:
            violations.append(f"utilization {s.utilization} != arrival_rate/service_rate {expected}")
        if s.is_stable != (s.utilization < 1.0):
            violations.append(f"is_stable={s.is_stable} inconsistent with utilization {s.utilization}")

    closed_form = {
        "avg_wait_in_system": s.avg_wait_in_system,
        "avg_wait_in_queue": s.avg_wait_in_queue,
        "avg_number_in_system": s.avg_number_in_system,
        "avg_number_in_queue": s.avg_number_in_queue,
    }
    if s.is_stable:
        missing = [name for name, value in closed_form.items() if value is None]
        bad = [name for name, value in closed_form.items()
               if value is not None and (not math.isfinite(value) or value < 0)]
        if missing:
            violations.append(f"stable snapshot missing {', '.join(missing)}")
        if bad:
            violations.append(f"non-finite or negative {', '.join(bad)}")
        if not missing and not bad and s.arrival_rate is not None:
            w_hours = s.avg_wait_in_system / 60.0
            wq_hours = s.avg_wait_in_queue / 60.0
            if not _close(s.avg_number_in_system, s.arrival_rate * w_hours, config.LITTLE_LAW_TOLERANCE):
                violations.append(
                    f"Little's law L = lambda*W violated: L={s.avg_number_in_system} "
                    f"lambda*W={s.arrival_rate * w_hours}"
                )
            if not _close(s.avg_number_in_queue, s.arrival_rate * wq_hours, config.LITTLE_LAW_TOLERANCE):
                violations.append(
                    f"Little's law Lq = lambda*Wq violated: Lq={s.avg_number_in_queue} "
                    f"lambda*Wq={s.arrival_rate * wq_hours}"
                )
    else:
        present = [name for name, value in closed_form.items() if value is not None]
        if present:
            violations.append(f"unstable snapshot must not carry {', '.join(present)}")

    counts = (s.total_appointments, s.completed_count, s.no_show_count, s.cancelled_count)
    if any(c is None or c < 0 for c in counts):
        violations.append(f"appointment counts must be non-negative (got {counts})")
    elif s.completed_count + s.no_show_count + s.cancelled_count > s.total_appointments:
        violations.append(
            f"completed+no_show+cancelled ({s.completed_count}+{s.no_show_count}+{s.cancelled_count}) "
            f"exceeds total {s.total_appointments}"
        )

    if s.metric_start_time and s.metric_end_time and s.metric_start_time > s.metric_end_time:
        violations.append(f"metric window {s.metric_start_time}-{s.metric_end_time} is reversed")

    if violations:
        raise InvariantViolation(violations, s.tenant_id, s.provider_id, s.metric_date)


def latest_snapshot(session: Session, tenant_id: str, provider_id: str, day: date) -> Optional[QueueMetricsSnapshot]:
    stmt = (
        select(QueueMetricsSnapshot)
        .where(
            QueueMetricsSnapshot.tenant_id == tenant_id,
            QueueMetricsSnapshot.provider_id == provider_id,
            QueueMetricsSnapshot.metric_date == day,
        )
        .order_by(QueueMetricsSnapshot.revision.desc())
    )
    return session.exec(stmt).first()


get_daily_metrics = latest_snapshot


def aggregate_provider_day(
    engine, tenant_id: str, provider_id: str, day: date, supersede: bool = False
) -> QueueMetricsSnapshot:
    """Compute, validate and append one provider's snapshot for ``day``."""
    with storage_errors(), open_session(engine, write=True) as session:
        try:
            with session.begin():
                existing = latest_snapshot(session, tenant_id, provider_id, day)
                if existing is not None and not supersede:
                    raise SnapshotExists(tenant_id, provider_id, day, existing.revision)

                snapshot = compute_snapshot(session, tenant_id, provider_id, day)
                snapshot.revision = existing.revision + 1 if existing else 1
                validate_snapshot(snapshot)
                session.add(snapshot)
        except IntegrityError as exc:
            # A concurrent run appended the same revision first
            raise SnapshotExists(tenant_id, provider_id, day, snapshot.revision) from exc

    if existing is not None:
        logger.warning(
            "Superseded queue metrics tenant=%s provider=%s date=%s revision %d -> %d",
            tenant_id, provider_id, day, existing.revision, snapshot.revision,
        )
    logger.info(
        "Stored queue metrics tenant=%s provider=%s date=%s rho=%.3f stable=%s W=%s",
        tenant_id, provider_id, day, snapshot.utilization, snapshot.is_stable, snapshot.avg_wait_in_system,
    )
    return snapshot


def run_daily_aggregation(
    engine, day: date, tenant_id: Optional[str] = None, supersede: bool = False
) -> AggregationReport:
    """Aggregate every provider with appointments on ``day``.

    One provider's failure never aborts the batch.
    """
    with storage_errors(), open_session(engine) as session:
        pairs = providers_with_appointments(session, day, tenant_id)

    report = AggregationReport(metric_date=day)
    logger.info("Starting daily queue metrics aggregation date=%s providers=%d", day, len(pairs))

    for tenant, provider in pairs:
        label = f"{tenant}:{provider}"
        try:
            aggregate_provider_day(engine, tenant, provider, day, supersede=supersede)
            report.created.append(label)
        except SnapshotExists as e:
            logger.info("Skipping already aggregated tenant=%s provider=%s date=%s revision=%d",
                        tenant, provider, day, e.revision)
            report.skipped.append(label)
        except InvariantViolation as e:
            logger.error(
                "Queue metrics invariant violation tenant=%s provider=%s date=%s violations=%s",
                tenant, provider, day, e.violations,
            )
            report.failed.append(ProviderFailure(
                tenant_id=tenant, provider_id=provider, error="invariant_violation", violations=e.violations,
            ))
        except StorageUnavailable as e:
            logger.error("Queue metrics storage failure tenant=%s provider=%s date=%s error=%s",
                         tenant, provider, day, e)
            report.failed.append(ProviderFailure(tenant_id=tenant, provider_id=provider, error=str(e)))
        except (QueueEngineError, DBAPIError, ValueError) as e:
            logger.exception("Queue metrics aggregation failed tenant=%s provider=%s date=%s",
                             tenant, provider, day)
            report.failed.append(ProviderFailure(
                tenant_id=tenant, provider_id=provider, error=f"{type(e).__name__}: {e}",
            ))

    logger.info(
        "Completed daily queue metrics aggregation date=%s created=%d skipped=%d failed=%d",
        day, len(report.created), len(report.skipped), len(report.failed),
    )
    return report


# ===== ANALYTICS QUERIES =====

def _latest_revisions(rows: List[QueueMetricsSnapshot]) -> List[QueueMetricsSnapshot]:
    latest: Dict[Tuple[str, date], QueueMetricsSnapshot] = {}
    for row in rows:
        key = (row.provider_id, row.metric_date)
        if key not in latest or row.revision > latest[key].revision:
            latest[key] = row
    return sorted(latest.values(), key=lambda r: (r.metric_date, r.provider_id))


def get_metrics_range(
    session: Session, tenant_id: str, provider_id: str, start: date, end: date
) -> List[QueueMetricsSnapshot]:
    stmt = select(QueueMetricsSnapshot).where(
        QueueMetricsSnapshot.tenant_id == tenant_id,
        QueueMetricsSnapshot.provider_id == provider_id,
        QueueMetricsSnapshot.metric_date >= start,
        QueueMetricsSnapshot.metric_date <= end,
    )
    return _latest_revisions(list(session.exec(stmt).all()))


def find_high_utilization(
    session: Session, tenant_id: str, since: date, threshold: Optional[float] = None
) -> List[QueueMetricsSnapshot]:
    threshold = config.HIGH_UTILIZATION_THRESHOLD if threshold is None else threshold
    stmt = select(QueueMetricsSnapshot).where(
        QueueMetricsSnapshot.tenant_id == tenant_id,
        QueueMetricsSnapshot.metric_date >= since,
    )
    return [s for s in _latest_revisions(list(session.exec(stmt).all())) if s.utilization > threshold]


def find_unstable_queues(session: Session, tenant_id: str, since: date) -> List[QueueMetricsSnapshot]:
    stmt = select(QueueMetricsSnapshot).where(
        QueueMetricsSnapshot.tenant_id == tenant_id,
        QueueMetricsSnapshot.metric_date >= since,
    )
    return [s for s in _latest_revisions(list(session.exec(stmt).all())) if not s.is_stable]
