"""FastAPI application for the queue engine.

The app exposes token booking for the booking subsystem, queue status,
wait-time and position lookups for display boards and patient apps, and
daily metrics endpoints for analytics and administration.  Every request
is tenant-scoped through the ``X-Tenant-ID`` header.  Configuration comes
from environment variables (see ``config.py``); Redis is optional and only
used for caching.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query
from fastapi.responses import JSONResponse

import config
from aggregator import (
    aggregate_provider_day,
    find_high_utilization,
    find_unstable_queues,
    get_daily_metrics,
    get_metrics_range,
    run_daily_aggregation,
)
from cache import QueueCache, get_redis
from exceptions import (
    AppointmentNotFound,
    InvariantViolation,
    PartitionLockTimeout,
    SnapshotExists,
    StorageUnavailable,
)
from models import QueueMetricsSnapshot
from schemas import (
    AggregationReport,
    AppointmentView,
    BookingRequest,
    QueuePositionView,
    QueueStatusView,
    StatusUpdateRequest,
    TokenAssignment,
    WaitEstimateView,
)
from scheduler import shutdown_scheduler, start_scheduler
from services import QueueService
from store import get_engine, init_db, open_session, storage_errors

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Clinic Queue & Token Engine")

_engine = None


def get_db_engine():
    global _engine
    if _engine is None:
        _engine = get_engine()
    return _engine


def get_queue_service(engine=Depends(get_db_engine)) -> QueueService:
    return QueueService(engine, QueueCache(get_redis()))


def get_tenant_id(x_tenant_id: Optional[str] = Header(default=None)) -> str:
    if not x_tenant_id:
        raise HTTPException(status_code=400, detail="X-Tenant-ID header is required")
    return x_tenant_id


@app.on_event("startup")
def on_startup() -> None:
    engine = get_db_engine()
    init_db(engine)
    if config.ENABLE_SCHEDULER:
        start_scheduler(engine)
    logger.info("Queue engine started (cache=%s)", "redis" if get_redis() else "disabled")


@app.on_event("shutdown")
def on_shutdown() -> None:
    shutdown_scheduler()


# ===== ERROR MAPPING =====

@app.exception_handler(PartitionLockTimeout)
def partition_timeout_handler(request, exc: PartitionLockTimeout) -> JSONResponse:
    logger.warning("Booking failed: %s", exc)
    return JSONResponse(status_code=503, content={"detail": "Queue is busy, please try again"})


@app.exception_handler(StorageUnavailable)
def storage_unavailable_handler(request, exc: StorageUnavailable) -> JSONResponse:
    return JSONResponse(status_code=503, content={"detail": "Storage unavailable, please try again"})


@app.exception_handler(AppointmentNotFound)
def not_found_handler(request, exc: AppointmentNotFound) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(SnapshotExists)
def snapshot_exists_handler(request, exc: SnapshotExists) -> JSONResponse:
    return JSONResponse(status_code=409, content={"detail": str(exc), "revision": exc.revision})


@app.exception_handler(InvariantViolation)
def invariant_violation_handler(request, exc: InvariantViolation) -> JSONResponse:
    return JSONResponse(status_code=422, content={"detail": "Metrics invariants failed", "violations": exc.violations})


# ===== TOKENS & STATUS =====

@app.get("/health")
def health() -> Dict[str, Any]:
    return {"status": "ok", "cache": "redis" if get_redis() else "disabled"}


@app.post("/api/queue/appointments", response_model=AppointmentView, status_code=201)
def book_appointment(
    request: BookingRequest,
    tenant_id: str = Depends(get_tenant_id),
    service: QueueService = Depends(get_queue_service),
):
    """Create an appointment and assign its token in one transaction."""
    return service.book(tenant_id, request.provider_id, request.scheduled_at, request.patient_ref, request.status)


@app.post("/api/queue/providers/{provider_id}/tokens/assign", response_model=List[TokenAssignment])
def assign_pending_tokens(
    provider_id: str,
    metric_date: date = Query(alias="date"),
    tenant_id: str = Depends(get_tenant_id),
    service: QueueService = Depends(get_queue_service),
):
    assigned = service.assign_pending(tenant_id, provider_id, metric_date)
    return [TokenAssignment(appointment_id=a, token_number=t) for a, t in assigned]


@app.patch("/api/queue/appointments/{appointment_id}/status", response_model=AppointmentView)
def update_status(
    appointment_id: int,
    request: StatusUpdateRequest,
    tenant_id: str = Depends(get_tenant_id),
    service: QueueService = Depends(get_queue_service),
):
    return service.record_status_change(tenant_id, appointment_id, request.status)


# ===== QUEUE VIEWS =====

@app.get("/api/queue/status/{provider_id}", response_model=QueueStatusView)
def queue_status(
    provider_id: str,
    tenant_id: str = Depends(get_tenant_id),
    service: QueueService = Depends(get_queue_service),
):
    return service.get_queue_status(tenant_id, provider_id)


@app.get("/api/queue/wait-time/{appointment_id}", response_model=WaitEstimateView)
def wait_time(
    appointment_id: int,
    tenant_id: str = Depends(get_tenant_id),
    service: QueueService = Depends(get_queue_service),
):
    return service.get_wait_estimate(tenant_id, appointment_id)


@app.get("/api/queue/position/{appointment_id}", response_model=QueuePositionView)
def queue_position(
    appointment_id: int,
    tenant_id: str = Depends(get_tenant_id),
    service: QueueService = Depends(get_queue_service),
):
    return service.get_queue_position(tenant_id, appointment_id)


# ===== DAILY METRICS =====

@app.get("/api/queue/metrics/alerts/high-utilization", response_model=List[QueueMetricsSnapshot])
def high_utilization(
    since: date,
    threshold: Optional[float] = None,
    tenant_id: str = Depends(get_tenant_id),
    engine=Depends(get_db_engine),
):
    with storage_errors(), open_session(engine) as session:
        return find_high_utilization(session, tenant_id, since, threshold)


@app.get("/api/queue/metrics/alerts/unstable", response_model=List[QueueMetricsSnapshot])
def unstable_queues(
    since: date,
    tenant_id: str = Depends(get_tenant_id),
    engine=Depends(get_db_engine),
):
    with storage_errors(), open_session(engine) as session:
        return find_unstable_queues(session, tenant_id, since)


@app.get("/api/queue/metrics/{provider_id}", response_model=QueueMetricsSnapshot)
def daily_metrics(
    provider_id: str,
    metric_date: date = Query(alias="date"),
    tenant_id: str = Depends(get_tenant_id),
    engine=Depends(get_db_engine),
):
    with storage_errors(), open_session(engine) as session:
        snapshot = get_daily_metrics(session, tenant_id, provider_id, metric_date)
    if snapshot is None:
        raise HTTPException(status_code=404, detail="No metrics for this provider and date")
    return snapshot


@app.get("/api/queue/metrics/{provider_id}/range", response_model=List[QueueMetricsSnapshot])
def metrics_range(
    provider_id: str,
    start: date,
    end: date,
    tenant_id: str = Depends(get_tenant_id),
    engine=Depends(get_db_engine),
):
    if start > end:
        raise HTTPException(status_code=400, detail="start must not be after end")
    with storage_errors(), open_session(engine) as session:
        return get_metrics_range(session, tenant_id, provider_id, start, end)


@app.post("/api/queue/metrics/calculate", response_model=AggregationReport)
def calculate_metrics(
    metric_date: date = Query(alias="date"),
    provider_id: Optional[str] = None,
    supersede: bool = False,
    tenant_id: str = Depends(get_tenant_id),
    engine=Depends(get_db_engine),
):
    """Manually (re)run daily aggregation for the calling tenant.

    With ``provider_id`` only that provider is aggregated and failures are
    returned as errors; otherwise the whole tenant is processed and
    failures are listed in the report.
    """
    if provider_id is not None:
        aggregate_provider_day(engine, tenant_id, provider_id, metric_date, supersede=supersede)
        return AggregationReport(metric_date=metric_date, created=[f"{tenant_id}:{provider_id}"])
    return run_daily_aggregation(engine, metric_date, tenant_id=tenant_id, supersede=supersede)
