"""Appointment store adapter.

Thin query layer over the relational store, supporting both SQLite (local
development and tests) and PostgreSQL (production).  Every function takes
an open ``Session`` so callers decide transaction boundaries; driver
failures are translated into the engine's error taxonomy by
``storage_errors``.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import date, datetime, time, timedelta
from typing import Iterator, List, Optional, Tuple

from sqlalchemy import event
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlmodel import Session, SQLModel, create_engine, select

import config
from exceptions import AppointmentNotFound, PartitionLockTimeout, StorageUnavailable
from models import Appointment, AppointmentStatus, ProviderSchedule

logger = logging.getLogger(__name__)

# SQLSTATE lock_not_available
PG_LOCK_NOT_AVAILABLE = "55P03"

# Execution option marking a connection that will write
WRITE_INTENT = "queue_write_intent"


def get_engine(database_url: Optional[str] = None, lock_timeout: float = config.TOKEN_LOCK_TIMEOUT):
    """Return an engine for ``database_url`` (defaults to ``DATABASE_URL``).

    On SQLite, write sessions (see ``open_session``) begin with
    ``BEGIN IMMEDIATE`` so concurrent writers queue on the database lock
    instead of failing late on upgrade, waiting up to ``lock_timeout``
    seconds.  Read sessions use a deferred ``BEGIN`` and, under WAL, never
    wait on a writer.
    """
    url = database_url or config.DATABASE_URL
    if url.startswith("sqlite"):
        engine = create_engine(
            url,
            connect_args={"check_same_thread": False, "timeout": lock_timeout},
        )

        @event.listens_for(engine, "connect")
        def _sqlite_connect(dbapi_connection, connection_record):
            # Hand transaction control to SQLAlchemy's "begin" event below
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        @event.listens_for(engine, "begin")
        def _sqlite_begin(conn):
            if conn.get_execution_options().get(WRITE_INTENT):
                conn.exec_driver_sql("BEGIN IMMEDIATE")
            else:
                conn.exec_driver_sql("BEGIN")

        return engine

    return create_engine(url, pool_pre_ping=True)


def init_db(engine) -> None:
    """Create tables if they do not exist."""
    with storage_errors():
        SQLModel.metadata.create_all(engine)


def open_session(engine, write: bool = False) -> Session:
    """Open a session; pass ``write=True`` for sessions that modify rows."""
    if write:
        engine = engine.execution_options(**{WRITE_INTENT: True})
    return Session(engine, expire_on_commit=False)


def _is_lock_error(exc: DBAPIError) -> bool:
    orig = getattr(exc, "orig", None)
    if getattr(orig, "pgcode", None) == PG_LOCK_NOT_AVAILABLE:
        return True
    return "database is locked" in str(orig or exc).lower()


@contextmanager
def storage_errors(partition: Optional[str] = None) -> Iterator[None]:
    """Translate driver errors raised inside the block.

    Lock waits that expire become ``PartitionLockTimeout`` when a partition
    is given; everything else at the driver level is ``StorageUnavailable``.
    """
    try:
        yield
    except OperationalError as exc:
        if partition is not None and _is_lock_error(exc):
            raise PartitionLockTimeout(partition) from exc
        logger.warning("Store operation failed: %s", exc.orig if exc.orig else exc)
        raise StorageUnavailable(str(exc.orig or exc)) from exc
    except DBAPIError as exc:
        if exc.connection_invalidated:
            raise StorageUnavailable("connection lost") from exc
        raise


def day_bounds(day: date) -> Tuple[datetime, datetime]:
    start = datetime.combine(day, time.min)
    return start, start + timedelta(days=1)


def get_appointment(session: Session, tenant_id: str, appointment_id: int) -> Appointment:
    """Fetch one appointment, scoped to the tenant.

    An appointment owned by another tenant is indistinguishable from a
    missing one.
    """
    stmt = select(Appointment).where(
        Appointment.id == appointment_id,
        Appointment.tenant_id == tenant_id,
    )
    appointment = session.exec(stmt).first()
    if appointment is None:
        raise AppointmentNotFound(appointment_id)
    return appointment


def find_provider_day(session: Session, tenant_id: str, provider_id: str, day: date) -> List[Appointment]:
    """All appointments scheduled for the provider on ``day``, any status."""
    start, end = day_bounds(day)
    stmt = (
        select(Appointment)
        .where(
            Appointment.tenant_id == tenant_id,
            Appointment.provider_id == provider_id,
            Appointment.scheduled_at >= start,
            Appointment.scheduled_at < end,
        )
        .order_by(Appointment.scheduled_at, Appointment.id)
    )
    return list(session.exec(stmt).all())


def find_untokened_active(session: Session, tenant_id: str, provider_id: str, day: date) -> List[Appointment]:
    return [
        a for a in find_provider_day(session, tenant_id, provider_id, day)
        if a.token_number is None and a.status.is_active_for_queue
    ]


def latest_tokened_time(session: Session, tenant_id: str, provider_id: str, day: date) -> Optional[datetime]:
    """Latest scheduled time among active, already-tokened appointments."""
    tokened = [
        a.scheduled_at for a in find_provider_day(session, tenant_id, provider_id, day)
        if a.token_number is not None and a.status.is_active_for_queue
    ]
    return max(tokened) if tokened else None


def find_completed_in_window(
    session: Session, tenant_id: str, provider_id: str, start: datetime, end: datetime
) -> List[Appointment]:
    stmt = select(Appointment).where(
        Appointment.tenant_id == tenant_id,
        Appointment.provider_id == provider_id,
        Appointment.status == AppointmentStatus.completed,
        Appointment.completed_at >= start,
        Appointment.completed_at < end,
    )
    return list(session.exec(stmt).all())


def find_schedules(session: Session, tenant_id: str, provider_id: str) -> List[ProviderSchedule]:
    stmt = select(ProviderSchedule).where(
        ProviderSchedule.tenant_id == tenant_id,
        ProviderSchedule.provider_id == provider_id,
    )
    return list(session.exec(stmt).all())


def providers_with_appointments(session: Session, day: date, tenant_id: Optional[str] = None) -> List[Tuple[str, str]]:
    """Distinct (tenant, provider) pairs with at least one appointment on ``day``."""
    start, end = day_bounds(day)
    stmt = (
        select(Appointment.tenant_id, Appointment.provider_id)
        .where(Appointment.scheduled_at >= start, Appointment.scheduled_at < end)
        .distinct()
        .order_by(Appointment.tenant_id, Appointment.provider_id)
    )
    if tenant_id is not None:
        stmt = stmt.where(Appointment.tenant_id == tenant_id)
    return [(row[0], row[1]) for row in session.exec(stmt).all()]


def apply_status(appointment: Appointment, new_status: AppointmentStatus, now: Optional[datetime] = None) -> Appointment:
    """Set the status and stamp the matching lifecycle timestamp."""
    now = now or datetime.now()
    appointment.status = new_status
    if new_status is AppointmentStatus.confirmed and appointment.checked_in_at is None:
        appointment.checked_in_at = now
    elif new_status is AppointmentStatus.in_progress and appointment.started_at is None:
        appointment.started_at = now
    elif new_status is AppointmentStatus.completed and appointment.completed_at is None:
        appointment.completed_at = now
    appointment.updated_at = now
    return appointment
