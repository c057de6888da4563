"""Token sequencing for appointments.

A token is the per-(tenant, provider, day) queue number shown to patients.
Each partition owns one ``TokenSequence`` row holding the next value; the
row is locked, read and incremented inside the same transaction that
writes the appointment, so two bookings can never observe the same counter.

Within one process, bookings for the same partition additionally queue on
an in-process lock with a timeout.  Locks are per partition: bookings for
different providers or days never wait on each other here.

Tokens are immutable once assigned.  An appointment booked *after* a later
slot already holds a token (a backdated booking) still receives the next
counter value; this is logged rather than renumbering existing tokens.
"""

from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from datetime import date, datetime
from typing import Dict, Iterator, List, Optional, Tuple

from sqlalchemy import text
from sqlalchemy.dialects import postgresql, sqlite
from sqlmodel import Session, select

import config
from exceptions import PartitionLockTimeout
from models import Appointment, AppointmentStatus, TokenSequence
from store import find_untokened_active, latest_tokened_time, open_session, storage_errors

logger = logging.getLogger(__name__)

PartitionKey = Tuple[str, str, date]


def partition_name(key: PartitionKey) -> str:
    tenant_id, provider_id, day = key
    return f"{tenant_id}:{provider_id}:{day.isoformat()}"


class PartitionLocks:
    """Registry of one lock per token partition."""

    def __init__(self):
        self._locks: Dict[PartitionKey, threading.Lock] = {}
        # Guards the dict only; never held while waiting on a partition
        self._guard = threading.Lock()

    def _lock_for(self, key: PartitionKey) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    @contextmanager
    def hold(self, key: PartitionKey, timeout: float) -> Iterator[None]:
        deadline = time.monotonic() + timeout
        while True:
            lock = self._lock_for(key)
            if not lock.acquire(timeout=max(deadline - time.monotonic(), 0)):
                raise PartitionLockTimeout(partition_name(key), timeout)
            with self._guard:
                if self._locks.get(key) is lock:
                    break
            # Pruned by discard_before between lookup and acquire
            lock.release()
        try:
            yield
        finally:
            lock.release()

    def discard_before(self, day: date) -> int:
        """Drop idle locks for partitions older than ``day``."""
        removed = 0
        with self._guard:
            for key in list(self._locks):
                lock = self._locks[key]
                if key[2] < day and not lock.locked():
                    del self._locks[key]
                    removed += 1
        return removed

    def __len__(self) -> int:
        return len(self._locks)


partition_locks = PartitionLocks()


def _insert_sequence_row(session: Session, tenant_id: str, provider_id: str, day: date) -> None:
    dialect = session.get_bind().dialect.name
    insert = postgresql.insert if dialect == "postgresql" else sqlite.insert
    stmt = (
        insert(TokenSequence)
        .values(tenant_id=tenant_id, provider_id=provider_id, token_date=day, next_token=1, updated_at=datetime.now())
        .on_conflict_do_nothing()
    )
    session.execute(stmt)


def assign_token(
    session: Session,
    tenant_id: str,
    provider_id: str,
    day: date,
    requested_time: Optional[datetime] = None,
    lock_timeout: float = config.TOKEN_LOCK_TIMEOUT,
) -> int:
    """Consume and return the next token for the partition.

    Must run inside the caller's open transaction; the partition row stays
    locked until that transaction ends, so the token and the appointment
    that carries it commit or roll back together.
    """
    name = partition_name((tenant_id, provider_id, day))
    with storage_errors(partition=name):
        if session.get_bind().dialect.name == "postgresql":
            session.execute(text(f"SET LOCAL lock_timeout = '{int(lock_timeout * 1000)}ms'"))

        _insert_sequence_row(session, tenant_id, provider_id, day)
        stmt = (
            select(TokenSequence)
            .where(
                TokenSequence.tenant_id == tenant_id,
                TokenSequence.provider_id == provider_id,
                TokenSequence.token_date == day,
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        sequence = session.exec(stmt).one()
        token = sequence.next_token

        if requested_time is not None:
            latest = latest_tokened_time(session, tenant_id, provider_id, day)
            if latest is not None and requested_time < latest:
                logger.warning(
                    "Backdated booking: partition=%s requested=%s latest_tokened=%s token=%s",
                    name, requested_time.isoformat(), latest.isoformat(), token,
                )

        sequence.next_token = token + 1
        sequence.updated_at = datetime.now()
        session.add(sequence)
        session.flush()

    logger.debug("Assigned token %s in partition %s", token, name)
    return token


@contextmanager
def partition_transaction(
    engine,
    tenant_id: str,
    provider_id: str,
    day: date,
    lock_timeout: float = config.TOKEN_LOCK_TIMEOUT,
    locks: PartitionLocks = partition_locks,
) -> Iterator[Session]:
    """Hold the partition and yield a session inside one transaction.

    The block commits on success and rolls back on any exception.
    """
    key = (tenant_id, provider_id, day)
    with locks.hold(key, lock_timeout):
        with storage_errors(partition=partition_name(key)):
            with open_session(engine, write=True) as session:
                with session.begin():
                    yield session


def book_appointment(
    engine,
    tenant_id: str,
    provider_id: str,
    scheduled_at: datetime,
    patient_ref: Optional[str] = None,
    status: AppointmentStatus = AppointmentStatus.scheduled,
    lock_timeout: float = config.TOKEN_LOCK_TIMEOUT,
    locks: PartitionLocks = partition_locks,
) -> Appointment:
    """Create an appointment and its token atomically.

    Either both the appointment row and its token exist afterwards, or
    neither does.
    """
    day = scheduled_at.date()
    with partition_transaction(engine, tenant_id, provider_id, day, lock_timeout, locks) as session:
        appointment = Appointment(
            tenant_id=tenant_id,
            provider_id=provider_id,
            patient_ref=patient_ref,
            scheduled_at=scheduled_at,
            status=status,
        )
        session.add(appointment)
        appointment.token_number = assign_token(
            session, tenant_id, provider_id, day, requested_time=scheduled_at, lock_timeout=lock_timeout
        )
        appointment.token_date = day
        session.flush()

    logger.info(
        "Booked appointment id=%s tenant=%s provider=%s at=%s token=%s",
        appointment.id, tenant_id, provider_id, scheduled_at.isoformat(), appointment.token_number,
    )
    return appointment


def assign_pending_tokens(
    engine,
    tenant_id: str,
    provider_id: str,
    day: date,
    lock_timeout: float = config.TOKEN_LOCK_TIMEOUT,
    locks: PartitionLocks = partition_locks,
) -> List[Tuple[int, int]]:
    """Token every active, untokened appointment of the day in time order.

    Returns ``(appointment_id, token)`` pairs.
    """
    assigned: List[Tuple[int, int]] = []
    with partition_transaction(engine, tenant_id, provider_id, day, lock_timeout, locks) as session:
        for appointment in find_untokened_active(session, tenant_id, provider_id, day):
            token = assign_token(
                session, tenant_id, provider_id, day,
                requested_time=appointment.scheduled_at, lock_timeout=lock_timeout,
            )
            appointment.token_number = token
            appointment.token_date = day
            appointment.updated_at = datetime.now()
            session.add(appointment)
            # Flush so the next iteration's backdating check sees this token
            session.flush()
            assigned.append((appointment.id, token))

    if assigned:
        logger.info(
            "Assigned %d pending tokens tenant=%s provider=%s date=%s",
            len(assigned), tenant_id, provider_id, day.isoformat(),
        )
    return assigned
