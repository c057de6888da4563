"""Error taxonomy for the queue engine.

Insufficient history and unstable queues are deliberately *not* errors:
they are reported through flags on rate estimates and queue metrics.
"""

from __future__ import annotations

from typing import List, Optional


class QueueEngineError(Exception):
    """Base class for all queue engine errors."""


class PartitionLockTimeout(QueueEngineError):
    """A booking could not acquire its token partition in time.

    Retryable by the caller; the appointment creation has been rolled back.
    """

    def __init__(self, partition: str, timeout: Optional[float] = None):
        self.partition = partition
        self.timeout = timeout
        msg = f"Timed out waiting for token partition {partition}"
        if timeout is not None:
            msg += f" after {timeout:g}s"
        super().__init__(msg)


class StorageUnavailable(QueueEngineError):
    """The appointment store could not be reached or failed mid-operation."""


class InvariantViolation(QueueEngineError):
    """A metrics snapshot failed validation and must not be persisted."""

    def __init__(self, violations: List[str], tenant_id: str = "", provider_id: str = "", metric_date=None):
        self.violations = list(violations)
        self.tenant_id = tenant_id
        self.provider_id = provider_id
        self.metric_date = metric_date
        super().__init__("; ".join(self.violations))


class SnapshotExists(QueueEngineError):
    """A snapshot already exists for the day and no supersede was requested."""

    def __init__(self, tenant_id: str, provider_id: str, metric_date, revision: int):
        self.tenant_id = tenant_id
        self.provider_id = provider_id
        self.metric_date = metric_date
        self.revision = revision
        super().__init__(
            f"Metrics for provider {provider_id} on {metric_date} already exist (revision {revision})"
        )


class AppointmentNotFound(QueueEngineError):
    """No appointment with this id exists for the calling tenant."""

    def __init__(self, appointment_id):
        self.appointment_id = appointment_id
        super().__init__(f"Appointment not found: {appointment_id}")
