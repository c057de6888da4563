"""Database models for the queue engine.

We use SQLModel to define the schema.  Appointments are owned by the
booking subsystem; this engine only writes their token and the timestamps
stamped on status transitions.  Token sequences hold one counter row per
(tenant, provider, day) partition.  Provider schedules give operating hours,
and queue metrics snapshots are the append-only daily analytics record.
"""

from __future__ import annotations

from datetime import date, datetime, time
from enum import Enum
from typing import Optional

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel


class AppointmentStatus(str, Enum):
    """Possible statuses for an appointment."""

    scheduled = "scheduled"
    confirmed = "confirmed"
    in_progress = "in_progress"
    completed = "completed"
    cancelled = "cancelled"
    no_show = "no_show"

    @property
    def is_active_for_queue(self) -> bool:
        """Member of its token partition (tokens stay unique and ordered)."""
        return self not in (AppointmentStatus.cancelled, AppointmentStatus.no_show)

    @property
    def is_waiting(self) -> bool:
        return self in (AppointmentStatus.scheduled, AppointmentStatus.confirmed)

    @property
    def counts_as_arrival(self) -> bool:
        return self is not AppointmentStatus.cancelled

    @property
    def blocks_queue(self) -> bool:
        """Still ahead of later tokens: active and not yet seen."""
        return self.is_active_for_queue and self is not AppointmentStatus.completed


class Appointment(SQLModel, table=True):
    __table_args__ = (
        UniqueConstraint("tenant_id", "provider_id", "token_date", "token_number", name="uq_appointment_token"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    tenant_id: str = Field(index=True)
    provider_id: str = Field(index=True)
    patient_ref: Optional[str] = None
    scheduled_at: datetime = Field(index=True)
    status: AppointmentStatus = Field(default=AppointmentStatus.scheduled)
    token_number: Optional[int] = None
    token_date: Optional[date] = None
    checked_in_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = Field(default=None, index=True)
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)


class TokenSequence(SQLModel, table=True):
    tenant_id: str = Field(primary_key=True)
    provider_id: str = Field(primary_key=True)
    token_date: date = Field(primary_key=True)
    next_token: int = Field(default=1)
    updated_at: datetime = Field(default_factory=datetime.now)


class ProviderSchedule(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    tenant_id: str = Field(index=True)
    provider_id: str = Field(index=True)
    day_of_week: int  # 0 = Monday
    start_time: time
    end_time: time
    break_start_time: Optional[time] = None
    break_end_time: Optional[time] = None
    is_available: bool = Field(default=True)


class QueueMetricsSnapshot(SQLModel, table=True):
    __table_args__ = (
        UniqueConstraint("tenant_id", "provider_id", "metric_date", "revision", name="uq_queue_metrics_revision"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    tenant_id: str = Field(index=True)
    provider_id: str = Field(index=True)
    metric_date: date = Field(index=True)
    revision: int = Field(default=1)

    arrival_rate: float  # λ, patients/hour
    service_rate: float  # μ, patients/hour
    utilization: float  # ρ = λ/μ
    avg_wait_in_system: Optional[float] = None  # W, minutes
    avg_wait_in_queue: Optional[float] = None  # Wq, minutes
    avg_number_in_system: Optional[float] = None  # L
    avg_number_in_queue: Optional[float] = None  # Lq
    is_stable: bool

    total_appointments: int = 0
    completed_count: int = 0
    no_show_count: int = 0
    cancelled_count: int = 0

    metric_start_time: Optional[time] = None
    metric_end_time: Optional[time] = None
    created_at: datetime = Field(default_factory=datetime.now)
