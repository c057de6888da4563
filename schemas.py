"""Pydantic schemas for requests and responses.

Queue views are advisory: when the store cannot be read they come back
with ``available = False`` and empty figures instead of failing the
request.
"""
from __future__ import annotations

from datetime import date, datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from models import AppointmentStatus


class BookingRequest(BaseModel):
    provider_id: str
    scheduled_at: datetime
    patient_ref: Optional[str] = None
    status: AppointmentStatus = AppointmentStatus.scheduled


class StatusUpdateRequest(BaseModel):
    status: AppointmentStatus


class AppointmentView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    tenant_id: str
    provider_id: str
    scheduled_at: datetime
    status: AppointmentStatus
    token_number: Optional[int] = None


class TokenAssignment(BaseModel):
    appointment_id: int
    token_number: int


class QueueStatusView(BaseModel):
    provider_id: str
    available: bool = True
    current_token: Optional[int] = None
    next_token: Optional[int] = None
    patients_waiting: Optional[int] = None
    estimated_wait_minutes: Optional[int] = None
    utilization: Optional[float] = None
    is_stable: Optional[bool] = None
    arrival_rate: Optional[float] = None
    service_rate: Optional[float] = None
    generated_at: datetime = Field(default_factory=datetime.now)


class WaitEstimateView(BaseModel):
    appointment_id: int
    available: bool = True
    estimated_wait_minutes: Optional[int] = None
    ahead_count: Optional[int] = None
    is_stable: Optional[bool] = None
    confidence: Optional[str] = None
    utilization: Optional[float] = None
    arrival_rate: Optional[float] = None
    service_rate: Optional[float] = None


class QueuePositionView(BaseModel):
    appointment_id: int
    available: bool = True
    token_number: Optional[int] = None
    position: Optional[int] = None
    ahead_count: Optional[int] = None
    queue_length: Optional[int] = None


class ProviderFailure(BaseModel):
    tenant_id: str
    provider_id: str
    error: str
    violations: List[str] = []


class AggregationReport(BaseModel):
    metric_date: date
    created: List[str] = []
    skipped: List[str] = []
    failed: List[ProviderFailure] = []
