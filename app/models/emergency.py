from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field


class RequestStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DISPATCHED = "dispatched"
    EN_ROUTE = "en_route"
    AT_SCENE = "at_scene"
    TRANSPORTING = "transporting"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({RequestStatus.COMPLETED, RequestStatus.CANCELLED})

# Statuses in which a request carries an ambulance reference
AMBULANCE_BOUND_STATUSES = frozenset({
    RequestStatus.ACCEPTED,
    RequestStatus.DISPATCHED,
    RequestStatus.EN_ROUTE,
    RequestStatus.AT_SCENE,
    RequestStatus.TRANSPORTING,
    RequestStatus.COMPLETED,
})

Priority = Literal["low", "medium", "high", "critical"]


class EmergencyRequestCreate(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    address: str | None = None
    patient_condition: str | None = None
    notes: str | None = None
    priority: Priority = "high"
    client_reference: str | None = Field(None, max_length=64)  # echoed back for optimistic clients


class EmergencyRequest(BaseModel):
    id: int
    patient_id: int
    ambulance_id: int | None = None
    hospital_id: int | None = None
    latitude: float
    longitude: float
    address: str | None = None
    patient_condition: str | None = None
    notes: str | None = None
    priority: Priority
    status: RequestStatus
    assigned_bed_number: str | None = None
    estimated_arrival_minutes: int | None = None
    client_reference: str | None = None
    archived: bool = False
    created_at: str
    updated_at: str


class EmergencyRequestUpdate(BaseModel):
    """Generic update: move the request to ``status``, with optional side data."""

    status: RequestStatus
    hospital_id: int | None = None
    assigned_bed_number: str | None = None
    estimated_arrival_minutes: int | None = Field(None, ge=0)


class AcceptBody(BaseModel):
    ambulance_id: int | None = None  # defaults to the caller's own ambulance


class EtaBody(BaseModel):
    estimated_arrival_minutes: int | None = Field(None, ge=0)  # None -> estimate from position
