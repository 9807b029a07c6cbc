from typing import Literal

from pydantic import BaseModel, Field

Role = Literal["patient", "ambulance", "hospital", "admin"]
AmbulanceStatus = Literal["available", "dispatched", "busy", "offline"]
EmergencyStatus = Literal["available", "busy", "full"]
BedType = Literal["general", "icu"]


class User(BaseModel):
    id: int
    username: str
    email: str | None = None
    role: Role
    first_name: str | None = None
    last_name: str | None = None
    phone: str | None = None
    hospital_id: int | None = None
    is_active: bool = True
    created_at: str
    updated_at: str

    @property
    def display_name(self) -> str:
        name = " ".join(filter(None, [self.first_name, self.last_name]))
        return name or self.username


class Ambulance(BaseModel):
    id: int
    vehicle_number: str
    operator_id: int | None = None
    hospital_id: int | None = None
    current_latitude: float | None = None
    current_longitude: float | None = None
    status: AmbulanceStatus
    is_active: bool = True
    created_at: str
    updated_at: str


class Hospital(BaseModel):
    id: int
    name: str
    address: str | None = None
    phone: str | None = None
    latitude: float
    longitude: float
    total_beds: int
    available_beds: int
    icu_beds: int
    available_icu_beds: int
    emergency_status: EmergencyStatus
    created_at: str
    updated_at: str


class BedStatusLog(BaseModel):
    """One physical bed slot. Hospital bed counters are derived from these rows."""

    id: int
    hospital_id: int
    bed_number: str
    bed_type: BedType
    status: Literal["available", "occupied"]
    patient_name: str | None = None
    emergency_request_id: int | None = None
    created_at: str
    updated_at: str


class LocationUpdate(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)


class HospitalStatusUpdate(BaseModel):
    emergency_status: EmergencyStatus
