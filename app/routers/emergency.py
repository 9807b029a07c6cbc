import logging

from fastapi import APIRouter, Depends

from app.dependencies import get_current_identity, get_engine, http_error
from app.errors import DispatchError
from app.models.emergency import (
    AcceptBody,
    EmergencyRequest,
    EmergencyRequestCreate,
    EmergencyRequestUpdate,
    EtaBody,
)
from app.services.auth import Identity
from app.services.lifecycle import LifecycleEngine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/emergency", tags=["emergency"])


@router.post("/request", response_model=EmergencyRequest, status_code=201)
async def create_request(
    body: EmergencyRequestCreate,
    identity: Identity = Depends(get_current_identity),
    engine: LifecycleEngine = Depends(get_engine),
):
    """Raise a new emergency request. It starts pending and is offered to every connected ambulance."""
    try:
        return await engine.create_request(identity, body)
    except DispatchError as e:
        raise http_error(e) from None


@router.get("/requests", response_model=list[EmergencyRequest])
async def list_requests(
    identity: Identity = Depends(get_current_identity),
    engine: LifecycleEngine = Depends(get_engine),
):
    """Patients get their own requests; crews and hospitals get every active one."""
    return await engine.requests_for(identity)


@router.get("/request/{request_id}", response_model=EmergencyRequest)
async def get_request(
    request_id: int,
    identity: Identity = Depends(get_current_identity),
    engine: LifecycleEngine = Depends(get_engine),
):
    try:
        return await engine.get_request(request_id, identity)
    except DispatchError as e:
        raise http_error(e) from None


@router.put("/request/{request_id}", response_model=EmergencyRequest)
async def update_request(
    request_id: int,
    body: EmergencyRequestUpdate,
    identity: Identity = Depends(get_current_identity),
    engine: LifecycleEngine = Depends(get_engine),
):
    """Move a request to ``status``.

    A bed may only be assigned together with ``completed``. An ETA supplied
    alongside ``dispatched`` is recorded before the transition.
    """
    try:
        return await engine.transition(
            request_id,
            identity,
            body.status,
            hospital_id=body.hospital_id,
            bed_number=body.assigned_bed_number,
            eta_minutes=body.estimated_arrival_minutes,
        )
    except DispatchError as e:
        raise http_error(e) from None


@router.post("/request/{request_id}/accept", response_model=EmergencyRequest)
async def accept_request(
    request_id: int,
    body: AcceptBody | None = None,
    identity: Identity = Depends(get_current_identity),
    engine: LifecycleEngine = Depends(get_engine),
):
    try:
        return await engine.accept(request_id, identity, body.ambulance_id if body else None)
    except DispatchError as e:
        raise http_error(e) from None


@router.post("/request/{request_id}/eta", response_model=EmergencyRequest)
async def set_eta(
    request_id: int,
    body: EtaBody,
    identity: Identity = Depends(get_current_identity),
    engine: LifecycleEngine = Depends(get_engine),
):
    """Record the ETA; omit minutes to estimate from the ambulance's last position."""
    try:
        return await engine.record_eta(request_id, identity, body.estimated_arrival_minutes)
    except DispatchError as e:
        raise http_error(e) from None


@router.post("/request/{request_id}/cancel", response_model=EmergencyRequest)
async def cancel_request(
    request_id: int,
    identity: Identity = Depends(get_current_identity),
    engine: LifecycleEngine = Depends(get_engine),
):
    try:
        return await engine.cancel(request_id, identity)
    except DispatchError as e:
        raise http_error(e) from None


@router.delete("/request/{request_id}")
async def archive_request(
    request_id: int,
    identity: Identity = Depends(get_current_identity),
    engine: LifecycleEngine = Depends(get_engine),
):
    """Archive a completed or cancelled request. It disappears from listings but is kept."""
    try:
        await engine.archive(request_id, identity)
    except DispatchError as e:
        raise http_error(e) from None
    return {"id": request_id, "archived": True}
