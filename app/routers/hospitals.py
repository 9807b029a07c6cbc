from fastapi import APIRouter, Depends, HTTPException, Query

from app.config import NEARBY_RADIUS_DEGREES
from app.dependencies import get_current_identity, get_engine, get_store, http_error
from app.errors import DispatchError
from app.models.fleet import BedStatusLog, Hospital, HospitalStatusUpdate
from app.services.auth import Identity
from app.services.lifecycle import LifecycleEngine
from app.services.store import Store

router = APIRouter(prefix="/api/hospitals", tags=["hospitals"])


@router.get("/available", response_model=list[Hospital])
async def list_hospitals(
    identity: Identity = Depends(get_current_identity),
    store: Store = Depends(get_store),
):
    return await store.list_hospitals()


@router.get("/nearby", response_model=list[Hospital])
async def nearby_hospitals(
    lat: float = Query(..., ge=-90, le=90),
    lng: float = Query(..., ge=-180, le=180),
    radius: float = Query(NEARBY_RADIUS_DEGREES, gt=0),
    identity: Identity = Depends(get_current_identity),
    store: Store = Depends(get_store),
):
    return await store.nearby_hospitals(lat, lng, radius)


@router.get("/{hospital_id}", response_model=Hospital)
async def get_hospital(
    hospital_id: int,
    identity: Identity = Depends(get_current_identity),
    store: Store = Depends(get_store),
):
    hospital = await store.get_hospital(hospital_id)
    if hospital is None:
        raise HTTPException(status_code=404, detail="Hospital not found")
    return hospital


@router.get("/{hospital_id}/beds", response_model=list[BedStatusLog])
async def list_beds(
    hospital_id: int,
    identity: Identity = Depends(get_current_identity),
    store: Store = Depends(get_store),
):
    if await store.get_hospital(hospital_id) is None:
        raise HTTPException(status_code=404, detail="Hospital not found")
    return await store.list_bed_slots(hospital_id)


@router.put("/{hospital_id}/status", response_model=Hospital)
async def update_status(
    hospital_id: int,
    body: HospitalStatusUpdate,
    identity: Identity = Depends(get_current_identity),
    engine: LifecycleEngine = Depends(get_engine),
):
    """Set the emergency department status and notify every connected ambulance."""
    try:
        return await engine.update_hospital_status(identity, hospital_id, body.emergency_status)
    except DispatchError as e:
        raise http_error(e) from None


@router.post("/{hospital_id}/beds/{bed_number}/release", response_model=BedStatusLog)
async def release_bed(
    hospital_id: int,
    bed_number: str,
    identity: Identity = Depends(get_current_identity),
    engine: LifecycleEngine = Depends(get_engine),
):
    """Discharge: flip an occupied slot back to available."""
    try:
        return await engine.release_bed(identity, hospital_id, bed_number)
    except DispatchError as e:
        raise http_error(e) from None
