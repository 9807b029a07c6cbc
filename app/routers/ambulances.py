from fastapi import APIRouter, Depends, Query

from app.config import NEARBY_RADIUS_DEGREES
from app.dependencies import get_current_identity, get_engine, get_store, http_error
from app.errors import DispatchError, Forbidden
from app.models.fleet import Ambulance, LocationUpdate
from app.services.auth import Identity
from app.services.lifecycle import LifecycleEngine
from app.services.store import Store

router = APIRouter(prefix="/api/ambulances", tags=["ambulances"])


@router.get("/nearby", response_model=list[Ambulance])
async def nearby_ambulances(
    lat: float = Query(..., ge=-90, le=90),
    lng: float = Query(..., ge=-180, le=180),
    radius: float = Query(NEARBY_RADIUS_DEGREES, gt=0),
    identity: Identity = Depends(get_current_identity),
    store: Store = Depends(get_store),
):
    """Active ambulances within ``radius`` degrees of the point."""
    return await store.nearby_ambulances(lat, lng, radius)


@router.get("/available", response_model=list[Ambulance])
async def available_ambulances(
    identity: Identity = Depends(get_current_identity),
    store: Store = Depends(get_store),
):
    return await store.list_available_ambulances()


@router.put("/{ambulance_id}/location", response_model=Ambulance)
async def update_location(
    ambulance_id: int,
    body: LocationUpdate,
    identity: Identity = Depends(get_current_identity),
    engine: LifecycleEngine = Depends(get_engine),
):
    """Same as a ``location_update`` frame on the push channel, for clients without one."""
    try:
        ambulance = await engine.store.get_ambulance_by_operator(identity.user_id)
        if ambulance is None or ambulance.id != ambulance_id:
            raise Forbidden(f"Ambulance {ambulance_id} is not operated by user {identity.user_id}")
        return await engine.update_ambulance_location(identity, body.lat, body.lng)
    except DispatchError as e:
        raise http_error(e) from None
