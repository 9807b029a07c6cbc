from fastapi import APIRouter, Depends

from app.dependencies import get_current_identity, get_dispatcher, get_engine, http_error
from app.errors import DispatchError, Forbidden, NotFound
from app.models.communication import ChatMessage, Communication
from app.services.auth import Identity
from app.services.dispatcher import Dispatcher
from app.services.lifecycle import LifecycleEngine

router = APIRouter(prefix="/api/communications", tags=["communications"])


@router.get("/request/{request_id}", response_model=list[Communication])
async def list_for_request(
    request_id: int,
    identity: Identity = Depends(get_current_identity),
    engine: LifecycleEngine = Depends(get_engine),
):
    """Chat history for a request, newest first. This is how offline receivers catch up."""
    try:
        await engine.get_request(request_id, identity)
    except DispatchError as e:
        raise http_error(e) from None
    return await engine.store.list_communications(request_id)


@router.post("", response_model=Communication, status_code=201)
async def send_message(
    body: ChatMessage,
    identity: Identity = Depends(get_current_identity),
    engine: LifecycleEngine = Depends(get_engine),
    dispatcher: Dispatcher = Depends(get_dispatcher),
):
    try:
        return await dispatcher.relay_chat(engine.store, identity, body)
    except DispatchError as e:
        raise http_error(e) from None


@router.patch("/{communication_id}/read", response_model=Communication)
async def mark_read(
    communication_id: int,
    identity: Identity = Depends(get_current_identity),
    engine: LifecycleEngine = Depends(get_engine),
):
    try:
        communication = await engine.store.get_communication(communication_id)
        if communication is None:
            raise NotFound(f"Communication {communication_id} not found")
        if identity.role != "admin" and (
            communication.receiver_id != identity.user_id or communication.receiver_role != identity.role
        ):
            raise Forbidden("Only the receiver can mark a message as read")
        return await engine.store.mark_communication_read(communication_id)
    except DispatchError as e:
        raise http_error(e) from None
