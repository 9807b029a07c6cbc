import logging
from datetime import UTC, datetime

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from app.config import WS_AUTH_CLOSE_CODE, WS_REPLACED_CLOSE_CODE
from app.database import get_db
from app.errors import Conflict, DispatchError, Forbidden
from app.models.communication import ChatMessage
from app.models.events import (
    CHAT_MESSAGE,
    CONNECTION_ESTABLISHED,
    ERROR,
    LOCATION_UPDATE,
    PING,
    PONG,
    UNPARSEABLE,
    frame_payload,
    make_event,
    parse_frame,
)
from app.models.fleet import LocationUpdate
from app.services.auth import Identity, decode_access_token
from app.services.lifecycle import LifecycleEngine
from app.services.store import Store

logger = logging.getLogger(__name__)
router = APIRouter()


def _error_frame(message: str, **extra) -> dict:
    return make_event(ERROR, {"message": message, **extra})


async def _close_replaced(previous: WebSocket, identity: Identity) -> None:
    try:
        await previous.close(code=WS_REPLACED_CLOSE_CODE, reason="replaced")
    except (RuntimeError, WebSocketDisconnect) as e:
        # Already closed by the peer
        logger.debug("Replaced channel for %s %s was already closed: %s", identity.role, identity.user_id, e)


async def _handle_frame(websocket: WebSocket, identity: Identity, frame: dict) -> None:
    frame_type = frame["type"]

    if frame_type == PING:
        await websocket.send_json({"type": PONG, "timestamp": datetime.now(UTC).isoformat()})
        return

    if frame_type == UNPARSEABLE:
        await websocket.send_json(_error_frame("Frames must be JSON objects with a string 'type'"))
        return

    dispatcher = websocket.app.state.dispatcher
    store = Store(await get_db())

    if frame_type == LOCATION_UPDATE:
        if identity.role != "ambulance":
            raise Forbidden("Only ambulance crews report locations")
        location = LocationUpdate.model_validate(frame_payload(frame))
        engine = LifecycleEngine(store, dispatcher)
        await engine.update_ambulance_location(identity, location.lat, location.lng)
        return

    if frame_type == CHAT_MESSAGE:
        chat = ChatMessage.model_validate(frame_payload(frame))
        await dispatcher.relay_chat(store, identity, chat, reply_to=websocket)
        return

    await websocket.send_json(_error_frame(f"Unsupported message type: {frame_type}"))


@router.websocket("/ws")
async def push_channel(websocket: WebSocket, token: str | None = Query(None)):
    """Authenticated push channel: one per identity, replaced on reconnect."""
    identity = decode_access_token(token)
    if identity is None:
        logger.info("Refused push channel handshake: invalid or missing token")
        await websocket.close(code=WS_AUTH_CLOSE_CODE)
        return

    await websocket.accept()
    presence = websocket.app.state.presence
    previous = presence.register(identity.role, identity.user_id, websocket)
    if isinstance(previous, WebSocket):
        await _close_replaced(previous, identity)

    try:
        await websocket.send_json(make_event(CONNECTION_ESTABLISHED, {
            "user_id": identity.user_id,
            "role": identity.role,
        }))
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", 1000))
            raw = message.get("text")
            if raw is None:
                raw = message.get("bytes") or b""
            if presence.find_by_identity(identity.role, identity.user_id) is not websocket:
                logger.info("Ignoring frames from replaced channel of %s %s", identity.role, identity.user_id)
                break

            frame = {"type": UNPARSEABLE}
            try:
                frame = parse_frame(raw)
                await _handle_frame(websocket, identity, frame)
            except Conflict as e:
                await websocket.send_json(_error_frame(e.message, rule=e.rule))
            except DispatchError as e:
                await websocket.send_json(_error_frame(e.message))
            except ValidationError as e:
                await websocket.send_json(_error_frame(
                    f"Invalid {frame['type']} payload", errors=e.errors(include_url=False, include_context=False)
                ))
            except WebSocketDisconnect:
                raise
            except Exception:
                # One bad frame must not take the connection down
                logger.exception("Failed to handle %s frame from %s %s", frame["type"], identity.role, identity.user_id)
                await websocket.send_json(_error_frame("Internal error"))
    except WebSocketDisconnect:
        logger.info("Push channel closed for %s %s", identity.role, identity.user_id)
    except RuntimeError as e:
        # Raised by Starlette when sending on a socket the peer already closed
        logger.debug("Push channel for %s %s ended: %s", identity.role, identity.user_id, e)
    finally:
        presence.unregister(identity.role, identity.user_id, channel=websocket)
