import json
import logging
from typing import Any

logger = logging.getLogger(__name__)

# Server -> client
NEW_EMERGENCY_REQUEST = "new_emergency_request"
EMERGENCY_STATUS_UPDATE = "emergency_status_update"
AMBULANCE_LOCATION_UPDATE = "ambulance_location_update"
HOSPITAL_STATUS_UPDATE = "hospital_status_update"
NEW_MESSAGE = "new_message"
MESSAGE_SENT = "message_sent"
CONNECTION_ESTABLISHED = "connection_established"
ERROR = "error"

# Client -> server
LOCATION_UPDATE = "location_update"
CHAT_MESSAGE = "chat_message"
PING = "ping"
PONG = "pong"

# Tag for frames that are not a JSON object
UNPARSEABLE = "unparseable"


def make_event(event_type: str, data: dict[str, Any] | None = None) -> dict[str, Any]:
    return {"type": event_type, "data": data or {}}


def parse_frame(raw: str | bytes) -> dict[str, Any]:
    """Decode one text frame.

    Only strict JSON objects are accepted. Anything else comes back tagged as
    ``unparseable`` with the raw text attached, never evaluated.
    """
    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError:
            return {"type": UNPARSEABLE, "raw": repr(raw)}
    try:
        frame = json.loads(raw)
    except (ValueError, RecursionError):
        # RecursionError: nesting deeper than the decoder can follow
        logger.debug("Dropping non-JSON frame")
        return {"type": UNPARSEABLE, "raw": raw}
    if not isinstance(frame, dict) or not isinstance(frame.get("type"), str):
        return {"type": UNPARSEABLE, "raw": raw}
    return frame


def frame_payload(frame: dict[str, Any]) -> dict[str, Any]:
    """Return a frame's fields whether sent as ``{type, data}`` or ``{type, ...fields}``."""
    data = frame.get("data")
    if isinstance(data, dict):
        return data
    return {k: v for k, v in frame.items() if k != "type"}
