import logging
from typing import Any, Iterable

from app.errors import NotFound
from app.models.communication import ChatMessage, Communication
from app.models.events import MESSAGE_SENT, NEW_MESSAGE, make_event
from app.services.auth import Identity
from app.services.presence import Channel, PresenceRegistry
from app.services.store import Store

logger = logging.getLogger(__name__)


class Dispatcher:
    """Delivers events to connected clients found in the presence registry.

    Delivery is best-effort: a channel that fails mid-send is logged and
    skipped, never retried, and the failure is never raised to the caller
    whose mutation triggered the event.
    """

    def __init__(self, presence: PresenceRegistry) -> None:
        self.presence = presence

    async def _deliver(self, channel: Channel, event: dict[str, Any]) -> bool:
        try:
            await channel.send_json(event)
            return True
        except Exception as e:
            logger.warning("Dropped %s event for a closed channel: %s", event.get("type"), e)
            return False

    async def broadcast_to_role(self, role: str, event: dict[str, Any]) -> int:
        """Send to every channel of ``role`` connected right now. Returns successful sends."""
        delivered = 0
        for channel in self.presence.find_all_by_role(role):
            if await self._deliver(channel, event):
                delivered += 1
        logger.debug("Broadcast %s to %d %s client(s)", event.get("type"), delivered, role)
        return delivered

    async def send_to_identity(self, role: str, user_id: int, event: dict[str, Any]) -> bool:
        """Send to one identity if connected; silently dropped otherwise."""
        channel = self.presence.find_by_identity(role, user_id)
        if channel is None:
            logger.debug("No connection for %s %s, %s not delivered", role, user_id, event.get("type"))
            return False
        return await self._deliver(channel, event)

    async def send_to_parties(self, parties: Iterable[tuple[str, int]], event: dict[str, Any]) -> int:
        """Send to each distinct ``(role, user_id)`` in ``parties``."""
        delivered = 0
        seen: set[tuple[str, int]] = set()
        for role, user_id in parties:
            if (role, user_id) in seen:
                continue
            seen.add((role, user_id))
            if await self.send_to_identity(role, user_id, event):
                delivered += 1
        return delivered

    async def relay_chat(
        self,
        store: Store,
        sender: Identity,
        chat: ChatMessage,
        reply_to: Channel | None = None,
    ) -> Communication:
        """Persist a chat message, try to push it to the receiver, then ack the sender.

        The message is stored even when the receiver is offline; they pick it
        up on their next fetch. The sender's ack only means "stored", not "read"
        or "delivered".
        """
        request = await store.get_request(chat.emergency_request_id)
        if request is None:
            raise NotFound(f"Emergency request {chat.emergency_request_id} not found")

        communication = await store.create_communication(
            emergency_request_id=chat.emergency_request_id,
            sender_id=sender.user_id,
            sender_role=sender.role,
            receiver_id=chat.receiver_id,
            receiver_role=chat.receiver_role,
            message=chat.message,
        )
        payload = communication.model_dump(mode="json")

        await self.send_to_identity(chat.receiver_role, chat.receiver_id, make_event(NEW_MESSAGE, payload))

        ack = make_event(MESSAGE_SENT, payload)
        if reply_to is not None:
            await self._deliver(reply_to, ack)
        else:
            await self.send_to_identity(sender.role, sender.user_id, ack)
        return communication
