import logging
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class Channel(Protocol):
    """Anything that can push a JSON frame to one connected client (e.g. a WebSocket)."""

    async def send_json(self, data: Any) -> None: ...


class PresenceRegistry:
    """In-memory directory of connected clients keyed by ``(role, user_id)``.

    One channel per identity: registering again replaces the previous channel,
    which is treated as stale. Nothing is persisted; after a restart no client
    is reachable until it reconnects.
    """

    def __init__(self) -> None:
        self._channels: dict[tuple[str, int], Channel] = {}

    def register(self, role: str, user_id: int, channel: Channel) -> Channel | None:
        """Map an identity to a channel. Returns the channel it replaced, if any."""
        key = (role, user_id)
        previous = self._channels.get(key)
        self._channels[key] = channel
        if previous is not None and previous is not channel:
            logger.info("Replaced stale connection for %s %s", role, user_id)
            return previous
        logger.info("Registered %s %s (%d connected)", role, user_id, len(self._channels))
        return None

    def unregister(self, role: str, user_id: int, channel: Channel | None = None) -> bool:
        """Drop an identity's mapping.

        With ``channel`` given, only drops the mapping while it still points at
        that channel, so a closing stale connection cannot evict its replacement.
        """
        key = (role, user_id)
        current = self._channels.get(key)
        if current is None:
            return False
        if channel is not None and current is not channel:
            return False
        del self._channels[key]
        logger.info("Unregistered %s %s (%d connected)", role, user_id, len(self._channels))
        return True

    def find_by_identity(self, role: str, user_id: int) -> Channel | None:
        return self._channels.get((role, user_id))

    def find_all_by_role(self, role: str) -> list[Channel]:
        # Snapshot, so callers may await between sends while clients come and go
        return [ch for (r, _), ch in self._channels.items() if r == role]

    def __len__(self) -> int:
        return len(self._channels)
