"""Protocol definitions for MAVLink transports."""

from __future__ import annotations

from typing import Any, AsyncIterator, Protocol

from .bus import LatestValue
from .models import Frame


class TransportError(RuntimeError):
    """Raised when a transport cannot connect or deliver a message."""


class MavlinkTransport(Protocol):
    """Byte transport that already speaks the MAVLink wire codec."""

    health: LatestValue[bool]

    async def connect(self) -> bool:
        """Attempt a single connection; raise TransportError on failure."""
        ...

    async def close(self) -> None:
        """Release the underlying channel and mark the link unhealthy."""
        ...

    def frames(self) -> AsyncIterator[Frame]:
        """Stream decoded inbound frames until the channel closes."""
        ...

    async def send(self, system_id: int, component_id: int, message: Any) -> None:
        """Encode ``message`` with the given source ids and transmit it."""
        ...
