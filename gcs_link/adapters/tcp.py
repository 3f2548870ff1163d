"""MAVLink over a TCP stream, decoded with pymavlink."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, AsyncIterator, Optional

from pymavlink.dialects.v20 import ardupilotmega as mavlink2

from ..core import Frame, LatestValue, TransportError

LOGGER = logging.getLogger(__name__)

READ_CHUNK_SIZE = 4096


class TcpMavlinkTransport:
    """Client connection to a MAVLink TCP endpoint (SITL or a telemetry bridge)."""

    def __init__(
        self,
        host: str,
        port: int,
        *,
        connect_timeout: float = 5.0,
    ) -> None:
        self._host = host
        self._port = port
        self._connect_timeout = connect_timeout
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._codec = mavlink2.MAVLink(None)
        self._codec.robust_parsing = True
        self.health: LatestValue[bool] = LatestValue(False)

    @property
    def endpoint(self) -> str:
        return f"tcp:{self._host}:{self._port}"

    async def connect(self) -> bool:
        await self.close()
        try:
            self._reader, self._writer = await asyncio.wait_for(
                asyncio.open_connection(self._host, self._port),
                timeout=self._connect_timeout,
            )
        except (OSError, asyncio.TimeoutError) as exc:
            raise TransportError(
                f"Unable to connect to {self.endpoint}: {exc or 'timed out'}"
            ) from exc

        self._codec = mavlink2.MAVLink(None)
        self._codec.robust_parsing = True
        self.health.set(True)
        LOGGER.info("Connected to %s", self.endpoint)
        return True

    async def close(self) -> None:
        self.health.set(False)
        writer = self._writer
        self._reader = None
        self._writer = None
        if writer is None:
            return
        writer.close()
        with contextlib.suppress(OSError, ConnectionError):
            await writer.wait_closed()

    async def frames(self) -> AsyncIterator[Frame]:
        reader = self._reader
        if reader is None:
            return
        while True:
            try:
                data = await reader.read(READ_CHUNK_SIZE)
            except (OSError, ConnectionError) as exc:
                LOGGER.warning("Read from %s failed: %s", self.endpoint, exc)
                self.health.set(False)
                return
            if not data:
                LOGGER.warning("Connection to %s closed by peer", self.endpoint)
                self.health.set(False)
                return

            for message in self._codec.parse_buffer(data) or []:
                if message.get_type() == "BAD_DATA":
                    LOGGER.debug("Discarding undecodable bytes from %s", self.endpoint)
                    continue
                yield Frame(
                    system_id=message.get_srcSystem(),
                    component_id=message.get_srcComponent(),
                    message=message,
                )

    async def send(self, system_id: int, component_id: int, message: Any) -> None:
        writer = self._writer
        if writer is None or not self.health.value:
            raise TransportError(f"Not connected to {self.endpoint}")

        codec = self._codec
        codec.srcSystem = system_id
        codec.srcComponent = component_id
        payload = message.pack(codec)
        codec.seq = (codec.seq + 1) % 256

        try:
            writer.write(payload)
            await writer.drain()
        except (OSError, ConnectionError) as exc:
            self.health.set(False)
            raise TransportError(f"Send to {self.endpoint} failed: {exc}") from exc
