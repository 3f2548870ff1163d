"""Connection supervision and outbound message delivery.

The supervisor owns the connect/reconnect loop for a single transport. While
the link is active it pumps decoded frames into the shared FrameBus and
watches the transport's health signal; when health drops it marks the link
inactive, notifies listeners so they can reset per-connection state, and
resumes connection attempts at a fixed interval.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional

from .core import FrameBus, LatestValue, LinkState, MavlinkTransport, TransportError

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class LinkDiagnostics:
    """Non-fatal failure history surfaced through the health endpoint."""

    last_failure: Optional[str] = None
    last_failure_at: Optional[datetime] = None
    failure_count: int = 0
    connect_attempts: int = 0

    def record(self, detail: str) -> None:
        self.last_failure = detail
        self.last_failure_at = datetime.now(timezone.utc)
        self.failure_count += 1

    def as_dict(self) -> dict[str, object]:
        return {
            "lastFailure": self.last_failure,
            "lastFailureAt": (
                self.last_failure_at.isoformat(timespec="seconds")
                if self.last_failure_at
                else None
            ),
            "failureCount": self.failure_count,
            "connectAttempts": self.connect_attempts,
        }


class MessageSender:
    """Sends messages under this station's identity; failures are logged only."""

    def __init__(
        self,
        transport: MavlinkTransport,
        *,
        system_id: int,
        component_id: int,
        diagnostics: Optional[LinkDiagnostics] = None,
    ) -> None:
        self._transport = transport
        self.system_id = system_id
        self.component_id = component_id
        self._diagnostics = diagnostics or LinkDiagnostics()

    async def send(self, message: Any) -> bool:
        try:
            await self._transport.send(self.system_id, self.component_id, message)
        except TransportError as exc:
            LOGGER.warning("Failed to send %s: %s", message.get_type(), exc)
            self._diagnostics.record(f"send {message.get_type()}: {exc}")
            return False
        LOGGER.debug("Sent %s", message.get_type())
        return True


class ConnectionSupervisor:
    """Keeps one transport connected for as long as the process runs."""

    def __init__(
        self,
        transport: MavlinkTransport,
        bus: FrameBus,
        *,
        retry_interval: float = 1.0,
        diagnostics: Optional[LinkDiagnostics] = None,
    ) -> None:
        self._transport = transport
        self._bus = bus
        self._retry_interval = max(0.0, retry_interval)
        self.diagnostics = diagnostics or LinkDiagnostics()
        self.state: LatestValue[LinkState] = LatestValue(LinkState.DISCONNECTED)
        self._stop_event = asyncio.Event()
        self._on_inactive_callbacks: List[Callable[[], Any]] = []
        self._on_active_callbacks: List[Callable[[], Any]] = []

    @property
    def is_active(self) -> bool:
        return self.state.value is LinkState.ACTIVE

    def register_inactive_callback(self, callback: Callable[[], Any]) -> None:
        """Register callback invoked each time an active link is lost."""
        self._on_inactive_callbacks.append(callback)

    def register_active_callback(self, callback: Callable[[], Any]) -> None:
        """Register callback invoked each time the link becomes active."""
        self._on_active_callbacks.append(callback)

    async def run(self) -> None:
        """Connect, watch and reconnect until :meth:`stop` is called."""

        self._stop_event.clear()
        try:
            while not self._stop_event.is_set():
                self._transition(LinkState.CONNECTING)
                if not await self._attempt_connect():
                    if await self._sleep_or_stop(self._retry_interval):
                        break
                    continue

                self._transition(LinkState.ACTIVE)
                await self._notify(self._on_active_callbacks, "active")
                await self._watch_active_link()

                if self._stop_event.is_set():
                    break
                self._transition(LinkState.INACTIVE)
                await self._notify(self._on_inactive_callbacks, "inactive")
        finally:
            with contextlib.suppress(TransportError, OSError):
                await self._transport.close()
            if self.state.value is LinkState.ACTIVE:
                await self._notify(self._on_inactive_callbacks, "inactive")
            self._transition(LinkState.DISCONNECTED)

    async def stop(self) -> None:
        """Request an intentional disconnect; :meth:`run` returns afterwards."""

        self._stop_event.set()
        with contextlib.suppress(TransportError, OSError):
            await self._transport.close()

    async def _attempt_connect(self) -> bool:
        self.diagnostics.connect_attempts += 1
        attempt = self.diagnostics.connect_attempts
        try:
            connected = await self._transport.connect()
        except TransportError as exc:
            LOGGER.warning(
                "Connection attempt %d failed: %s, retrying in %.1fs",
                attempt,
                exc,
                self._retry_interval,
            )
            self.diagnostics.record(str(exc))
            return False

        if not connected:
            LOGGER.warning(
                "Connection attempt %d was refused, retrying in %.1fs",
                attempt,
                self._retry_interval,
            )
            self.diagnostics.record("connect refused")
        return connected

    async def _watch_active_link(self) -> None:
        pump = asyncio.create_task(self._pump_frames(), name="link:frame-pump")
        unhealthy = asyncio.create_task(
            self._transport.health.wait_for(lambda healthy: not healthy),
            name="link:health-watch",
        )
        stopped = asyncio.create_task(self._stop_event.wait(), name="link:stop-watch")
        waiters = {pump, unhealthy, stopped}
        try:
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in waiters:
                task.cancel()
            await asyncio.gather(*waiters, return_exceptions=True)

        if not self._stop_event.is_set():
            LOGGER.warning("Link to flight controller lost")
            self.diagnostics.record("link lost")
            with contextlib.suppress(TransportError, OSError):
                await self._transport.close()

    async def _pump_frames(self) -> None:
        try:
            async for frame in self._transport.frames():
                self._bus.publish(frame)
        except (TransportError, OSError) as exc:
            LOGGER.warning("Frame stream ended with error: %s", exc)
            self.diagnostics.record(f"frame stream: {exc}")
        except Exception as exc:
            LOGGER.exception("Frame stream failed unexpectedly")
            self.diagnostics.record(f"frame stream: {exc!r}")

    async def _sleep_or_stop(self, delay: float) -> bool:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return False
        return True

    def _transition(self, state: LinkState) -> None:
        previous = self.state.value
        if previous is state:
            return
        LOGGER.info("Link state transition %s -> %s", previous.value, state.value)
        self.state.set(state)

    async def _notify(self, callbacks: List[Callable[[], Any]], label: str) -> None:
        for callback in callbacks:
            try:
                result = callback()
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                LOGGER.exception("Link %s callback failed", label)
