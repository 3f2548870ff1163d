"""Main application entry-point for gcs-link."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from enum import Enum
from typing import Any, Dict, Optional

from .adapters import build_transport
from .config import GcsLinkConfig, load_config
from .core import FcuIdentity, LinkState, MavlinkTransport, TaskScope
from .health import HealthReporter, HealthServer
from .logging import configure_logging
from .vehicle import VehicleLink

LOGGER = logging.getLogger(__name__)


class AppState(str, Enum):
    COLD_START = "cold_start"
    AWAITING_LINK = "awaiting_link"
    AWAITING_FCU = "awaiting_fcu"
    ACTIVE = "active"
    STOPPING = "stopping"


class GroundStationApp:
    """Runs the vehicle link and mirrors its state into the health reporter.

    The transport can be injected for testing; otherwise it is built from
    the ``[link]`` configuration section.
    """

    def __init__(
        self,
        config: Optional[GcsLinkConfig] = None,
        *,
        transport: Optional[MavlinkTransport] = None,
    ) -> None:
        self._config = config or load_config()
        self._transport = transport or build_transport(self._config.link)
        self.vehicle = VehicleLink(self._transport, self._config)
        self._health = HealthReporter(diagnostics=self.vehicle.diagnostics.as_dict)
        self._health_server: Optional[HealthServer] = None
        self._monitors: Optional[TaskScope] = None
        self._shutdown_event: Optional[asyncio.Event] = None
        self._state = AppState.COLD_START

    @property
    def health(self) -> HealthReporter:
        return self._health

    @property
    def state(self) -> AppState:
        return self._state

    async def run(self) -> None:
        self._shutdown_event = asyncio.Event()
        LOGGER.info("gcs-link starting with config: %s", self._config.path)
        await self._start_services()
        try:
            await self._shutdown_event.wait()
        except asyncio.CancelledError:
            LOGGER.info("gcs-link received shutdown signal")
            raise
        finally:
            await self._stop_services()

    def request_shutdown(self) -> None:
        if self._shutdown_event is not None:
            self._shutdown_event.set()

    @classmethod
    def start(cls, config: Optional[GcsLinkConfig] = None) -> None:
        instance = cls(config=config)
        configure_logging(
            instance._config.logging.level,
            log_path=instance._config.logging.path,
            log_network=instance._config.logging.log_network,
        )
        try:
            asyncio.run(instance.run())
        except KeyboardInterrupt:
            LOGGER.info("gcs-link received shutdown signal")

    def telemetry_payload(self) -> Dict[str, Any]:
        return {
            "link": self.vehicle.link_state.value.value,
            "fcu": {
                "systemId": self.vehicle.fcu.value.system_id,
                "componentId": self.vehicle.fcu.value.component_id,
                "detected": self.vehicle.fcu.value.detected,
            },
            "diagnostics": self.vehicle.diagnostics.as_dict(),
            "snapshot": self.vehicle.snapshot.value.as_dict(),
        }

    async def _transition_state(
        self, state: AppState, *, detail: Optional[str] = None
    ) -> None:
        if state == self._state and detail is None:
            return
        previous = self._state
        self._state = state
        message_detail = detail or state.value
        LOGGER.info(
            "App state transition %s -> %s (%s)",
            previous.value,
            state.value,
            message_detail,
        )
        await self._health.set_app_state(
            state.value,
            healthy=state == AppState.ACTIVE,
            detail=message_detail,
        )

    async def _start_services(self) -> None:
        await self._transition_state(AppState.COLD_START, detail="initialising")
        await self._health.update("link", False, "initialising")
        await self._health.update("fcu", False, "awaiting link")

        await self._start_health_server()

        self._monitors = TaskScope("app")
        self._monitors.spawn(self._mirror_link_state(), name="link-health")
        self._monitors.spawn(self._mirror_fcu(), name="fcu-health")
        await self.vehicle.start()
        await self._transition_state(
            AppState.AWAITING_LINK, detail=f"connecting to {self._config.link.host}"
        )

    async def _start_health_server(self) -> None:
        health = self._config.health
        if not health.enabled or health.port <= 0:
            return

        server = HealthServer(
            self._health,
            health.host,
            health.port,
            telemetry=self.telemetry_payload,
        )
        try:
            await server.start()
        except OSError as exc:
            LOGGER.error("Failed to start health endpoint: %s", exc)
            await self._health.update("health-endpoint", False, str(exc))
        else:
            self._health_server = server
            await self._health.update("health-endpoint", True, None)

    async def _mirror_link_state(self) -> None:
        async with contextlib.aclosing(self.vehicle.link_state.subscribe()) as states:
            async for state in states:
                await self._health.report_link(
                    state, self.vehicle.diagnostics.last_failure
                )
                if state is LinkState.ACTIVE and not self.vehicle.fcu.value.detected:
                    await self._transition_state(
                        AppState.AWAITING_FCU, detail="waiting for flight controller"
                    )
                elif state in (LinkState.INACTIVE, LinkState.CONNECTING) and (
                    self._state is AppState.ACTIVE
                ):
                    await self._transition_state(
                        AppState.AWAITING_LINK, detail="link lost; reconnecting"
                    )

    async def _mirror_fcu(self) -> None:
        async with contextlib.aclosing(self.vehicle.fcu.subscribe()) as identities:
            async for identity in identities:
                await self._report_fcu(identity)

    async def _report_fcu(self, identity: FcuIdentity) -> None:
        await self._health.report_fcu(identity)
        if identity.detected:
            await self._transition_state(AppState.ACTIVE, detail="flight controller linked")

    async def _stop_services(self) -> None:
        await self._transition_state(AppState.STOPPING, detail="shutdown requested")
        await self.vehicle.stop()
        if self._monitors is not None:
            await self._monitors.aclose()
            self._monitors = None
        if self._health_server is not None:
            await self._health_server.stop()
            self._health_server = None
            await self._health.update("health-endpoint", False, "shutdown")
        await self._health.update("link", False, "shutdown")
