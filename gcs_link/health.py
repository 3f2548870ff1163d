"""Link health reporting and the HTTP endpoint that serves it."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from aiohttp import web

from .core import FcuIdentity, LinkState

LOGGER = logging.getLogger(__name__)

TelemetryProvider = Callable[[], Dict[str, Any]]
DiagnosticsProvider = Callable[[], Dict[str, object]]

LINK = "link"
FCU = "fcu"


@dataclass(slots=True)
class ComponentStatus:
    name: str
    healthy: bool
    detail: Optional[str] = None
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def as_dict(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "healthy": self.healthy,
            "detail": self.detail,
            "updatedAt": self.updated_at.isoformat(timespec="seconds"),
        }


class HealthReporter:
    """Tracks the link, the flight controller and auxiliary components.

    The station is only ``ok`` once both the link and the flight controller
    have been reported healthy. Link failure history is attached from the
    optional ``diagnostics`` provider.
    """

    def __init__(self, diagnostics: Optional[DiagnosticsProvider] = None) -> None:
        self._diagnostics = diagnostics
        self._components: Dict[str, ComponentStatus] = {}
        self._app_state: Optional[ComponentStatus] = None
        self._lock = asyncio.Lock()

    async def update(
        self, name: str, healthy: bool, detail: Optional[str] = None
    ) -> None:
        async with self._lock:
            self._components[name] = ComponentStatus(
                name=name, healthy=healthy, detail=detail
            )

    async def report_link(
        self, state: LinkState, last_failure: Optional[str] = None
    ) -> None:
        active = state is LinkState.ACTIVE
        detail = state.value
        if not active and last_failure:
            detail = f"{state.value}: {last_failure}"
        await self.update(LINK, active, detail)

    async def report_fcu(self, identity: FcuIdentity) -> None:
        if identity.detected:
            await self.update(
                FCU,
                True,
                f"system {identity.system_id} component {identity.component_id}",
            )
        else:
            await self.update(FCU, False, "not detected")

    async def set_app_state(
        self, state: str, *, healthy: bool, detail: Optional[str] = None
    ) -> None:
        async with self._lock:
            self._app_state = ComponentStatus(
                name="app", healthy=healthy, detail=detail if detail is not None else state
            )

    async def snapshot(self) -> Dict[str, object]:
        async with self._lock:
            components = [status.as_dict() for status in self._components.values()]
            app_state = self._app_state
            linked = all(
                name in self._components and self._components[name].healthy
                for name in (LINK, FCU)
            )

        healthy = linked and all(item["healthy"] for item in components)
        if app_state is not None and not app_state.healthy:
            healthy = False

        payload: Dict[str, object] = {
            "status": "ok" if healthy else "degraded",
            "components": components,
        }
        if app_state is not None:
            payload["appState"] = {
                "state": app_state.detail,
                "healthy": app_state.healthy,
                "updatedAt": app_state.updated_at.isoformat(timespec="seconds"),
            }
        if self._diagnostics is not None:
            payload["linkDiagnostics"] = self._diagnostics()
        return payload


class HealthServer:
    """Serves `/healthz` (503 while degraded) and the live `/telemetry` snapshot."""

    def __init__(
        self,
        reporter: HealthReporter,
        host: str,
        port: int,
        *,
        telemetry: Optional[TelemetryProvider] = None,
    ) -> None:
        self._reporter = reporter
        self._host = host
        self._port = port
        self._telemetry = telemetry
        self._runner: Optional[web.AppRunner] = None

    async def start(self) -> None:
        app = web.Application()
        app.router.add_get("/healthz", self._handle_health)
        app.router.add_get("/telemetry", self._handle_telemetry)

        runner = web.AppRunner(app)
        await runner.setup()
        try:
            await web.TCPSite(runner, self._host, self._port).start()
        except OSError:
            await runner.cleanup()
            raise
        self._runner = runner
        LOGGER.info(
            "Health endpoint listening on http://%s:%s/healthz", self._host, self._port
        )

    async def stop(self) -> None:
        runner, self._runner = self._runner, None
        if runner is not None:
            with contextlib.suppress(RuntimeError):
                await runner.cleanup()

    async def _handle_health(self, request: web.Request) -> web.Response:
        snapshot = await self._reporter.snapshot()
        status = 200 if snapshot["status"] == "ok" else 503
        return web.json_response(snapshot, status=status)

    async def _handle_telemetry(self, request: web.Request) -> web.Response:
        if self._telemetry is None:
            return web.json_response({"error": "telemetry unavailable"}, status=404)
        return web.json_response(self._telemetry())
