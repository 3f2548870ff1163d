"""Tests for GroundStationApp state mirroring and health reporting."""

from __future__ import annotations

import asyncio
import contextlib
from typing import Callable

import aiohttp
import pytest

from gcs_link.app import AppState, GroundStationApp
from gcs_link.config import HealthConfig

from fakes import FakeTransport, FakeVehicle, fast_config


async def _eventually(predicate: Callable[[], bool], timeout: float = 1.0) -> bool:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() >= deadline:
            return False
        await asyncio.sleep(0.01)
    return True


@contextlib.asynccontextmanager
async def running_app(app: GroundStationApp):
    task = asyncio.create_task(app.run())
    try:
        yield task
    finally:
        app.request_shutdown()
        await asyncio.wait_for(task, timeout=2.0)


async def _components(app: GroundStationApp) -> dict:
    snapshot = await app.health.snapshot()
    return {item["name"]: item for item in snapshot["components"]}


@pytest.mark.asyncio
async def test_app_waits_for_fcu_then_becomes_active():
    transport = FakeTransport()
    fake = FakeVehicle(transport, mode=5)
    app = GroundStationApp(fast_config(), transport=transport)

    async with running_app(app):
        assert await _eventually(lambda: app.state is AppState.AWAITING_FCU)
        components = await _components(app)
        assert components["link"]["healthy"] is True
        assert components["fcu"]["healthy"] is False

        transport.deliver(fake.heartbeat_frame())
        assert await _eventually(lambda: app.state is AppState.ACTIVE)
        components = await _components(app)
        assert components["fcu"]["detail"] == "system 1 component 1"

        payload = app.telemetry_payload()
        assert payload["link"] == "active"
        assert payload["fcu"]["detected"] is True

    assert app.state is AppState.STOPPING
    components = await _components(app)
    assert components["link"]["detail"] == "shutdown"
    assert app.vehicle.running is False


@pytest.mark.asyncio
async def test_app_reports_link_loss():
    transport = FakeTransport(connect_results=[True, False, False, False])
    fake = FakeVehicle(transport)
    app = GroundStationApp(fast_config(), transport=transport)

    async with running_app(app):
        assert await _eventually(lambda: app.vehicle.link_state.value.value == "active")
        transport.deliver(fake.heartbeat_frame())
        assert await _eventually(lambda: app.state is AppState.ACTIVE)

        transport.drop()
        assert await _eventually(lambda: app.state is AppState.AWAITING_LINK)
        components = await _components(app)
        assert components["link"]["healthy"] is False
        assert components["fcu"]["detail"] == "not detected"


@pytest.mark.asyncio
async def test_app_serves_health_and_telemetry(unused_tcp_port):
    config = fast_config()
    config.health = HealthConfig(enabled=True, host="127.0.0.1", port=unused_tcp_port)
    transport = FakeTransport()
    fake = FakeVehicle(transport, mode=5)
    app = GroundStationApp(config, transport=transport)

    async with running_app(app):
        assert await _eventually(lambda: app.state is AppState.AWAITING_FCU)
        transport.deliver(fake.heartbeat_frame())
        transport.deliver(fake.heartbeat_frame())
        assert await _eventually(
            lambda: app.state is AppState.ACTIVE
            and app.vehicle.snapshot.value.mode == "Loiter"
        )

        base = f"http://127.0.0.1:{unused_tcp_port}"
        async with aiohttp.ClientSession() as session:
            async with session.get(f"{base}/telemetry") as response:
                payload = await response.json()
                assert response.status == 200
                assert payload["snapshot"]["mode"] == "Loiter"
            async with session.get(f"{base}/healthz") as response:
                health = await response.json()
                assert response.status == 200
                assert health["appState"]["healthy"] is True
                assert health["linkDiagnostics"]["connectAttempts"] == 1
