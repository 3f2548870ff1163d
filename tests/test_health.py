import aiohttp
import pytest

from gcs_link.core import FcuIdentity, LinkState
from gcs_link.health import HealthReporter, HealthServer


def _components(snapshot):
    component_list = snapshot.get("components", [])
    assert isinstance(component_list, list)
    return {item["name"]: item for item in component_list}


async def _linked_reporter(**kwargs) -> HealthReporter:
    reporter = HealthReporter(**kwargs)
    await reporter.report_link(LinkState.ACTIVE)
    await reporter.report_fcu(FcuIdentity(system_id=1, component_id=1, detected=True))
    return reporter


@pytest.mark.asyncio
async def test_link_and_fcu_reports():
    reporter = HealthReporter()

    await reporter.report_link(LinkState.CONNECTING, "connect refused")
    await reporter.report_fcu(FcuIdentity())

    snapshot = await reporter.snapshot()

    assert snapshot["status"] == "degraded"
    components = _components(snapshot)
    assert components["link"]["healthy"] is False
    assert components["link"]["detail"] == "connecting: connect refused"
    assert components["fcu"]["healthy"] is False
    assert components["fcu"]["detail"] == "not detected"


@pytest.mark.asyncio
async def test_ok_requires_link_and_fcu():
    reporter = HealthReporter()
    await reporter.report_link(LinkState.ACTIVE)
    assert (await reporter.snapshot())["status"] == "degraded"

    await reporter.report_fcu(FcuIdentity(system_id=1, component_id=1, detected=True))
    snapshot = await reporter.snapshot()

    assert snapshot["status"] == "ok"
    assert _components(snapshot)["fcu"]["detail"] == "system 1 component 1"


@pytest.mark.asyncio
async def test_app_state_and_auxiliary_components_affect_status():
    reporter = await _linked_reporter(diagnostics=lambda: {"failureCount": 3})

    await reporter.set_app_state("awaiting_fcu", healthy=False)
    snapshot = await reporter.snapshot()

    assert snapshot["status"] == "degraded"
    app = snapshot.get("appState")
    assert app is not None
    assert app["state"] == "awaiting_fcu"
    assert app["healthy"] is False
    assert snapshot["linkDiagnostics"] == {"failureCount": 3}

    await reporter.set_app_state("active", healthy=True)
    await reporter.update("health-endpoint", False, "address in use")
    assert (await reporter.snapshot())["status"] == "degraded"


@pytest.mark.asyncio
async def test_health_server_serves_snapshot(unused_tcp_port):
    reporter = await _linked_reporter()

    host = "127.0.0.1"
    port = unused_tcp_port
    server = HealthServer(
        reporter, host, port, telemetry=lambda: {"snapshot": {"mode": "Loiter"}}
    )
    await server.start()

    try:
        async with aiohttp.ClientSession() as session:
            async with session.get(f"http://{host}:{port}/healthz") as response:
                payload = await response.json()
                assert response.status == 200
                assert payload["status"] == "ok"
            async with session.get(f"http://{host}:{port}/telemetry") as response:
                payload = await response.json()
                assert response.status == 200
                assert payload["snapshot"]["mode"] == "Loiter"
    finally:
        await server.stop()


@pytest.mark.asyncio
async def test_health_server_reports_degraded_and_missing_telemetry(unused_tcp_port):
    reporter = HealthReporter()
    await reporter.report_link(LinkState.CONNECTING)

    host = "127.0.0.1"
    port = unused_tcp_port
    server = HealthServer(reporter, host, port)
    await server.start()

    try:
        async with aiohttp.ClientSession() as session:
            async with session.get(f"http://{host}:{port}/healthz") as response:
                assert response.status == 503
            async with session.get(f"http://{host}:{port}/telemetry") as response:
                assert response.status == 404
    finally:
        await server.stop()
