"""End-to-end tests for VehicleLink over the in-memory transport."""

import asyncio
import contextlib

import pytest
from pymavlink.dialects.v20 import ardupilotmega as mavlink2

from gcs_link.core import FailureKind, LinkState, MissionItem
from gcs_link.vehicle import VehicleLink

from fakes import FakeTransport, FakeVehicle, fast_config, frame, statustext

ARM = mavlink2.MAV_CMD_COMPONENT_ARM_DISARM


@contextlib.asynccontextmanager
async def linked(**behaviour):
    transport = FakeTransport()
    fake = FakeVehicle(transport, **behaviour)
    link = VehicleLink(transport, fast_config())
    async with link:
        assert await link.link_state.wait_for(
            lambda state: state is LinkState.ACTIVE, timeout=1.0
        )
        transport.deliver(fake.heartbeat_frame())
        assert await link.fcu.wait_for(lambda fcu: fcu.detected, timeout=1.0)
        yield link, transport, fake


@pytest.mark.asyncio
async def test_detection_configures_streams_and_heartbeats():
    async with linked() as (link, transport, _):
        await asyncio.sleep(0.12)
        assert link.fcu.value.system_id == 1
        assert link.snapshot.value.fcu_detected is True

        intervals = transport.sent_commands(mavlink2.MAV_CMD_SET_MESSAGE_INTERVAL)
        assert len(intervals) == 5
        heartbeats = transport.sent_messages("HEARTBEAT")
        assert len(heartbeats) >= 2
        assert heartbeats[0].type == mavlink2.MAV_TYPE_GCS
        assert all(sysid == 255 for sysid, _, _ in transport.sent)

    assert link.running is False
    assert link.link_state.value is LinkState.DISCONNECTED


@pytest.mark.asyncio
async def test_link_loss_clears_identity_and_reconnects():
    async with linked() as (link, transport, fake):
        transport.drop()

        assert await link.fcu.wait_for(lambda fcu: not fcu.detected, timeout=1.0)
        assert link.snapshot.value.connected is False
        assert await link.link_state.wait_for(
            lambda state: state is LinkState.ACTIVE, timeout=1.0
        )
        assert link.diagnostics.last_failure == "link lost"

        transport.deliver(fake.heartbeat_frame())
        assert await link.fcu.wait_for(lambda fcu: fcu.detected, timeout=1.0)

    assert transport.connect_calls == 2


@pytest.mark.asyncio
async def test_operations_require_detected_fcu():
    transport = FakeTransport()
    link = VehicleLink(transport, fast_config())

    for result in (
        await link.arm(),
        await link.change_mode("Loiter"),
        await link.send_raw_command(ARM, 1),
        await link.upload_mission([MissionItem.takeoff(10.0)]),
        await link.request_mission_readback(),
        await link.start_mission(),
    ):
        assert result.success is False
        assert result.failure is FailureKind.PRECONDITION
    assert transport.sent == []


@pytest.mark.asyncio
async def test_arm_and_disarm_report_ack():
    async with linked() as (link, transport, fake):
        armed = await link.arm()
        assert armed.success is True
        assert armed.value.result == mavlink2.MAV_RESULT_ACCEPTED

        fake.accept_arm = False
        disarmed = await link.disarm()

    assert disarmed.failure is FailureKind.REJECTED
    assert disarmed.reason == "MAV_CMD_COMPONENT_ARM_DISARM rejected (DENIED)"
    assert [m.param1 for m in transport.sent_commands(ARM)] == [1.0, 0.0]


@pytest.mark.asyncio
async def test_takeoff_places_altitude_in_param7():
    async with linked() as (link, transport, _):
        result = await link.takeoff(25.0)

    assert result.success is True
    (takeoff,) = transport.sent_commands(mavlink2.MAV_CMD_NAV_TAKEOFF)
    assert takeoff.param7 == 25.0
    assert takeoff.param1 == 0.0


@pytest.mark.asyncio
async def test_unacknowledged_command_times_out():
    async with linked() as (link, transport, fake):
        transport.responder = None
        result = await link.land()

    assert result.failure is FailureKind.TIMEOUT
    assert result.reason == "No acknowledgement for MAV_CMD_NAV_LAND"


@pytest.mark.asyncio
async def test_change_mode_outcomes():
    async with linked() as (link, _, fake):
        unknown = await link.change_mode("Hover")
        loiter = await link.change_mode("loiter")
        fake.accept_modes = False
        stuck = await link.change_mode("RTL")

    assert unknown.failure is FailureKind.INVALID
    assert loiter.success is True
    assert loiter.value == "Loiter"
    assert stuck.failure is FailureKind.TIMEOUT
    assert stuck.reason == "Mode change to RTL not confirmed. Current mode: Loiter"


@pytest.mark.asyncio
async def test_raw_command_and_command_ack():
    async with linked() as (link, transport, _):
        raw = await link.send_raw_command(mavlink2.MAV_CMD_DO_SET_SERVO, 9, 1500)
        acked = await link.send_command_ack(ARM, mavlink2.MAV_RESULT_ACCEPTED)

    assert raw.success is True
    assert acked.success is True
    (servo,) = transport.sent_commands(mavlink2.MAV_CMD_DO_SET_SERVO)
    assert (servo.param1, servo.param2) == (9.0, 1500.0)
    assert transport.sent_messages("COMMAND_ACK")[0].command == ARM


@pytest.mark.asyncio
async def test_commands_with_too_many_parameters_fail_without_sending():
    servo = mavlink2.MAV_CMD_DO_SET_SERVO
    async with linked() as (link, transport, _):
        raw = await link.send_raw_command(servo, *[1.0] * 8)
        acked = await link.command_with_ack(servo, *[1.0] * 8)
        pending = link.commands.pending

    assert raw.failure is FailureKind.INVALID
    assert acked.failure is FailureKind.INVALID
    assert raw.reason == "MAV_CMD_DO_SET_SERVO takes at most 7 parameters"
    assert transport.sent_commands(servo) == []
    assert pending == 0


@pytest.mark.asyncio
async def test_streams_relay_status_text_and_acks():
    async with linked() as (link, transport, _):
        # Let the stream-rate acknowledgements from detection drain first.
        await asyncio.sleep(0.05)
        texts = link.status_text_stream()
        acks = link.command_ack_stream()
        next_text = asyncio.create_task(texts.__anext__())
        next_ack = asyncio.create_task(acks.__anext__())
        await asyncio.sleep(0)

        transport.deliver(frame(statustext("Arming motors")))
        await link.send_raw_command(ARM, 1)

        text = await asyncio.wait_for(next_text, timeout=1.0)
        ack = await asyncio.wait_for(next_ack, timeout=1.0)
        await texts.aclose()
        await acks.aclose()

    assert text.text == "Arming motors"
    assert text.level == "info"
    assert ack.command == ARM
