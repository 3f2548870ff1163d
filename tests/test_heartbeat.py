import asyncio

import pytest
from pymavlink.dialects.v20 import ardupilotmega as mavlink2

from gcs_link.core import LatestValue, LinkState
from gcs_link.heartbeat import HeartbeatEmitter, build_gcs_heartbeat


def test_heartbeat_identifies_ground_station():
    message = build_gcs_heartbeat()

    assert message.type == mavlink2.MAV_TYPE_GCS
    assert message.autopilot == mavlink2.MAV_AUTOPILOT_INVALID
    assert message.custom_mode == 0
    assert message.mavlink_version == 3


@pytest.mark.asyncio
async def test_emits_only_while_link_active(sender, transport):
    state = LatestValue(LinkState.CONNECTING)
    emitter = HeartbeatEmitter(sender, state, interval=0.02)
    task = asyncio.create_task(emitter.run())

    await asyncio.sleep(0.06)
    assert transport.sent_messages("HEARTBEAT") == []

    state.set(LinkState.ACTIVE)
    await asyncio.sleep(0.1)
    sent_while_active = len(transport.sent_messages("HEARTBEAT"))
    assert sent_while_active >= 3

    state.set(LinkState.INACTIVE)
    await asyncio.sleep(0.05)
    paused = len(transport.sent_messages("HEARTBEAT"))
    await asyncio.sleep(0.06)
    assert len(transport.sent_messages("HEARTBEAT")) == paused

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task


@pytest.mark.asyncio
async def test_send_failures_do_not_stop_emission(sender, transport):
    state = LatestValue(LinkState.ACTIVE)
    emitter = HeartbeatEmitter(sender, state, interval=0.02)
    transport.fail_sends = True
    task = asyncio.create_task(emitter.run())

    await asyncio.sleep(0.05)
    assert emitter.sent == 0

    transport.fail_sends = False
    await asyncio.sleep(0.06)
    assert emitter.sent >= 1

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
