import asyncio

import pytest
from pymavlink.dialects.v20 import ardupilotmega as mavlink2

from gcs_link.core import CorrelationTable

from fakes import command_ack, frame

ARM = mavlink2.MAV_CMD_COMPONENT_ARM_DISARM
TAKEOFF = mavlink2.MAV_CMD_NAV_TAKEOFF


def _for_command(command):
    return lambda item: item.message.command == command


@pytest.mark.asyncio
async def test_matching_frame_resolves_waiter():
    table = CorrelationTable()
    waiter = asyncio.create_task(table.expect(_for_command(ARM), timeout=1.0))
    await asyncio.sleep(0)

    ack = frame(command_ack(ARM))
    assert table.offer(frame(command_ack(TAKEOFF))) == 0
    assert table.offer(ack) == 1

    assert await waiter is ack
    assert len(table) == 0


@pytest.mark.asyncio
async def test_concurrent_waiters_for_same_command_are_independent():
    """Each waiter registered before a match receives that match."""
    table = CorrelationTable()
    first = table.register(_for_command(ARM), timeout=1.0)
    second = table.register(_for_command(ARM), timeout=1.0)

    ack = frame(command_ack(ARM))
    assert table.offer(ack) == 2

    assert await table.wait(first) is ack
    assert await table.wait(second) is ack


@pytest.mark.asyncio
async def test_waiter_registered_after_match_waits_for_the_next_one():
    table = CorrelationTable()
    table.offer(frame(command_ack(ARM)))

    late = asyncio.create_task(table.expect(_for_command(ARM), timeout=1.0))
    await asyncio.sleep(0)
    later_ack = frame(command_ack(ARM, mavlink2.MAV_RESULT_DENIED))
    table.offer(later_ack)

    assert await late is later_ack


@pytest.mark.asyncio
async def test_timeout_returns_none_and_clears_entry():
    table = CorrelationTable()

    assert await table.expect(_for_command(ARM), timeout=0.05) is None
    assert len(table) == 0


@pytest.mark.asyncio
async def test_expire_purges_overdue_entries():
    table = CorrelationTable()
    entry = table.register(_for_command(ARM), timeout=0.0)
    table.register(_for_command(TAKEOFF), timeout=10.0)

    assert table.expire() == 1
    assert len(table) == 1
    assert await table.wait(entry) is None
