"""Periodic ground-station heartbeat."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from pymavlink.dialects.v20 import ardupilotmega as mavlink2

from . import constants
from .connection import MessageSender
from .core import LatestValue, LinkState

LOGGER = logging.getLogger(__name__)


def build_gcs_heartbeat() -> Any:
    return mavlink2.MAVLink_heartbeat_message(
        type=mavlink2.MAV_TYPE_GCS,
        autopilot=mavlink2.MAV_AUTOPILOT_INVALID,
        base_mode=0,
        custom_mode=0,
        system_status=mavlink2.MAV_STATE_ACTIVE,
        mavlink_version=constants.MAVLINK_PROTOCOL_VERSION,
    )


class HeartbeatEmitter:
    """Announces this station at a fixed cadence while the link is active."""

    def __init__(
        self,
        sender: MessageSender,
        link_state: LatestValue[LinkState],
        *,
        interval: float = 1.0,
    ) -> None:
        self._sender = sender
        self._link_state = link_state
        self._interval = interval
        self._heartbeat = build_gcs_heartbeat()
        self.sent = 0

    async def run(self) -> None:
        while True:
            await self._link_state.wait_for(lambda state: state is LinkState.ACTIVE)
            LOGGER.debug("Heartbeat emission started")
            while self._link_state.value is LinkState.ACTIVE:
                if await self._sender.send(self._heartbeat):
                    self.sent += 1
                await asyncio.sleep(self._interval)
            LOGGER.debug("Heartbeat emission paused (link %s)", self._link_state.value.value)
