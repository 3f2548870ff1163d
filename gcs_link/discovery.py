"""Flight-controller identity discovery and stream-rate setup."""

from __future__ import annotations

import logging
from typing import Dict, Mapping, Optional

from pymavlink.dialects.v20 import ardupilotmega as mavlink2

from .connection import MessageSender
from .core import FcuIdentity, Frame, FrameBus, LatestValue

LOGGER = logging.getLogger(__name__)

DEFAULT_MESSAGE_RATES: Dict[int, float] = {
    mavlink2.MAVLINK_MSG_ID_SYS_STATUS: 1.0,
    mavlink2.MAVLINK_MSG_ID_GPS_RAW_INT: 1.0,
    mavlink2.MAVLINK_MSG_ID_GLOBAL_POSITION_INT: 5.0,
    mavlink2.MAVLINK_MSG_ID_VFR_HUD: 5.0,
    mavlink2.MAVLINK_MSG_ID_BATTERY_STATUS: 1.0,
}


def interval_microseconds(rate_hz: float) -> float:
    """Convert a rate to the interval SET_MESSAGE_INTERVAL expects (-1 disables)."""

    if rate_hz <= 0:
        return -1.0
    return 1_000_000.0 / rate_hz


class FcuDiscovery:
    """Latches the first vehicle heartbeat sender as the flight controller.

    Detection is idempotent per connection: once latched, heartbeats from
    other senders are ignored until :meth:`reset` is called on link loss.
    """

    def __init__(
        self,
        bus: FrameBus,
        sender: MessageSender,
        *,
        message_rates: Optional[Mapping[int, float]] = None,
    ) -> None:
        self._bus = bus
        self._sender = sender
        self._message_rates = dict(
            DEFAULT_MESSAGE_RATES if message_rates is None else message_rates
        )
        self.identity: LatestValue[FcuIdentity] = LatestValue(FcuIdentity())

    def _is_vehicle_heartbeat(self, frame: Frame) -> bool:
        return (
            frame.type == "HEARTBEAT"
            and frame.message.type != mavlink2.MAV_TYPE_GCS
            and frame.system_id != self._sender.system_id
        )

    async def run(self) -> None:
        with self._bus.subscribe(self._is_vehicle_heartbeat) as frames:
            async for frame in frames:
                if self.identity.value.detected:
                    continue
                identity = FcuIdentity(
                    system_id=frame.system_id,
                    component_id=frame.component_id,
                    detected=True,
                )
                self.identity.set(identity)
                LOGGER.info(
                    "Flight controller detected (system=%d component=%d)",
                    identity.system_id,
                    identity.component_id,
                )
                await self._configure_streams(identity)

    def reset(self) -> None:
        if self.identity.value.detected:
            LOGGER.info("Flight controller identity cleared")
        self.identity.set(FcuIdentity())

    async def _configure_streams(self, identity: FcuIdentity) -> None:
        for message_id, rate_hz in self._message_rates.items():
            request = mavlink2.MAVLink_command_long_message(
                target_system=identity.system_id,
                target_component=identity.component_id,
                command=mavlink2.MAV_CMD_SET_MESSAGE_INTERVAL,
                confirmation=0,
                param1=float(message_id),
                param2=interval_microseconds(rate_hz),
                param3=0.0,
                param4=0.0,
                param5=0.0,
                param6=0.0,
                param7=0.0,
            )
            await self._sender.send(request)
        LOGGER.info("Requested %d telemetry stream rates", len(self._message_rates))
