"""Guarded mission start: arm, switch to AUTO and issue MISSION_START."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from pymavlink.dialects.v20 import ardupilotmega as mavlink2

from .commands import CommandAckCorrelator, ModeChangeCoordinator, result_name
from .connection import MessageSender
from .core import (
    FailureKind,
    FcuIdentity,
    LatestValue,
    OperationResult,
    TelemetrySnapshot,
)

LOGGER = logging.getLogger(__name__)

ARM_ELIGIBLE_MODES = ("stabilize", "loiter")


def preflight_check(
    snapshot: TelemetrySnapshot, *, min_satellites: int = 6
) -> Optional[OperationResult]:
    """Return a failure when the vehicle is not ready for a mission start."""

    if not snapshot.fcu_detected:
        return OperationResult.fail(
            FailureKind.PRECONDITION, "Flight controller not detected"
        )
    if not snapshot.armable:
        return OperationResult.fail(
            FailureKind.PRECONDITION, "Vehicle not armable. Check sensors and GPS."
        )
    satellites = snapshot.satellites or 0
    if satellites < min_satellites:
        return OperationResult.fail(
            FailureKind.PRECONDITION,
            f"Insufficient GPS satellites ({satellites}). "
            f"Need at least {min_satellites} for mission.",
        )
    return None


class MissionStartSequencer:
    def __init__(
        self,
        commands: CommandAckCorrelator,
        modes: ModeChangeCoordinator,
        sender: MessageSender,
        fcu: LatestValue[FcuIdentity],
        snapshot: LatestValue[TelemetrySnapshot],
        *,
        stabilize_timeout: float = 5.0,
        arm_timeout: float = 10.0,
        arm_poll_interval: float = 0.5,
        auto_timeout: float = 8.0,
        start_attempts: int = 3,
        start_ack_timeout: float = 1.5,
        start_retry_delay: float = 0.5,
        first_waypoint_seq: int = 1,
    ) -> None:
        self._commands = commands
        self._modes = modes
        self._sender = sender
        self._fcu = fcu
        self._snapshot = snapshot
        self._stabilize_timeout = stabilize_timeout
        self._arm_timeout = arm_timeout
        self._arm_poll_interval = arm_poll_interval
        self._auto_timeout = auto_timeout
        self._start_attempts = max(1, start_attempts)
        self._start_ack_timeout = start_ack_timeout
        self._start_retry_delay = start_retry_delay
        self._first_waypoint_seq = first_waypoint_seq

    def _current_mode(self) -> str:
        return self._snapshot.value.mode or "Unknown"

    async def start(self) -> OperationResult:
        """Run the start sequence; preconditions are the caller's concern."""

        if self._current_mode().lower() not in ARM_ELIGIBLE_MODES:
            LOGGER.info(
                "Mode %s is not arm-eligible; switching to Stabilize",
                self._current_mode(),
            )
            if not await self._modes.change_mode(
                "Stabilize", timeout=self._stabilize_timeout
            ):
                return OperationResult.fail(
                    FailureKind.TIMEOUT,
                    "Failed to switch to suitable mode for arming. "
                    f"Current mode: {self._current_mode()}",
                )

        if not self._snapshot.value.armed and not await self._arm():
            return OperationResult.fail(
                FailureKind.TIMEOUT, "Vehicle failed to arm. Check pre-arm conditions."
            )

        if "auto" not in self._current_mode().lower():
            if not await self._modes.change_mode("Auto", timeout=self._auto_timeout):
                return OperationResult.fail(
                    FailureKind.TIMEOUT,
                    f"Failed to switch to AUTO mode. Current mode: {self._current_mode()}",
                )

        await self._set_current_item()

        for attempt in range(1, self._start_attempts + 1):
            ack = await self._commands.send_and_await(
                mavlink2.MAV_CMD_MISSION_START,
                0.0,
                0.0,
                timeout=self._start_ack_timeout,
            )
            if ack is None:
                LOGGER.warning(
                    "MISSION_START attempt %d/%d not acknowledged",
                    attempt,
                    self._start_attempts,
                )
                if attempt < self._start_attempts:
                    await asyncio.sleep(self._start_retry_delay)
                continue
            if ack.result == mavlink2.MAV_RESULT_ACCEPTED:
                LOGGER.info("Mission started")
                return OperationResult.ok(reason="Mission started")
            reason = f"Mission start rejected by flight controller ({result_name(ack.result)})"
            LOGGER.error(reason)
            return OperationResult.fail(FailureKind.REJECTED, reason, value=ack.result)

        LOGGER.warning(
            "MISSION_START unacknowledged after %d attempts; falling back to AUTO mode",
            self._start_attempts,
        )
        await self._set_current_item()
        if await self._modes.change_mode("Auto", timeout=self._auto_timeout):
            return OperationResult.ok(reason="Mission started via AUTO mode")
        return OperationResult.fail(
            FailureKind.TIMEOUT,
            "Mission start not acknowledged and AUTO mode fallback failed. "
            f"Current mode: {self._current_mode()}",
        )

    async def _arm(self) -> bool:
        LOGGER.info("Arming vehicle")
        await self._commands.send(mavlink2.MAV_CMD_COMPONENT_ARM_DISARM, 1.0)

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._arm_timeout
        while True:
            if self._snapshot.value.armed:
                LOGGER.info("Vehicle armed")
                return True
            remaining = deadline - loop.time()
            if remaining <= 0:
                LOGGER.warning("Vehicle did not arm within %.1fs", self._arm_timeout)
                return False
            await asyncio.sleep(min(self._arm_poll_interval, remaining))

    async def _set_current_item(self) -> bool:
        fcu = self._fcu.value
        return await self._sender.send(
            mavlink2.MAVLink_mission_set_current_message(
                target_system=fcu.system_id,
                target_component=fcu.component_id,
                seq=self._first_waypoint_seq,
            )
        )
