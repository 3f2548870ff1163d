"""Command transmission, acknowledgement correlation and mode changes."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Optional, Union

from pymavlink.dialects.v20 import ardupilotmega as mavlink2

from .connection import MessageSender
from .core import (
    CorrelationTable,
    FcuIdentity,
    Frame,
    FrameBus,
    LatestValue,
    TelemetrySnapshot,
)
from .telemetry import mode_name, mode_number

LOGGER = logging.getLogger(__name__)

MAX_COMMAND_PARAMS = 7


def result_name(result: Optional[int]) -> str:
    """Readable MAV_RESULT label, e.g. ``DENIED`` for 2."""

    if result is None:
        return "NO_ACK"
    entry = mavlink2.enums.get("MAV_RESULT", {}).get(result)
    if entry is None:
        return str(result)
    return entry.name.replace("MAV_RESULT_", "")


def command_name(command: int) -> str:
    entry = mavlink2.enums.get("MAV_CMD", {}).get(command)
    if entry is None:
        return str(command)
    return entry.name


class CommandAckCorrelator:
    """Sends COMMAND_LONG to the flight controller and matches COMMAND_ACKs.

    Every waiter gets its own correlation entry, so concurrent waits for the
    same command id are independent and each resolves on its first match.
    """

    def __init__(
        self,
        bus: FrameBus,
        sender: MessageSender,
        fcu: LatestValue[FcuIdentity],
        *,
        ack_timeout: float = 3.0,
    ) -> None:
        self._bus = bus
        self._sender = sender
        self._fcu = fcu
        self._ack_timeout = ack_timeout
        self._pending = CorrelationTable()

    @property
    def pending(self) -> int:
        return len(self._pending)

    def _is_fcu_ack(self, frame: Frame) -> bool:
        return frame.type == "COMMAND_ACK" and self._fcu.value.matches(frame)

    async def run(self) -> None:
        with self._bus.subscribe(self._is_fcu_ack) as acks:
            async for frame in acks:
                LOGGER.debug(
                    "COMMAND_ACK %s -> %s",
                    command_name(frame.message.command),
                    result_name(frame.message.result),
                )
                self._pending.offer(frame)

    async def send(
        self, command: int, *params: float, confirmation: int = 0
    ) -> bool:
        """Fire-and-forget COMMAND_LONG; returns False if it could not be sent."""

        if len(params) > MAX_COMMAND_PARAMS:
            LOGGER.error(
                "Cannot send %s: COMMAND_LONG takes at most %d parameters, got %d",
                command_name(command),
                MAX_COMMAND_PARAMS,
                len(params),
            )
            return False
        fcu = self._fcu.value
        if not fcu.detected:
            LOGGER.warning(
                "Cannot send %s: flight controller not detected", command_name(command)
            )
            return False

        values = [float(value) for value in params]
        values.extend([0.0] * (MAX_COMMAND_PARAMS - len(values)))
        message = mavlink2.MAVLink_command_long_message(
            fcu.system_id,
            fcu.component_id,
            command,
            confirmation,
            *values,
        )
        LOGGER.info("Sending %s params=%s", command_name(command), values)
        return await self._sender.send(message)

    def _matcher(self, command: int):
        return lambda frame: frame.message.command == command

    async def await_ack(
        self, command: int, timeout: Optional[float] = None
    ) -> Optional[Any]:
        """Wait for the next COMMAND_ACK for ``command``; None on timeout."""

        frame = await self._pending.expect(
            self._matcher(command),
            self._ack_timeout if timeout is None else timeout,
        )
        return None if frame is None else frame.message

    async def send_and_await(
        self,
        command: int,
        *params: float,
        timeout: Optional[float] = None,
    ) -> Optional[Any]:
        """Send a command and wait for its ack.

        The waiter is registered before transmission so a fast reply cannot
        slip past it.
        """

        entry = self._pending.register(
            self._matcher(command),
            self._ack_timeout if timeout is None else timeout,
        )
        if not await self.send(command, *params):
            self._pending.discard(entry)
            return None
        frame = await self._pending.wait(entry)
        if frame is None:
            LOGGER.warning("No acknowledgement for %s", command_name(command))
            return None
        return frame.message

    async def acknowledge(
        self, command: int, result: int, *, progress: int = 0
    ) -> bool:
        """Answer a flight-controller prompt with a COMMAND_ACK of our own."""

        fcu = self._fcu.value
        message = mavlink2.MAVLink_command_ack_message(
            command=command,
            result=result,
            progress=progress,
            result_param2=0,
            target_system=fcu.system_id,
            target_component=fcu.component_id,
        )
        return await self._sender.send(message)

    async def stream(self) -> AsyncIterator[Any]:
        """Yield every COMMAND_ACK from the flight controller."""

        with self._bus.subscribe(self._is_fcu_ack) as acks:
            async for frame in acks:
                yield frame.message


class ModeChangeCoordinator:
    """Requests a flight mode and confirms it from decoded heartbeats."""

    def __init__(
        self,
        commands: CommandAckCorrelator,
        snapshot: LatestValue[TelemetrySnapshot],
        *,
        timeout: float = 5.0,
        poll_interval: float = 0.2,
    ) -> None:
        self._commands = commands
        self._snapshot = snapshot
        self._timeout = timeout
        self._poll_interval = poll_interval

    @staticmethod
    def resolve(mode: Union[str, int]) -> Optional[int]:
        if isinstance(mode, int):
            return mode
        return mode_number(mode)

    def current_mode_matches(self, target: str) -> bool:
        current = self._snapshot.value.mode
        return current is not None and target.lower() in current.lower()

    async def change_mode(
        self, mode: Union[str, int], *, timeout: Optional[float] = None
    ) -> bool:
        custom_mode = self.resolve(mode)
        if custom_mode is None:
            LOGGER.error("Unknown flight mode %r", mode)
            return False
        target = mode_name(custom_mode)
        timeout = self._timeout if timeout is None else timeout

        LOGGER.info("Requesting mode change to %s", target)
        await self._commands.send(
            mavlink2.MAV_CMD_DO_SET_MODE,
            float(mavlink2.MAV_MODE_FLAG_CUSTOM_MODE_ENABLED),
            float(custom_mode),
        )

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            if self.current_mode_matches(target):
                LOGGER.info("Mode change to %s confirmed", target)
                return True
            remaining = deadline - loop.time()
            if remaining <= 0:
                LOGGER.warning(
                    "Mode change to %s not observed within %.1fs (current: %s)",
                    target,
                    timeout,
                    self._snapshot.value.mode,
                )
                return False
            await asyncio.sleep(min(self._poll_interval, remaining))
