"""Vehicle-level facade over the link engine.

``VehicleLink`` owns every long-lived listener inside one :class:`TaskScope`
and exposes the operations consumers call. Each operation returns an
:class:`OperationResult`; protocol timeouts and rejections never raise.
"""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Optional, Sequence, Union

from pymavlink.dialects.v20 import ardupilotmega as mavlink2

from .commands import (
    MAX_COMMAND_PARAMS,
    CommandAckCorrelator,
    ModeChangeCoordinator,
    command_name,
    result_name,
)
from .config import GcsLinkConfig
from .connection import ConnectionSupervisor, LinkDiagnostics, MessageSender
from .core import (
    FailureKind,
    FcuIdentity,
    FrameBus,
    LatestValue,
    LinkState,
    MavlinkTransport,
    MissionItem,
    OperationResult,
    StatusText,
    TaskScope,
    TelemetrySnapshot,
)
from .discovery import FcuDiscovery
from .heartbeat import HeartbeatEmitter
from .mission import MissionTransferProtocol
from .sequencer import MissionStartSequencer, preflight_check
from .telemetry import StatusTextRelay, TelemetryAggregator

LOGGER = logging.getLogger(__name__)


class VehicleLink:
    def __init__(
        self, transport: MavlinkTransport, config: Optional[GcsLinkConfig] = None
    ) -> None:
        self._config = config or GcsLinkConfig()
        link = self._config.link
        commands = self._config.commands
        mission = self._config.mission
        sequencer = self._config.sequencer

        self.diagnostics = LinkDiagnostics()
        self.bus = FrameBus(queue_size=link.frame_queue_size)
        self.sender = MessageSender(
            transport,
            system_id=link.gcs_system_id,
            component_id=link.gcs_component_id,
            diagnostics=self.diagnostics,
        )
        self.supervisor = ConnectionSupervisor(
            transport,
            self.bus,
            retry_interval=link.reconnect_interval_seconds,
            diagnostics=self.diagnostics,
        )
        self.heartbeat = HeartbeatEmitter(
            self.sender,
            self.supervisor.state,
            interval=link.heartbeat_interval_seconds,
        )
        self.discovery = FcuDiscovery(
            self.bus,
            self.sender,
            message_rates=self._config.telemetry.message_rates(),
        )
        self.telemetry = TelemetryAggregator(
            self.bus,
            self.discovery.identity,
            heartbeat_timeout=link.fcu_heartbeat_timeout_seconds,
            timer_tick=self._config.telemetry.mission_timer_tick_seconds,
        )
        self.status_texts = StatusTextRelay(self.bus, self.discovery.identity)
        self.commands = CommandAckCorrelator(
            self.bus,
            self.sender,
            self.discovery.identity,
            ack_timeout=commands.ack_timeout_seconds,
        )
        self.modes = ModeChangeCoordinator(
            self.commands,
            self.telemetry.snapshot,
            timeout=commands.mode_change_timeout_seconds,
            poll_interval=commands.mode_poll_interval_seconds,
        )
        self.missions = MissionTransferProtocol(
            self.bus,
            self.sender,
            self.discovery.identity,
            clear_timeout=mission.clear_timeout_seconds,
            count_resend_interval=mission.count_resend_interval_seconds,
            first_request_timeout=mission.first_request_timeout_seconds,
            fallback_item_spacing=mission.fallback_item_spacing_seconds,
            upload_timeout=mission.upload_timeout_seconds,
            readback_count_timeout=mission.readback_count_timeout_seconds,
            readback_item_timeout=mission.readback_item_timeout_seconds,
        )
        self.sequencer = MissionStartSequencer(
            self.commands,
            self.modes,
            self.sender,
            self.discovery.identity,
            self.telemetry.snapshot,
            stabilize_timeout=sequencer.stabilize_timeout_seconds,
            arm_timeout=sequencer.arm_timeout_seconds,
            arm_poll_interval=sequencer.arm_poll_interval_seconds,
            auto_timeout=sequencer.auto_timeout_seconds,
            start_attempts=sequencer.start_attempts,
            start_ack_timeout=sequencer.start_ack_timeout_seconds,
            start_retry_delay=sequencer.start_retry_delay_seconds,
            first_waypoint_seq=sequencer.first_waypoint_seq,
        )

        self.supervisor.register_inactive_callback(self._on_link_inactive)
        self._scope: Optional[TaskScope] = None

    @property
    def snapshot(self) -> LatestValue[TelemetrySnapshot]:
        return self.telemetry.snapshot

    @property
    def link_state(self) -> LatestValue[LinkState]:
        return self.supervisor.state

    @property
    def fcu(self) -> LatestValue[FcuIdentity]:
        return self.discovery.identity

    @property
    def running(self) -> bool:
        return self._scope is not None

    def _on_link_inactive(self) -> None:
        self.discovery.reset()
        self.telemetry.reset_link()

    async def start(self) -> None:
        if self._scope is not None:
            LOGGER.warning("Vehicle link already running")
            return
        scope = TaskScope("vehicle")
        # Listeners subscribe before the supervisor starts feeding frames.
        scope.spawn(self.discovery.run(), name="discovery")
        scope.spawn(self.telemetry.run(), name="telemetry")
        scope.spawn(self.status_texts.run(), name="status-text")
        scope.spawn(self.commands.run(), name="command-acks")
        scope.spawn(self.heartbeat.run(), name="heartbeat")
        scope.spawn(self.supervisor.run(), name="supervisor")
        self._scope = scope
        LOGGER.info("Vehicle link started")

    async def stop(self) -> None:
        scope = self._scope
        if scope is None:
            return
        self._scope = None
        await self.supervisor.stop()
        await scope.aclose()
        self._on_link_inactive()
        LOGGER.info("Vehicle link stopped")

    async def __aenter__(self) -> "VehicleLink":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def _require_fcu(self) -> Optional[OperationResult]:
        if not self.fcu.value.detected:
            return OperationResult.fail(
                FailureKind.PRECONDITION, "Flight controller not detected"
            )
        return None

    def _check_command(
        self, command: int, params: Sequence[float]
    ) -> Optional[OperationResult]:
        if len(params) > MAX_COMMAND_PARAMS:
            return OperationResult.fail(
                FailureKind.INVALID,
                f"{command_name(command)} takes at most {MAX_COMMAND_PARAMS} parameters",
            )
        return self._require_fcu()

    async def command_with_ack(
        self, command: int, *params: float, timeout: Optional[float] = None
    ) -> OperationResult:
        """Send a numbered command and report its COMMAND_ACK outcome."""

        blocked = self._check_command(command, params)
        if blocked is not None:
            return blocked
        ack = await self.commands.send_and_await(command, *params, timeout=timeout)
        name = command_name(command)
        if ack is None:
            return OperationResult.fail(
                FailureKind.TIMEOUT, f"No acknowledgement for {name}"
            )
        if ack.result != mavlink2.MAV_RESULT_ACCEPTED:
            return OperationResult.fail(
                FailureKind.REJECTED,
                f"{name} rejected ({result_name(ack.result)})",
                value=ack,
            )
        return OperationResult.ok(ack)

    async def send_raw_command(self, command: int, *params: float) -> OperationResult:
        blocked = self._check_command(command, params)
        if blocked is not None:
            return blocked
        if await self.commands.send(command, *params):
            return OperationResult.ok(reason=f"{command_name(command)} sent")
        return OperationResult.fail(
            FailureKind.TRANSPORT, f"Failed to send {command_name(command)}"
        )

    async def send_command_ack(self, command: int, result: int) -> OperationResult:
        if await self.commands.acknowledge(command, result):
            return OperationResult.ok()
        return OperationResult.fail(FailureKind.TRANSPORT, "Failed to send COMMAND_ACK")

    async def arm(self) -> OperationResult:
        return await self.command_with_ack(mavlink2.MAV_CMD_COMPONENT_ARM_DISARM, 1.0)

    async def disarm(self) -> OperationResult:
        return await self.command_with_ack(mavlink2.MAV_CMD_COMPONENT_ARM_DISARM, 0.0)

    async def takeoff(self, altitude: float) -> OperationResult:
        return await self.command_with_ack(
            mavlink2.MAV_CMD_NAV_TAKEOFF, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0, altitude
        )

    async def land(self) -> OperationResult:
        return await self.command_with_ack(mavlink2.MAV_CMD_NAV_LAND)

    async def change_mode(self, mode: Union[str, int]) -> OperationResult:
        blocked = self._require_fcu()
        if blocked is not None:
            return blocked
        if self.modes.resolve(mode) is None:
            return OperationResult.fail(FailureKind.INVALID, f"Unknown flight mode {mode!r}")
        if await self.modes.change_mode(mode):
            return OperationResult.ok(self.snapshot.value.mode)
        return OperationResult.fail(
            FailureKind.TIMEOUT,
            f"Mode change to {mode} not confirmed. "
            f"Current mode: {self.snapshot.value.mode or 'Unknown'}",
        )

    async def upload_mission(self, items: Sequence[MissionItem]) -> OperationResult:
        return await self.missions.upload(items)

    async def request_mission_readback(self) -> OperationResult:
        return await self.missions.download()

    async def start_mission(self) -> OperationResult:
        blocked = preflight_check(
            self.snapshot.value, min_satellites=self._config.sequencer.min_satellites
        )
        if blocked is not None:
            LOGGER.error("Mission start blocked: %s", blocked.reason)
            return blocked
        return await self.sequencer.start()

    # ------------------------------------------------------------------
    # Streams
    # ------------------------------------------------------------------

    def status_text_stream(self) -> AsyncIterator[StatusText]:
        return self.status_texts.stream()

    def command_ack_stream(self) -> AsyncIterator[Any]:
        return self.commands.stream()
