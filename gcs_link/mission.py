"""Mission upload and readback handshakes.

Upload follows the request-driven MAVLink mission protocol: clear the stored
mission, announce the item count, then answer each MISSION_REQUEST(_INT) with
the requested item until the flight controller replies with MISSION_ACK.
Some links drop the first requests entirely, so if none arrive in time the
remaining items are pushed unsolicited while the session keeps waiting for
the final acknowledgement.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Set

from pymavlink.dialects.v20 import ardupilotmega as mavlink2

from .connection import MessageSender
from .core import (
    FailureKind,
    FcuIdentity,
    Frame,
    FrameBus,
    LatestValue,
    MissionItem,
    OperationResult,
    Subscription,
    TaskScope,
)

LOGGER = logging.getLogger(__name__)

REQUEST_TYPES = ("MISSION_REQUEST_INT", "MISSION_REQUEST")
ITEM_TYPES = ("MISSION_ITEM_INT", "MISSION_ITEM")

_POSITIONED_COMMANDS = (mavlink2.MAV_CMD_NAV_WAYPOINT, mavlink2.MAV_CMD_NAV_TAKEOFF)

_INVALID_PARAM_RESULTS = (
    mavlink2.MAV_MISSION_INVALID_PARAM1,
    mavlink2.MAV_MISSION_INVALID_PARAM2,
    mavlink2.MAV_MISSION_INVALID_PARAM3,
    mavlink2.MAV_MISSION_INVALID_PARAM4,
    mavlink2.MAV_MISSION_INVALID_PARAM5_X,
    mavlink2.MAV_MISSION_INVALID_PARAM6_Y,
    mavlink2.MAV_MISSION_INVALID_PARAM7,
)

MISSION_RESULT_REASONS: Dict[int, str] = {
    mavlink2.MAV_MISSION_ERROR: "Mission error reported by flight controller",
    mavlink2.MAV_MISSION_UNSUPPORTED_FRAME: "Unsupported frame type in mission items",
    mavlink2.MAV_MISSION_UNSUPPORTED: "Mission type not supported by flight controller",
    mavlink2.MAV_MISSION_NO_SPACE: "Not enough space on flight controller for mission",
    mavlink2.MAV_MISSION_INVALID: "Invalid mission data",
    mavlink2.MAV_MISSION_INVALID_SEQUENCE: "Mission item received out of sequence",
    mavlink2.MAV_MISSION_DENIED: "Mission denied by flight controller",
    mavlink2.MAV_MISSION_OPERATION_CANCELLED: "Mission operation cancelled",
}


def mission_result_reason(result: int) -> str:
    if result in _INVALID_PARAM_RESULTS:
        return f"Invalid parameter in mission item (error {result})"
    return MISSION_RESULT_REASONS.get(
        result, f"Mission rejected by flight controller (result {result})"
    )


def validate_items(items: Sequence[MissionItem]) -> Optional[str]:
    """Return a reason string for the first invalid item, None if all pass."""

    if not items:
        return "Mission has no items"
    for index, item in enumerate(items):
        if item.command in _POSITIONED_COMMANDS:
            if not -90.0 <= item.latitude <= 90.0:
                return (
                    f"Invalid latitude at waypoint {index}: {item.latitude} "
                    "(must be -90 to 90)"
                )
            if not -180.0 <= item.longitude <= 180.0:
                return (
                    f"Invalid longitude at waypoint {index}: {item.longitude} "
                    "(must be -180 to 180)"
                )
            if item.altitude < 0:
                return f"Invalid altitude at waypoint {index}: {item.altitude}"
            if item.latitude == 0.0 and item.longitude == 0.0 and (
                item.command == mavlink2.MAV_CMD_NAV_WAYPOINT
            ):
                LOGGER.warning("Waypoint %d is at lat=0, lon=0", index)
    return None


class UploadPhase(str, Enum):
    CLEARING_PREVIOUS = "clearing_previous"
    HANDSHAKING = "handshaking"
    PUSHING_FALLBACK = "pushing_fallback"
    AWAITING_ACK = "awaiting_ack"
    DONE = "done"
    FAILED = "failed"


@dataclass(slots=True)
class MissionTransferSession:
    items: List[MissionItem]
    sent_seqs: Set[int] = field(default_factory=set)
    phase: UploadPhase = UploadPhase.CLEARING_PREVIOUS
    first_request: asyncio.Event = field(default_factory=asyncio.Event)
    completed: asyncio.Event = field(default_factory=asyncio.Event)
    ack_result: Optional[int] = None
    items_sent: int = 0

    @property
    def count(self) -> int:
        return len(self.items)

    def pending_seqs(self) -> List[int]:
        return [seq for seq in range(self.count) if seq not in self.sent_seqs]


class MissionTransferProtocol:
    """Upload and download of the vehicle's stored mission.

    Each direction is single-flight: a second concurrent request returns a
    BUSY failure instead of interleaving with the running session.
    """

    def __init__(
        self,
        bus: FrameBus,
        sender: MessageSender,
        fcu: LatestValue[FcuIdentity],
        *,
        clear_timeout: float = 3.0,
        count_resend_interval: float = 0.7,
        first_request_timeout: float = 5.0,
        fallback_item_spacing: float = 0.3,
        upload_timeout: float = 15.0,
        readback_count_timeout: float = 5.0,
        readback_item_timeout: float = 1.5,
    ) -> None:
        self._bus = bus
        self._sender = sender
        self._fcu = fcu
        self._clear_timeout = clear_timeout
        self._count_resend_interval = count_resend_interval
        self._first_request_timeout = first_request_timeout
        self._fallback_item_spacing = fallback_item_spacing
        self._upload_timeout = upload_timeout
        self._readback_count_timeout = readback_count_timeout
        self._readback_item_timeout = readback_item_timeout
        self._upload_lock = asyncio.Lock()
        self._download_lock = asyncio.Lock()
        self.session: Optional[MissionTransferSession] = None

    @property
    def upload_in_progress(self) -> bool:
        return self._upload_lock.locked()

    @property
    def download_in_progress(self) -> bool:
        return self._download_lock.locked()

    # ------------------------------------------------------------------
    # Upload
    # ------------------------------------------------------------------

    async def upload(self, items: Sequence[MissionItem]) -> OperationResult:
        if self._upload_lock.locked():
            return OperationResult.fail(
                FailureKind.BUSY, "Mission upload already in progress"
            )

        async with self._upload_lock:
            invalid = validate_items(items)
            if invalid is not None:
                LOGGER.error("Mission upload rejected: %s", invalid)
                return OperationResult.fail(FailureKind.INVALID, invalid)

            fcu = self._fcu.value
            if not fcu.detected:
                return OperationResult.fail(
                    FailureKind.PRECONDITION, "Flight controller not detected"
                )

            session = MissionTransferSession(items=list(items))
            self.session = session
            try:
                return await self._run_upload(session, fcu)
            finally:
                self.session = None

    async def _run_upload(
        self, session: MissionTransferSession, fcu: FcuIdentity
    ) -> OperationResult:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._upload_timeout
        LOGGER.info("Mission upload started (%d items)", session.count)

        await self._clear_previous(fcu)

        def _from_fcu(frame: Frame) -> bool:
            return frame.system_id == fcu.system_id and (
                frame.type in REQUEST_TYPES or frame.type == "MISSION_ACK"
            )

        with self._bus.subscribe(_from_fcu) as frames:
            async with TaskScope("mission-upload") as scope:
                session.phase = UploadPhase.HANDSHAKING
                await self._sender.send(self._count_message(session, fcu))
                scope.spawn(self._respond(session, frames), name="responder")
                scope.spawn(self._resend_count(session, fcu), name="count-resend")

                handshake_window = min(
                    self._first_request_timeout, max(0.0, deadline - loop.time())
                )
                await self._wait_first(session, handshake_window)

                if not session.first_request.is_set() and not session.completed.is_set():
                    session.phase = UploadPhase.PUSHING_FALLBACK
                    LOGGER.warning(
                        "No MISSION_REQUEST within %.1fs; pushing %d items directly",
                        self._first_request_timeout,
                        len(session.pending_seqs()),
                    )
                    await self._push_fallback(session, fcu, deadline)

                if not session.completed.is_set():
                    session.phase = UploadPhase.AWAITING_ACK
                    remaining = max(0.0, deadline - loop.time())
                    try:
                        await asyncio.wait_for(session.completed.wait(), remaining)
                    except asyncio.TimeoutError:
                        pass

        return self._upload_outcome(session)

    def _upload_outcome(self, session: MissionTransferSession) -> OperationResult:
        if not session.completed.is_set():
            session.phase = UploadPhase.FAILED
            LOGGER.error(
                "Mission upload timed out after %.1fs (sent %d/%d items)",
                self._upload_timeout,
                len(session.sent_seqs),
                session.count,
            )
            return OperationResult.fail(
                FailureKind.TIMEOUT,
                f"Mission upload timed out after {self._upload_timeout:g}s "
                f"({len(session.sent_seqs)}/{session.count} items sent)",
            )

        if session.ack_result != mavlink2.MAV_MISSION_ACCEPTED:
            session.phase = UploadPhase.FAILED
            reason = mission_result_reason(session.ack_result)
            LOGGER.error("Mission upload rejected: %s", reason)
            return OperationResult.fail(FailureKind.REJECTED, reason)

        session.phase = UploadPhase.DONE
        LOGGER.info(
            "Mission upload accepted (%d items, %d item frames sent)",
            session.count,
            session.items_sent,
        )
        return OperationResult.ok(session.count, reason="Mission uploaded")

    async def _clear_previous(self, fcu: FcuIdentity) -> bool:
        """Best-effort MISSION_CLEAR_ALL; the upload proceeds either way."""

        def _is_clear_ack(frame: Frame) -> bool:
            if frame.system_id != fcu.system_id:
                return False
            if frame.type == "MISSION_ACK":
                return frame.message.type == mavlink2.MAV_MISSION_ACCEPTED
            if frame.type == "COMMAND_ACK":
                return frame.message.result == mavlink2.MAV_RESULT_ACCEPTED
            return False

        with self._bus.subscribe(_is_clear_ack) as acks:
            sent = await self._sender.send(
                mavlink2.MAVLink_mission_clear_all_message(
                    target_system=fcu.system_id,
                    target_component=fcu.component_id,
                    mission_type=mavlink2.MAV_MISSION_TYPE_MISSION,
                )
            )
            ack = await acks.receive(timeout=self._clear_timeout) if sent else None

        if ack is None:
            LOGGER.warning("MISSION_CLEAR_ALL not acknowledged; continuing upload")
            return False
        LOGGER.info("Previous mission cleared")
        return True

    def _count_message(self, session: MissionTransferSession, fcu: FcuIdentity) -> Any:
        return mavlink2.MAVLink_mission_count_message(
            target_system=fcu.system_id,
            target_component=fcu.component_id,
            count=session.count,
            mission_type=mavlink2.MAV_MISSION_TYPE_MISSION,
        )

    async def _wait_first(self, session: MissionTransferSession, timeout: float) -> None:
        first = asyncio.ensure_future(session.first_request.wait())
        done = asyncio.ensure_future(session.completed.wait())
        try:
            await asyncio.wait(
                {first, done}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            first.cancel()
            done.cancel()

    async def _resend_count(
        self, session: MissionTransferSession, fcu: FcuIdentity
    ) -> None:
        message = self._count_message(session, fcu)
        while True:
            await asyncio.sleep(self._count_resend_interval)
            if session.first_request.is_set() or session.completed.is_set():
                return
            LOGGER.debug("Resending MISSION_COUNT(%d)", session.count)
            await self._sender.send(message)

    async def _respond(
        self, session: MissionTransferSession, frames: Subscription[Frame]
    ) -> None:
        async for frame in frames:
            if frame.type == "MISSION_ACK":
                session.ack_result = frame.message.type
                session.completed.set()
                return
            await self._answer_request(session, frame)

    async def _answer_request(
        self, session: MissionTransferSession, frame: Frame
    ) -> None:
        seq = frame.message.seq
        if not 0 <= seq < session.count:
            LOGGER.warning(
                "Ignoring %s for seq %d (mission has %d items)",
                frame.type,
                seq,
                session.count,
            )
            return

        session.first_request.set()
        LOGGER.debug("%s seq=%d", frame.type, seq)
        message = session.items[seq].to_message(
            seq, frame.system_id, frame.component_id
        )
        if await self._sender.send(message):
            session.sent_seqs.add(seq)
            session.items_sent += 1

    async def _push_fallback(
        self, session: MissionTransferSession, fcu: FcuIdentity, deadline: float
    ) -> None:
        loop = asyncio.get_running_loop()
        for index, seq in enumerate(session.pending_seqs()):
            if session.completed.is_set() or loop.time() >= deadline:
                return
            if seq in session.sent_seqs:
                continue
            if index:
                await asyncio.sleep(self._fallback_item_spacing)
                if session.completed.is_set() or seq in session.sent_seqs:
                    continue
            message = session.items[seq].to_message(
                seq, fcu.system_id, fcu.component_id
            )
            if await self._sender.send(message):
                session.sent_seqs.add(seq)
                session.items_sent += 1

    # ------------------------------------------------------------------
    # Download / readback
    # ------------------------------------------------------------------

    async def download(self) -> OperationResult:
        """Read the stored mission back; missing items are skipped, not retried."""

        if self._download_lock.locked():
            return OperationResult.fail(
                FailureKind.BUSY, "Mission readback already in progress"
            )

        async with self._download_lock:
            fcu = self._fcu.value
            if not fcu.detected:
                return OperationResult.fail(
                    FailureKind.PRECONDITION, "Flight controller not detected"
                )

            def _from_fcu(frame: Frame) -> bool:
                return frame.system_id == fcu.system_id and (
                    frame.type == "MISSION_COUNT" or frame.type in ITEM_TYPES
                )

            with self._bus.subscribe(_from_fcu) as frames:
                await self._sender.send(
                    mavlink2.MAVLink_mission_request_list_message(
                        target_system=fcu.system_id,
                        target_component=fcu.component_id,
                        mission_type=mavlink2.MAV_MISSION_TYPE_MISSION,
                    )
                )
                count_frame = await frames.receive(
                    lambda frame: frame.type == "MISSION_COUNT",
                    timeout=self._readback_count_timeout,
                )
                if count_frame is None:
                    LOGGER.warning("Mission readback: no MISSION_COUNT received")
                    return OperationResult.fail(
                        FailureKind.TIMEOUT, "No mission count received"
                    )

                count = count_frame.message.count
                LOGGER.info("Mission readback: vehicle reports %d items", count)
                received: Dict[int, MissionItem] = {}
                for seq in range(count):
                    await self._sender.send(
                        mavlink2.MAVLink_mission_request_int_message(
                            target_system=fcu.system_id,
                            target_component=fcu.component_id,
                            seq=seq,
                            mission_type=mavlink2.MAV_MISSION_TYPE_MISSION,
                        )
                    )
                    item_frame = await frames.receive(
                        lambda frame, wanted=seq: frame.type in ITEM_TYPES
                        and frame.message.seq == wanted,
                        timeout=self._readback_item_timeout,
                    )
                    if item_frame is None:
                        LOGGER.warning("Mission readback: item %d not received", seq)
                        continue
                    received[seq] = MissionItem.from_message(item_frame.message)

            items = [received[seq] for seq in sorted(received)]
            reason = None
            if len(items) < count:
                reason = f"Received {len(items)} of {count} mission items"
            return OperationResult.ok(items, reason=reason)
