"""Telemetry decoding into a consolidated vehicle snapshot.

Only frames from the latched flight controller are decoded. Every handler
publishes a replacement :class:`TelemetrySnapshot`; the aggregator is the
sole writer of that value.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import math
from dataclasses import replace
from typing import Any, AsyncIterator, Callable, Dict, Optional, Tuple

from pymavlink.dialects.v20 import ardupilotmega as mavlink2

from .core import (
    Broadcast,
    FcuIdentity,
    Frame,
    FrameBus,
    LatestValue,
    StatusText,
    TaskScope,
    TelemetrySnapshot,
)

LOGGER = logging.getLogger(__name__)

COPTER_MODES: Dict[int, str] = {
    0: "Stabilize",
    1: "Acro",
    2: "Alt Hold",
    3: "Auto",
    4: "Guided",
    5: "Loiter",
    6: "RTL",
    7: "Circle",
    9: "Land",
    11: "Drift",
    13: "Sport",
    14: "Flip",
    15: "AutoTune",
    16: "Pos Hold",
    17: "Brake",
    18: "Throw",
    19: "Avoid_ADSB",
    20: "Guided_NoGPS",
    21: "Smart_RTL",
    22: "FlowHold",
    23: "Follow",
    24: "ZigZag",
    25: "SystemID",
    26: "AutoRotate",
    27: "Auto_RTL",
}

UNKNOWN_MODE = "Unknown"

INT32_MIN = -(2**31)
UINT16_UNKNOWN = 0xFFFF
SENSOR_3D_GYRO = mavlink2.MAV_SYS_STATUS_SENSOR_3D_GYRO

EARTH_RADIUS_METERS = 6_371_000.0

Fix = Tuple[float, float]


def mode_name(custom_mode: int) -> str:
    return COPTER_MODES.get(custom_mode, UNKNOWN_MODE)


def mode_number(name: str) -> Optional[int]:
    wanted = name.strip().lower()
    for number, label in COPTER_MODES.items():
        if label.lower() == wanted:
            return number
    return None


def format_speed(value: Optional[float]) -> Optional[str]:
    if value is None:
        return None
    return f"{value:.2f} m/s"


def haversine_meters(start: Fix, end: Fix) -> float:
    lat1, lon1 = map(math.radians, start)
    lat2, lon2 = map(math.radians, end)
    d_lat = lat2 - lat1
    d_lon = lon2 - lon1
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(lat1) * math.cos(lat2) * math.sin(d_lon / 2) ** 2
    )
    return 2 * EARTH_RADIUS_METERS * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def _is_auto(mode: Optional[str]) -> bool:
    return mode is not None and mode.lower() == "auto"


def _decode_text(raw: Any) -> str:
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", errors="replace")
    return str(raw).rstrip("\x00").strip()


class TelemetryAggregator:
    """Folds flight-controller telemetry into one observable snapshot."""

    def __init__(
        self,
        bus: FrameBus,
        fcu: LatestValue[FcuIdentity],
        *,
        heartbeat_timeout: float = 3.0,
        timer_tick: float = 1.0,
    ) -> None:
        self._bus = bus
        self._fcu = fcu
        self._heartbeat_timeout = heartbeat_timeout
        self._timer_tick = timer_tick
        self.snapshot: LatestValue[TelemetrySnapshot] = LatestValue(
            TelemetrySnapshot()
        )
        self._handlers: Dict[str, Callable[[Any], None]] = {
            "HEARTBEAT": self._on_heartbeat,
            "VFR_HUD": self._on_vfr_hud,
            "GLOBAL_POSITION_INT": self._on_global_position,
            "BATTERY_STATUS": self._on_battery_status,
            "SYS_STATUS": self._on_sys_status,
            "GPS_RAW_INT": self._on_gps_raw,
            "STATUSTEXT": self._on_status_text,
            "MISSION_CURRENT": self._on_mission_current,
        }
        self._scope: Optional[TaskScope] = None
        self._timer_task: Optional[asyncio.Task] = None
        self._heartbeat_seen = asyncio.Event()
        self._mission_running = False
        self._last_fix: Optional[Fix] = None

    def _accepts(self, frame: Frame) -> bool:
        if not self._fcu.value.matches(frame):
            return False
        # Companion computers and gimbals share the system id; only the
        # autopilot component's heartbeat describes vehicle mode.
        if frame.type == "HEARTBEAT":
            return frame.component_id == self._fcu.value.component_id
        return True

    async def run(self) -> None:
        async with TaskScope("telemetry") as scope:
            self._scope = scope
            scope.spawn(self._watch_identity(), name="fcu-identity")
            scope.spawn(self._watch_heartbeat(), name="heartbeat-watchdog")
            try:
                with self._bus.subscribe_types(*self._handlers) as frames:
                    async for frame in frames:
                        if not self._accepts(frame):
                            continue
                        self._handlers[frame.type](frame.message)
            finally:
                self._scope = None
                self._timer_task = None

    def handle(self, frame: Frame) -> None:
        """Decode one frame synchronously; unknown or foreign frames are ignored."""

        handler = self._handlers.get(frame.type)
        if handler is not None and self._accepts(frame):
            handler(frame.message)

    def reset_link(self) -> None:
        """Clear connection-scoped flags after the link goes inactive.

        A running mission timer is frozen into ``last_mission_elapsed_seconds``
        without marking the mission completed.
        """

        if self._mission_running:
            self._stop_mission_timer(completed=False)
        self._update(connected=False, fcu_detected=False)

    def _update(self, **changes: Any) -> None:
        self.snapshot.set(replace(self.snapshot.value, **changes))

    async def _watch_identity(self) -> None:
        async with contextlib.aclosing(self._fcu.subscribe()) as identities:
            async for identity in identities:
                self._update(fcu_detected=identity.detected)

    async def _watch_heartbeat(self) -> None:
        while True:
            try:
                await asyncio.wait_for(
                    self._heartbeat_seen.wait(), timeout=self._heartbeat_timeout
                )
            except asyncio.TimeoutError:
                if self.snapshot.value.connected:
                    LOGGER.warning(
                        "No flight controller heartbeat for %.1fs",
                        self._heartbeat_timeout,
                    )
                    self._update(connected=False)
                continue
            self._heartbeat_seen.clear()

    def _on_heartbeat(self, message: Any) -> None:
        armed = bool(message.base_mode & mavlink2.MAV_MODE_FLAG_SAFETY_ARMED)
        mode = mode_name(message.custom_mode)
        self._heartbeat_seen.set()

        previous = self.snapshot.value
        if previous.mode != mode or previous.armed != armed:
            LOGGER.info("Vehicle mode=%s armed=%s", mode, armed)
        self._update(connected=True, mode=mode, armed=armed)

        running = _is_auto(mode) and armed
        if running and not self._mission_running:
            self._start_mission_timer()
        elif not running and self._mission_running:
            self._stop_mission_timer()

    def _start_mission_timer(self) -> None:
        self._mission_running = True
        self._last_fix = None
        self._update(
            mission_elapsed_seconds=0,
            last_mission_elapsed_seconds=None,
            mission_completed=False,
            total_distance_meters=0.0,
        )
        LOGGER.info("Mission timer started")
        if self._scope is not None:
            self._timer_task = self._scope.spawn(self._tick(), name="mission-timer")

    def _stop_mission_timer(self, *, completed: bool = True) -> None:
        self._mission_running = False
        self._last_fix = None
        if self._timer_task is not None:
            self._timer_task.cancel()
            self._timer_task = None
        elapsed = self.snapshot.value.mission_elapsed_seconds
        self._update(
            mission_elapsed_seconds=None,
            last_mission_elapsed_seconds=elapsed,
            mission_completed=completed,
        )
        if completed:
            LOGGER.info("Mission timer stopped after %ss", elapsed)
        else:
            LOGGER.warning("Mission timer interrupted by link loss after %ss", elapsed)

    async def _tick(self) -> None:
        elapsed = 0
        while self._mission_running:
            await asyncio.sleep(self._timer_tick)
            if not self._mission_running:
                break
            elapsed += 1
            self._update(mission_elapsed_seconds=elapsed)

    def _on_vfr_hud(self, message: Any) -> None:
        airspeed = message.airspeed if message.airspeed > 0 else None
        groundspeed = message.groundspeed if message.groundspeed > 0 else None
        self._update(
            altitude_msl=float(message.alt),
            airspeed=airspeed,
            groundspeed=groundspeed,
            formatted_airspeed=format_speed(airspeed),
            formatted_groundspeed=format_speed(groundspeed),
            heading=float(message.heading),
        )

    def _on_global_position(self, message: Any) -> None:
        latitude = None if message.lat == INT32_MIN else message.lat / 1e7
        longitude = None if message.lon == INT32_MIN else message.lon / 1e7
        changes: Dict[str, Any] = {
            "altitude_msl": message.alt / 1000.0,
            "altitude_relative": message.relative_alt / 1000.0,
            "latitude": latitude,
            "longitude": longitude,
        }

        if self._mission_running and latitude is not None and longitude is not None:
            fix = (latitude, longitude)
            total = self.snapshot.value.total_distance_meters or 0.0
            if self._last_fix is not None:
                total += haversine_meters(self._last_fix, fix)
            self._last_fix = fix
            changes["total_distance_meters"] = total

        self._update(**changes)

    def _on_battery_status(self, message: Any) -> None:
        current = None if message.current_battery == -1 else message.current_battery / 100.0
        self._update(current_a=current)

    def _on_sys_status(self, message: Any) -> None:
        voltage = (
            None
            if message.voltage_battery == UINT16_UNKNOWN
            else message.voltage_battery / 1000.0
        )
        percent = None if message.battery_remaining == -1 else message.battery_remaining
        armable = all(
            bitmask & SENSOR_3D_GYRO
            for bitmask in (
                message.onboard_control_sensors_present,
                message.onboard_control_sensors_enabled,
                message.onboard_control_sensors_health,
            )
        )
        self._update(voltage=voltage, battery_percent=percent, armable=armable)

    def _on_gps_raw(self, message: Any) -> None:
        satellites = (
            message.satellites_visible if message.satellites_visible >= 0 else None
        )
        hdop = None if message.eph == UINT16_UNKNOWN else message.eph / 100.0
        self._update(satellites=satellites, hdop=hdop)

    def _on_status_text(self, message: Any) -> None:
        self._update(status_text=_decode_text(message.text))

    def _on_mission_current(self, message: Any) -> None:
        self._update(current_waypoint=message.seq)


class StatusTextRelay:
    """Logs flight-controller STATUSTEXT and fans it out to consumers."""

    _LEVELS = {
        "error": logging.ERROR,
        "warning": logging.WARNING,
        "info": logging.INFO,
    }

    def __init__(self, bus: FrameBus, fcu: LatestValue[FcuIdentity]) -> None:
        self._bus = bus
        self._fcu = fcu
        self._texts: Broadcast[StatusText] = Broadcast(queue_size=64)

    async def run(self) -> None:
        with self._bus.subscribe_types(
            "STATUSTEXT", sender=lambda frame: self._fcu.value.matches(frame)
        ) as frames:
            async for frame in frames:
                text = StatusText(
                    severity=frame.message.severity,
                    text=_decode_text(frame.message.text),
                )
                LOGGER.log(self._LEVELS[text.level], "FCU: %s", text.text)
                self._texts.publish(text)

    async def stream(self) -> AsyncIterator[StatusText]:
        with self._texts.subscribe() as texts:
            async for text in texts:
                yield text
