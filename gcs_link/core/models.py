"""Value types shared across the link engine."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Dict, Optional

from pymavlink.dialects.v20 import ardupilotmega as mavlink2


@dataclass(frozen=True, slots=True)
class Frame:
    """A decoded inbound message together with the identity of its sender."""

    system_id: int
    component_id: int
    message: Any

    @property
    def type(self) -> str:
        return self.message.get_type()


class LinkState(str, Enum):
    """Lifecycle of the transport as seen by the supervisor."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    ACTIVE = "active"
    INACTIVE = "inactive"


@dataclass(frozen=True, slots=True)
class FcuIdentity:
    system_id: int = 0
    component_id: int = 0
    detected: bool = False

    def matches(self, frame: Frame) -> bool:
        return self.detected and frame.system_id == self.system_id


@dataclass(frozen=True, slots=True)
class StatusText:
    severity: int
    text: str

    @property
    def level(self) -> str:
        if self.severity <= mavlink2.MAV_SEVERITY_ERROR:
            return "error"
        if self.severity == mavlink2.MAV_SEVERITY_WARNING:
            return "warning"
        return "info"


@dataclass(frozen=True, slots=True)
class TelemetrySnapshot:
    """Consolidated vehicle state.

    Every field may be absent; readers must not assume that any particular
    message type has been received yet. Instances are never mutated, the
    aggregator publishes a replacement for each relevant inbound message.
    """

    connected: bool = False
    fcu_detected: bool = False
    altitude_msl: Optional[float] = None
    altitude_relative: Optional[float] = None
    airspeed: Optional[float] = None
    groundspeed: Optional[float] = None
    formatted_airspeed: Optional[str] = None
    formatted_groundspeed: Optional[str] = None
    heading: Optional[float] = None
    voltage: Optional[float] = None
    battery_percent: Optional[int] = None
    current_a: Optional[float] = None
    satellites: Optional[int] = None
    hdop: Optional[float] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    mode: Optional[str] = None
    armed: bool = False
    armable: bool = False
    mission_elapsed_seconds: Optional[int] = None
    last_mission_elapsed_seconds: Optional[int] = None
    mission_completed: bool = False
    total_distance_meters: Optional[float] = None
    current_waypoint: Optional[int] = None
    status_text: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


class FailureKind(str, Enum):
    TIMEOUT = "timeout"
    REJECTED = "rejected"
    TRANSPORT = "transport"
    PRECONDITION = "precondition"
    BUSY = "busy"
    INVALID = "invalid"


@dataclass(frozen=True, slots=True)
class OperationResult:
    """Outcome of a public link operation.

    Protocol timeouts and rejections are reported here instead of being
    raised, so callers can surface ``reason`` directly to an operator.
    """

    success: bool
    reason: Optional[str] = None
    value: Any = None
    failure: Optional[FailureKind] = None

    @classmethod
    def ok(cls, value: Any = None, reason: Optional[str] = None) -> "OperationResult":
        return cls(True, reason=reason, value=value)

    @classmethod
    def fail(
        cls, failure: FailureKind, reason: str, value: Any = None
    ) -> "OperationResult":
        return cls(False, reason=reason, value=value, failure=failure)

    def __bool__(self) -> bool:
        return self.success


@dataclass(frozen=True, slots=True)
class MissionItem:
    """One stored mission command in global coordinates (degrees, metres)."""

    command: int
    latitude: float = 0.0
    longitude: float = 0.0
    altitude: float = 0.0
    frame: int = mavlink2.MAV_FRAME_GLOBAL_RELATIVE_ALT_INT
    param1: float = 0.0
    param2: float = 0.0
    param3: float = 0.0
    param4: float = 0.0
    autocontinue: bool = True
    current: bool = False
    seq: Optional[int] = None

    @classmethod
    def waypoint(
        cls, latitude: float, longitude: float, altitude: float, *, hold: float = 0.0
    ) -> "MissionItem":
        return cls(
            mavlink2.MAV_CMD_NAV_WAYPOINT,
            latitude=latitude,
            longitude=longitude,
            altitude=altitude,
            param1=hold,
        )

    @classmethod
    def takeoff(
        cls, altitude: float, latitude: float = 0.0, longitude: float = 0.0
    ) -> "MissionItem":
        return cls(
            mavlink2.MAV_CMD_NAV_TAKEOFF,
            latitude=latitude,
            longitude=longitude,
            altitude=altitude,
        )

    @classmethod
    def land(cls, latitude: float = 0.0, longitude: float = 0.0) -> "MissionItem":
        return cls(mavlink2.MAV_CMD_NAV_LAND, latitude=latitude, longitude=longitude)

    def to_message(self, seq: int, target_system: int, target_component: int) -> Any:
        return mavlink2.MAVLink_mission_item_int_message(
            target_system=target_system,
            target_component=target_component,
            seq=seq,
            frame=self.frame,
            command=self.command,
            current=int(self.current),
            autocontinue=int(self.autocontinue),
            param1=self.param1,
            param2=self.param2,
            param3=self.param3,
            param4=self.param4,
            x=int(round(self.latitude * 1e7)),
            y=int(round(self.longitude * 1e7)),
            z=self.altitude,
            mission_type=mavlink2.MAV_MISSION_TYPE_MISSION,
        )

    @classmethod
    def from_message(cls, message: Any) -> "MissionItem":
        """Build an item from either MISSION_ITEM_INT or legacy MISSION_ITEM."""

        if message.get_type() == "MISSION_ITEM_INT":
            latitude = message.x / 1e7
            longitude = message.y / 1e7
        else:
            latitude = float(message.x)
            longitude = float(message.y)
        return cls(
            message.command,
            latitude=latitude,
            longitude=longitude,
            altitude=float(message.z),
            frame=message.frame,
            param1=message.param1,
            param2=message.param2,
            param3=message.param3,
            param4=message.param4,
            autocontinue=bool(message.autocontinue),
            current=bool(message.current),
            seq=message.seq,
        )
