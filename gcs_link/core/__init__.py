"""Core primitives for gcs-link."""

from .bus import Broadcast, FrameBus, LatestValue, Subscription
from .correlation import CorrelationTable, PendingCorrelation
from .models import (
    FailureKind,
    FcuIdentity,
    Frame,
    LinkState,
    MissionItem,
    OperationResult,
    StatusText,
    TelemetrySnapshot,
)
from .protocols import MavlinkTransport, TransportError
from .tasks import TaskScope

__all__ = [
    "Broadcast",
    "CorrelationTable",
    "FailureKind",
    "FcuIdentity",
    "Frame",
    "FrameBus",
    "LatestValue",
    "LinkState",
    "MavlinkTransport",
    "MissionItem",
    "OperationResult",
    "PendingCorrelation",
    "StatusText",
    "Subscription",
    "TaskScope",
    "TelemetrySnapshot",
    "TransportError",
]
