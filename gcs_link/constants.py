"""Constants used across the gcs-link package."""

from __future__ import annotations

from pathlib import Path

APP_NAME = "gcs-link"
DEFAULT_CONFIG_FILENAME = f"{APP_NAME}.cfg"
DEFAULT_CONFIG_PATH = Path.home() / ".config" / APP_NAME / DEFAULT_CONFIG_FILENAME
DEFAULT_LOG_PATH = Path.home() / ".local" / "state" / APP_NAME / f"{APP_NAME}.log"

DEFAULT_FCU_HOST = "10.0.2.2"
DEFAULT_FCU_PORT = 5762

# Ground stations conventionally claim system 255.
DEFAULT_GCS_SYSTEM_ID = 255
DEFAULT_GCS_COMPONENT_ID = 1

MAVLINK_PROTOCOL_VERSION = 3
