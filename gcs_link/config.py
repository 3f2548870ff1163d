"""Configuration loader for gcs-link."""

from __future__ import annotations

from configparser import ConfigParser
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

from pymavlink.dialects.v20 import ardupilotmega as mavlink2

from . import constants


class ConfigurationError(RuntimeError):
    """Raised when the configuration names something that cannot be built."""


SUPPORTED_TRANSPORTS = ("tcp",)


@dataclass(slots=True)
class LinkConfig:
    transport: str = "tcp"
    host: str = constants.DEFAULT_FCU_HOST
    port: int = constants.DEFAULT_FCU_PORT
    gcs_system_id: int = constants.DEFAULT_GCS_SYSTEM_ID
    gcs_component_id: int = constants.DEFAULT_GCS_COMPONENT_ID
    connect_timeout_seconds: float = 5.0
    reconnect_interval_seconds: float = 1.0
    heartbeat_interval_seconds: float = 1.0
    fcu_heartbeat_timeout_seconds: float = 3.0
    frame_queue_size: int = 256


@dataclass(slots=True)
class TelemetryConfig:
    sys_status_hz: float = 1.0
    gps_raw_hz: float = 1.0
    global_position_hz: float = 5.0
    vfr_hud_hz: float = 5.0
    battery_status_hz: float = 1.0
    mission_timer_tick_seconds: float = 1.0

    def message_rates(self) -> Dict[int, float]:
        """Requested stream rates keyed by MAVLink message id."""

        return {
            mavlink2.MAVLINK_MSG_ID_SYS_STATUS: self.sys_status_hz,
            mavlink2.MAVLINK_MSG_ID_GPS_RAW_INT: self.gps_raw_hz,
            mavlink2.MAVLINK_MSG_ID_GLOBAL_POSITION_INT: self.global_position_hz,
            mavlink2.MAVLINK_MSG_ID_VFR_HUD: self.vfr_hud_hz,
            mavlink2.MAVLINK_MSG_ID_BATTERY_STATUS: self.battery_status_hz,
        }


@dataclass(slots=True)
class CommandConfig:
    ack_timeout_seconds: float = 3.0
    mode_change_timeout_seconds: float = 5.0
    mode_poll_interval_seconds: float = 0.2


@dataclass(slots=True)
class MissionConfig:
    clear_timeout_seconds: float = 3.0
    count_resend_interval_seconds: float = 0.7
    first_request_timeout_seconds: float = 5.0
    fallback_item_spacing_seconds: float = 0.3
    upload_timeout_seconds: float = 15.0
    readback_count_timeout_seconds: float = 5.0
    readback_item_timeout_seconds: float = 1.5


@dataclass(slots=True)
class SequencerConfig:
    min_satellites: int = 6
    stabilize_timeout_seconds: float = 5.0
    arm_timeout_seconds: float = 10.0
    arm_poll_interval_seconds: float = 0.5
    auto_timeout_seconds: float = 8.0
    start_attempts: int = 3
    start_ack_timeout_seconds: float = 1.5
    start_retry_delay_seconds: float = 0.5
    first_waypoint_seq: int = 1


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    path: Optional[Path] = constants.DEFAULT_LOG_PATH
    log_network: bool = False


@dataclass(slots=True)
class HealthConfig:
    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = 0


@dataclass(slots=True)
class GcsLinkConfig:
    link: LinkConfig = field(default_factory=LinkConfig)
    telemetry: TelemetryConfig = field(default_factory=TelemetryConfig)
    commands: CommandConfig = field(default_factory=CommandConfig)
    mission: MissionConfig = field(default_factory=MissionConfig)
    sequencer: SequencerConfig = field(default_factory=SequencerConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    health: HealthConfig = field(default_factory=HealthConfig)
    raw: ConfigParser = field(default_factory=ConfigParser)
    path: Path = constants.DEFAULT_CONFIG_PATH


def _defaults() -> Dict[str, Dict[str, str]]:
    link = LinkConfig()
    telemetry = TelemetryConfig()
    commands = CommandConfig()
    mission = MissionConfig()
    sequencer = SequencerConfig()
    return {
        "link": {
            "transport": link.transport,
            "host": link.host,
            "port": str(link.port),
            "gcs_system_id": str(link.gcs_system_id),
            "gcs_component_id": str(link.gcs_component_id),
            "connect_timeout_seconds": str(link.connect_timeout_seconds),
            "reconnect_interval_seconds": str(link.reconnect_interval_seconds),
            "heartbeat_interval_seconds": str(link.heartbeat_interval_seconds),
            "fcu_heartbeat_timeout_seconds": str(link.fcu_heartbeat_timeout_seconds),
            "frame_queue_size": str(link.frame_queue_size),
        },
        "telemetry": {
            "sys_status_hz": str(telemetry.sys_status_hz),
            "gps_raw_hz": str(telemetry.gps_raw_hz),
            "global_position_hz": str(telemetry.global_position_hz),
            "vfr_hud_hz": str(telemetry.vfr_hud_hz),
            "battery_status_hz": str(telemetry.battery_status_hz),
            "mission_timer_tick_seconds": str(telemetry.mission_timer_tick_seconds),
        },
        "commands": {
            "ack_timeout_seconds": str(commands.ack_timeout_seconds),
            "mode_change_timeout_seconds": str(commands.mode_change_timeout_seconds),
            "mode_poll_interval_seconds": str(commands.mode_poll_interval_seconds),
        },
        "mission": {
            "clear_timeout_seconds": str(mission.clear_timeout_seconds),
            "count_resend_interval_seconds": str(mission.count_resend_interval_seconds),
            "first_request_timeout_seconds": str(mission.first_request_timeout_seconds),
            "fallback_item_spacing_seconds": str(mission.fallback_item_spacing_seconds),
            "upload_timeout_seconds": str(mission.upload_timeout_seconds),
            "readback_count_timeout_seconds": str(
                mission.readback_count_timeout_seconds
            ),
            "readback_item_timeout_seconds": str(mission.readback_item_timeout_seconds),
        },
        "sequencer": {
            "min_satellites": str(sequencer.min_satellites),
            "stabilize_timeout_seconds": str(sequencer.stabilize_timeout_seconds),
            "arm_timeout_seconds": str(sequencer.arm_timeout_seconds),
            "arm_poll_interval_seconds": str(sequencer.arm_poll_interval_seconds),
            "auto_timeout_seconds": str(sequencer.auto_timeout_seconds),
            "start_attempts": str(sequencer.start_attempts),
            "start_ack_timeout_seconds": str(sequencer.start_ack_timeout_seconds),
            "start_retry_delay_seconds": str(sequencer.start_retry_delay_seconds),
            "first_waypoint_seq": str(sequencer.first_waypoint_seq),
        },
        "logging": {
            "level": "INFO",
            "path": str(constants.DEFAULT_LOG_PATH),
            "log_network": "false",
        },
        "health": {
            "enabled": "false",
            "host": "127.0.0.1",
            "port": "0",
        },
    }


def _seconds(parser: ConfigParser, section: str, option: str) -> float:
    return max(0.0, parser.getfloat(section, option))


def load_config(path: Optional[Path] = None) -> GcsLinkConfig:
    """Load configuration from disk, applying defaults where necessary."""

    config_path = path or constants.DEFAULT_CONFIG_PATH
    parser = ConfigParser()
    parser.read_dict(_defaults())

    if config_path.exists():
        parser.read(config_path)

    transport = parser.get("link", "transport").strip().lower()
    if transport not in SUPPORTED_TRANSPORTS:
        raise ConfigurationError(
            f"Unsupported transport '{transport}' "
            f"(expected one of: {', '.join(SUPPORTED_TRANSPORTS)})"
        )

    host_value = parser.get("link", "host")
    port_value = parser.getint("link", "port")
    if ":" in host_value:
        host_part, port_part = host_value.rsplit(":", 1)
        try:
            parsed_port = int(port_part)
        except ValueError:
            pass
        else:
            host_value = host_part
            port_value = parsed_port
            parser.set("link", "host", host_part)
            parser.set("link", "port", str(parsed_port))

    link = LinkConfig(
        transport=transport,
        host=host_value,
        port=port_value,
        gcs_system_id=parser.getint("link", "gcs_system_id"),
        gcs_component_id=parser.getint("link", "gcs_component_id"),
        connect_timeout_seconds=_seconds(parser, "link", "connect_timeout_seconds"),
        reconnect_interval_seconds=_seconds(
            parser, "link", "reconnect_interval_seconds"
        ),
        heartbeat_interval_seconds=max(
            0.1, parser.getfloat("link", "heartbeat_interval_seconds")
        ),
        fcu_heartbeat_timeout_seconds=max(
            0.1, parser.getfloat("link", "fcu_heartbeat_timeout_seconds")
        ),
        frame_queue_size=max(1, parser.getint("link", "frame_queue_size")),
    )

    telemetry = TelemetryConfig(
        sys_status_hz=_seconds(parser, "telemetry", "sys_status_hz"),
        gps_raw_hz=_seconds(parser, "telemetry", "gps_raw_hz"),
        global_position_hz=_seconds(parser, "telemetry", "global_position_hz"),
        vfr_hud_hz=_seconds(parser, "telemetry", "vfr_hud_hz"),
        battery_status_hz=_seconds(parser, "telemetry", "battery_status_hz"),
        mission_timer_tick_seconds=max(
            0.01, parser.getfloat("telemetry", "mission_timer_tick_seconds")
        ),
    )

    commands = CommandConfig(
        ack_timeout_seconds=_seconds(parser, "commands", "ack_timeout_seconds"),
        mode_change_timeout_seconds=_seconds(
            parser, "commands", "mode_change_timeout_seconds"
        ),
        mode_poll_interval_seconds=max(
            0.01, parser.getfloat("commands", "mode_poll_interval_seconds")
        ),
    )

    mission = MissionConfig(
        clear_timeout_seconds=_seconds(parser, "mission", "clear_timeout_seconds"),
        count_resend_interval_seconds=max(
            0.05, parser.getfloat("mission", "count_resend_interval_seconds")
        ),
        first_request_timeout_seconds=_seconds(
            parser, "mission", "first_request_timeout_seconds"
        ),
        fallback_item_spacing_seconds=_seconds(
            parser, "mission", "fallback_item_spacing_seconds"
        ),
        upload_timeout_seconds=_seconds(parser, "mission", "upload_timeout_seconds"),
        readback_count_timeout_seconds=_seconds(
            parser, "mission", "readback_count_timeout_seconds"
        ),
        readback_item_timeout_seconds=_seconds(
            parser, "mission", "readback_item_timeout_seconds"
        ),
    )

    sequencer = SequencerConfig(
        min_satellites=max(0, parser.getint("sequencer", "min_satellites")),
        stabilize_timeout_seconds=_seconds(
            parser, "sequencer", "stabilize_timeout_seconds"
        ),
        arm_timeout_seconds=_seconds(parser, "sequencer", "arm_timeout_seconds"),
        arm_poll_interval_seconds=max(
            0.01, parser.getfloat("sequencer", "arm_poll_interval_seconds")
        ),
        auto_timeout_seconds=_seconds(parser, "sequencer", "auto_timeout_seconds"),
        start_attempts=max(1, parser.getint("sequencer", "start_attempts")),
        start_ack_timeout_seconds=_seconds(
            parser, "sequencer", "start_ack_timeout_seconds"
        ),
        start_retry_delay_seconds=_seconds(
            parser, "sequencer", "start_retry_delay_seconds"
        ),
        first_waypoint_seq=max(0, parser.getint("sequencer", "first_waypoint_seq")),
    )

    log_path_value = parser.get("logging", "path", fallback="").strip()
    logging_config = LoggingConfig(
        level=parser.get("logging", "level", fallback="INFO"),
        path=Path(log_path_value).expanduser() if log_path_value else None,
        log_network=parser.getboolean("logging", "log_network", fallback=False),
    )

    health = HealthConfig(
        enabled=parser.getboolean("health", "enabled", fallback=False),
        host=parser.get("health", "host", fallback="127.0.0.1"),
        port=max(0, parser.getint("health", "port", fallback=0)),
    )

    return GcsLinkConfig(
        link=link,
        telemetry=telemetry,
        commands=commands,
        mission=mission,
        sequencer=sequencer,
        logging=logging_config,
        health=health,
        raw=parser,
        path=config_path,
    )


def save_config(config: GcsLinkConfig) -> None:
    """Persist the current configuration to disk."""

    config_path = config.path
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as stream:
        config.raw.write(stream)
