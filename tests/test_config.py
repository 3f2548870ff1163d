from pathlib import Path

import pytest
from pymavlink.dialects.v20 import ardupilotmega as mavlink2

from gcs_link import constants
from gcs_link.adapters import TcpMavlinkTransport, build_transport
from gcs_link.config import (
    ConfigurationError,
    LinkConfig,
    load_config,
    save_config,
)


def test_load_config_defaults(tmp_path: Path) -> None:
    config_path = tmp_path / "gcs-link.cfg"
    config = load_config(config_path)

    assert config.path == config_path
    assert config.link.transport == "tcp"
    assert config.link.host == constants.DEFAULT_FCU_HOST
    assert config.link.port == constants.DEFAULT_FCU_PORT
    assert config.link.gcs_system_id == 255
    assert config.link.gcs_component_id == 1
    assert config.link.heartbeat_interval_seconds == 1.0
    assert config.link.fcu_heartbeat_timeout_seconds == 3.0
    assert config.commands.ack_timeout_seconds == 3.0
    assert config.commands.mode_change_timeout_seconds == 5.0
    assert config.mission.first_request_timeout_seconds == 5.0
    assert config.mission.count_resend_interval_seconds == 0.7
    assert config.mission.upload_timeout_seconds == 15.0
    assert config.sequencer.min_satellites == 6
    assert config.sequencer.start_attempts == 3
    assert config.sequencer.first_waypoint_seq == 1
    assert config.health.enabled is False
    assert config.logging.level == "INFO"


def test_load_config_parses_host_with_port(tmp_path: Path) -> None:
    config_path = tmp_path / "gcs-link.cfg"
    config_path.write_text("[link]\nhost = 192.168.4.1:5760\n", encoding="utf-8")

    config = load_config(config_path)

    assert config.link.host == "192.168.4.1"
    assert config.link.port == 5760
    assert config.raw.get("link", "host") == "192.168.4.1"
    assert config.raw.get("link", "port") == "5760"


def test_load_config_overrides_and_clamps(tmp_path: Path) -> None:
    config_path = tmp_path / "gcs-link.cfg"
    config_path.write_text(
        """
[link]
gcs_system_id = 250
heartbeat_interval_seconds = 0

[telemetry]
gps_raw_hz = 2
vfr_hud_hz = 0

[sequencer]
min_satellites = 8
start_attempts = 0

[logging]
path =
level = DEBUG

[health]
enabled = true
port = 8090
        """.strip()
        + "\n",
        encoding="utf-8",
    )

    config = load_config(config_path)

    assert config.link.gcs_system_id == 250
    assert config.link.heartbeat_interval_seconds == 0.1
    assert config.sequencer.min_satellites == 8
    assert config.sequencer.start_attempts == 1
    assert config.logging.path is None
    assert config.logging.level == "DEBUG"
    assert config.health.enabled is True
    assert config.health.port == 8090

    rates = config.telemetry.message_rates()
    assert rates[mavlink2.MAVLINK_MSG_ID_GPS_RAW_INT] == 2.0
    assert rates[mavlink2.MAVLINK_MSG_ID_VFR_HUD] == 0.0


def test_unknown_transport_is_rejected(tmp_path: Path) -> None:
    config_path = tmp_path / "gcs-link.cfg"
    config_path.write_text("[link]\ntransport = serial\n", encoding="utf-8")

    with pytest.raises(ConfigurationError, match="serial"):
        load_config(config_path)


def test_save_config_round_trips(tmp_path: Path) -> None:
    config_path = tmp_path / "nested" / "gcs-link.cfg"
    config = load_config(config_path)
    config.raw.set("link", "host", "sitl.local")

    save_config(config)

    assert load_config(config_path).link.host == "sitl.local"


def test_build_transport_from_link_config() -> None:
    transport = build_transport(LinkConfig(host="sitl.local", port=5760))
    assert isinstance(transport, TcpMavlinkTransport)
    assert transport.endpoint == "tcp:sitl.local:5760"

    with pytest.raises(ConfigurationError):
        build_transport(LinkConfig(transport="udp"))
