from pathlib import Path

import pytest

from gcs_link import cli


def test_show_config_prints_resolved_sections(tmp_path: Path, capsys) -> None:
    config_path = tmp_path / "gcs-link.cfg"
    config_path.write_text("[link]\nhost = sitl.local:5760\n", encoding="utf-8")

    assert cli.main(["--config", str(config_path), "show-config"]) == 0

    output = capsys.readouterr().out
    assert f"Configuration loaded from {config_path}" in output
    assert "[link]" in output
    assert "host = sitl.local" in output
    assert "port = 5760" in output
    assert "[mission]" in output


def test_invalid_configuration_exits_with_error(tmp_path: Path) -> None:
    config_path = tmp_path / "gcs-link.cfg"
    config_path.write_text("[link]\ntransport = carrier-pigeon\n", encoding="utf-8")

    assert cli.main(["-c", str(config_path), "show-config"]) == 1


def test_command_is_required() -> None:
    with pytest.raises(SystemExit):
        cli.build_parser().parse_args([])
