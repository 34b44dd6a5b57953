"""Tests for the satlink command-line interface."""

from pathlib import Path

import pytest

from satlink import cli
from satlink.adapters import SerialPortInfo


@pytest.fixture
def config_path(tmp_path: Path) -> Path:
    path = tmp_path / "satlink.cfg"
    path.write_text("[link]\nport = /dev/ttyUSB3\n", encoding="utf-8")
    return path


def test_parser_requires_a_command():
    with pytest.raises(SystemExit):
        cli.build_parser().parse_args([])


def test_parser_reads_global_options(config_path):
    args = cli.build_parser().parse_args(
        ["-c", str(config_path), "--port", "COM4", "--simulate", "start", "--auto"]
    )

    assert args.config == config_path
    assert args.port == "COM4"
    assert args.simulate is True
    assert args.command == "start"
    assert args.auto is True


def test_validate_prints_steps_and_total(config_path, capsys):
    assert cli.main(["-c", str(config_path), "validate", "3g5r2b1n"]) == 0

    output = capsys.readouterr().out.splitlines()
    assert output[0].startswith("1. 3s ")
    assert len(output) == 5
    assert output[-1] == "Total: 11s"


def test_validate_reports_invalid_sequence(config_path, capsys):
    assert cli.main(["-c", str(config_path), "validate", "3x"]) == 1

    assert capsys.readouterr().out.startswith("Invalid sequence: ")


def test_show_config_applies_overrides(config_path, capsys):
    assert cli.main(["-c", str(config_path), "--simulate", "show-config"]) == 0

    output = capsys.readouterr().out
    assert f"Configuration loaded from {config_path}" in output
    assert "port = /dev/ttyUSB3" in output
    assert "transport = simulator" in output


def test_invalid_configuration_exits_with_two(tmp_path, capsys):
    path = tmp_path / "satlink.cfg"
    path.write_text("[filter]\nprotocol = morse\n", encoding="utf-8")

    assert cli.main(["-c", str(path), "show-config"]) == 2
    assert "Invalid configuration" in capsys.readouterr().err


def test_ports_lists_detected_devices(config_path, monkeypatch, capsys):
    monkeypatch.setattr(
        cli,
        "list_serial_ports",
        lambda: [SerialPortInfo(device="/dev/ttyACM0", description="Payload", hwid="USB")],
    )

    assert cli.main(["-c", str(config_path), "ports"]) == 0

    assert capsys.readouterr().out.strip() == "/dev/ttyACM0\tPayload"


def test_ports_without_devices(config_path, monkeypatch, capsys):
    monkeypatch.setattr(cli, "list_serial_ports", lambda: [])

    assert cli.main(["-c", str(config_path), "ports"]) == 0

    assert "No serial ports found" in capsys.readouterr().out


def test_filter_command_uses_one_shot_helper(config_path, monkeypatch, capsys):
    seen = {}

    async def fake_change(config, code):
        seen["port"] = config.link.port
        seen["code"] = code.digits
        from satlink.filters import FilterState

        return FilterState(code=code, confirmed=False)

    monkeypatch.setattr(cli, "change_filter_once", fake_change)
    monkeypatch.setattr(cli, "configure_logging", lambda *args, **kwargs: None)

    assert cli.main(["-c", str(config_path), "--port", "COM9", "filter", "c"]) == 0

    assert seen == {"port": "COM9", "code": "23"}
    assert capsys.readouterr().out.strip() == "Active: Cyan, Turquoise [23] (unconfirmed)"


def test_sequence_command_reports_result(config_path, monkeypatch, capsys):
    from satlink.scheduler import SequenceRunState

    async def fake_run(config, text):
        assert text == "1n"
        return SequenceRunState.CANCELLED

    monkeypatch.setattr(cli, "run_sequence_once", fake_run)
    monkeypatch.setattr(cli, "configure_logging", lambda *args, **kwargs: None)

    assert cli.main(["-c", str(config_path), "sequence", "1n"]) == 1
    assert capsys.readouterr().out.strip() == "Sequence cancelled"
