"""
Tests for the fleetwatch command line interface.
"""

import json
from unittest.mock import patch

import pytest

from fleetwatch import cli


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "fleet.yaml"
    path.write_text(
        "relay:\n"
        "  secret: hunter2\n"
        "persistence:\n"
        "  path: null\n"
        "nodes:\n"
        "  - id: local\n"
        "    always_local: true\n"
    )
    return str(path)


def test_no_command_prints_help(capsys):
    cli.main([])
    assert "usage: fleetwatch" in capsys.readouterr().out


def test_config_masks_secret(config_file, capsys):
    cli.main(["config", "--config", config_file])
    data = json.loads(capsys.readouterr().out)
    assert data["relay"]["secret"] == "***"
    assert data["nodes"][0]["id"] == "local"


def test_invalid_config_exits_2(tmp_path, capsys):
    path = tmp_path / "bad.yaml"
    path.write_text("log_level: LOUD\n")
    with pytest.raises(SystemExit) as exc_info:
        cli.main(["config", "--config", str(path)])
    assert exc_info.value.code == 2
    assert "Configuration error" in capsys.readouterr().err


def test_serve_runs_uvicorn(config_file):
    with patch("uvicorn.run") as run, patch("fleetwatch.cli.setup_json_logging"):
        cli.main(["serve", "--config", config_file, "--port", "9100"])
    run.assert_called_once()
    assert run.call_args.kwargs["port"] == 9100
    assert run.call_args.kwargs["log_level"] == "info"


def test_probe_prints_report(config_file, capsys):
    with patch("fleetwatch.cli.setup_json_logging"):
        cli.main(["probe", "--config", config_file])
    report = json.loads(capsys.readouterr().out)
    assert report["summary"]["total_nodes"] == 1
    assert report["healthy_pools"] == ["local"]
