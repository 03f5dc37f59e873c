"""Tests for fleet.cli module."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
import yaml

from fleet import cli
from fleet.exceptions import ConsistencyError


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("FLEET_CONF_DIR", "FLEET_STATE_DIR", "FLEET_ABORT_FILE", "FLEET_POLL_INTERVAL", "FLEET_DRY_RUN"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def config_path(tmp_path, settings, seeded_store):
    path = tmp_path / "fleet.yaml"
    path.write_text(
        yaml.dump(
            {
                "conf_dir": str(settings.conf_dir),
                "state_dir": str(settings.state_dir),
                "abort_file": str(settings.abort_file),
                "kickstart_dir": str(settings.kickstart_dir),
            }
        )
    )
    return str(path)


class TestParser:
    def test_global_flags(self):
        args = cli.build_parser().parse_args(["--dry-run", "--yes", "system", "provision", "web01", "--foreground"])
        assert args.dry_run is True
        assert args.yes is True
        assert args.func is cli.cmd_system_provision
        assert args.foreground is True

    def test_range_with_subnet(self):
        args = cli.build_parser().parse_args(["network", "ipam", "add-range", "loc1-core-a", "10.1.2.0/28"])
        assert args.first == "10.1.2.0/28"
        assert args.last is None

    def test_convert_target_choices(self):
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args(["system", "convert", "web01", "container"])

    def test_subject_required(self):
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args([])


class TestMain:
    def test_address_commands(self, config_path, seeded_store, capsys):
        assert cli.main(["--config", config_path, "network", "ipam", "add-range", "loc1-core-a", "10.1.2.10", "10.1.2.20"]) == 0
        assert cli.main(["--config", config_path, "network", "ip", "assign", "10.1.2.15", "web01", "--force"]) == 0
        capsys.readouterr()
        assert cli.main(["--config", config_path, "network", "ip", "show", "10.1.2.15"]) == 0
        out = capsys.readouterr().out
        assert "assigned" in out
        assert "web01" in out

    def test_locate_and_type(self, config_path, capsys):
        assert cli.main(["--config", config_path, "network", "ip", "locate", "10.1.2.15"]) == 0
        assert cli.main(["--config", config_path, "system", "type", "web01"]) == 0
        assert capsys.readouterr().out.split() == ["loc1-core-a", "single"]

    def test_hypervisor_list_filters(self, config_path, capsys):
        assert cli.main(["--config", config_path, "hypervisor", "list", "--network", "loc1-core-a", "--environment", "prod"]) == 0
        assert capsys.readouterr().out.split() == ["hv1", "hv2"]

    def test_lineage(self, config_path, capsys):
        assert cli.main(["--config", config_path, "build", "lineage", "web"]) == 0
        assert capsys.readouterr().out.strip() == "web"

    def test_status_without_builds(self, config_path, capsys):
        assert cli.main(["--config", config_path, "system", "status"]) == 0
        assert "No builds have been recorded" in capsys.readouterr().out

    def test_error_returns_one(self, config_path, capsys):
        assert cli.main(["--config", config_path, "system", "type", "ghost"]) == 1
        out = capsys.readouterr().out
        assert "[ERROR]" in out
        assert "Unknown system 'ghost'" in out

    def test_handler_error(self, tmp_path):
        fleet = MagicMock()
        fleet.provisioner.provision.side_effect = ConsistencyError("No network was found matching 10.9.9.9")
        with patch("fleet.cli.load_settings"), patch("fleet.cli.open_fleet", return_value=fleet), patch(
            "fleet.cli.log"
        ) as mock_log:
            assert cli.main(["system", "provision", "web01"]) == 1
        mock_log.assert_called_once_with("ERROR", "No network was found matching 10.9.9.9")

    def test_settings_flags_passed(self):
        with patch("fleet.cli.load_settings") as mock_load, patch("fleet.cli.open_fleet"), patch(
            "fleet.cli.cmd_system_deprovision", return_value=0
        ):
            cli.main(["--yes", "--dry-run", "system", "deprovision", "web01"])
        mock_load.assert_called_once_with(None, dry_run=True, assume_yes=True)

    def test_resume_restores_signal_handler(self):
        fleet = MagicMock()
        with patch("fleet.cli.load_settings"), patch("fleet.cli.open_fleet", return_value=fleet), patch(
            "fleet.cli.signal.signal"
        ) as mock_signal:
            assert cli.main(["system", "resume", "web01"]) == 0
        fleet.provisioner.run_phase2.assert_called_once_with("web01")
        assert mock_signal.call_count == 2
