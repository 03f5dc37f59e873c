"""Tests for fleet.remote module."""

from __future__ import annotations

import subprocess
from dataclasses import replace
from unittest.mock import patch

import pytest

from fleet.exceptions import ConnectivityError
from fleet.remote import Remote, helper_command
from fleet.runtime import CancelToken


def _done(returncode=0, stdout="", stderr=""):
    return subprocess.CompletedProcess([], returncode, stdout=stdout, stderr=stderr)


class TestSsh:
    def test_command_line(self, settings):
        cmd = Remote(settings).ssh_command("10.1.0.11", "uptime")
        assert cmd[0] == "ssh"
        assert cmd[-2:] == ["root@10.1.0.11", "uptime"]
        assert "BatchMode=yes" in cmd

    def test_explicit_user_kept(self, settings):
        assert Remote(settings).ssh_command("admin@host", "true")[-2] == "admin@host"

    def test_returns_stdout(self, settings):
        with patch("fleet.remote.run", return_value=_done(stdout="up 3 days\n")) as mock_run:
            assert Remote(settings).ssh("host", "uptime") == "up 3 days\n"
        assert mock_run.call_args.kwargs["capture_output"] is True

    def test_failure_raises(self, settings):
        with patch("fleet.remote.run", return_value=_done(returncode=255, stderr="no route")):
            with pytest.raises(ConnectivityError, match="no route"):
                Remote(settings).ssh("host", "uptime")

    def test_failure_ignored_without_check(self, settings):
        with patch("fleet.remote.run", return_value=_done(returncode=1, stdout="partial")):
            assert Remote(settings).ssh("host", "false", check=False) == "partial"

    def test_dry_run_skips_mutating_only(self, settings, capsys):
        remote = Remote(replace(settings, dry_run=True))
        with patch("fleet.remote.run", return_value=_done(stdout="data")) as mock_run:
            assert remote.ssh("host", "rm -f /vm/x.img") == ""
            assert remote.ssh("host", "cat /proc/loadavg", mutating=False) == "data"
        assert mock_run.call_count == 1
        assert "[dry-run] ssh" in capsys.readouterr().out

    def test_succeeds_and_file_exists(self, settings):
        with patch("fleet.remote.run", side_effect=[_done(0), _done(1)]) as mock_run:
            remote = Remote(settings)
            assert remote.file_exists("host", "/vm/backing/web.img") is True
            assert remote.succeeds("host", "false") is False
        assert mock_run.call_args_list[0].args[0][-1] == "test -e /vm/backing/web.img"


class TestScp:
    def test_recursive(self, settings):
        with patch("fleet.remote.run", return_value=_done()) as mock_run:
            Remote(settings).scp("/srv/builds", "root@host:ESG/", recursive=True)
        cmd = mock_run.call_args.args[0]
        assert cmd[0] == "scp"
        assert "-r" in cmd
        assert cmd[-2:] == ["/srv/builds", "root@host:ESG/"]

    def test_failure(self, settings):
        with patch("fleet.remote.run", return_value=_done(returncode=1, stderr="denied")):
            with pytest.raises(ConnectivityError, match="denied"):
                Remote(settings).scp(["a", "b"], "host:/tmp/")

    def test_dry_run(self, settings):
        with patch("fleet.remote.run") as mock_run:
            Remote(replace(settings, dry_run=True)).scp("a", "host:/tmp/")
        mock_run.assert_not_called()


class TestLiveness:
    def test_port_probe_first(self, settings):
        remote = Remote(settings)
        with patch.object(remote, "port_open", side_effect=[False, True]) as mock_port, patch.object(
            remote, "ping"
        ) as mock_ping:
            assert remote.is_alive("10.1.2.15") is True
        assert [c.args[1] for c in mock_port.call_args_list] == [22, 80]
        mock_ping.assert_not_called()

    def test_falls_back_to_ping(self, settings):
        remote = Remote(settings)
        with patch.object(remote, "port_open", return_value=False), patch.object(remote, "ping", return_value=False):
            assert remote.is_alive("10.1.2.15") is False

    def test_ping_zero_received(self, settings):
        output = "4 packets transmitted, 0 received, 100% packet loss"
        with patch("fleet.remote.run", return_value=_done(returncode=0, stdout=output)):
            assert Remote(settings).ping("10.1.2.15") is False

    def test_wait_reachable(self, settings):
        remote = Remote(settings)
        with patch.object(remote, "port_open", side_effect=[False, True]), patch.object(
            remote, "succeeds", return_value=True
        ), patch.object(CancelToken, "sleep") as mock_sleep:
            remote.wait_reachable("10.1.9.20", CancelToken())
        assert mock_sleep.call_count == 1


class TestHelperCommand:
    def test_install_with_static_address(self, settings):
        command = helper_command(
            settings,
            "web01",
            arch="x86_64",
            os_name="centos7",
            ram=2048,
            mac="52:54:00:01:02:03",
            uuid="u-1",
            interface="br-build",
            disk=20,
            ks_url="http://10.1.9.5/ks/web01.cfg",
            ip="10.1.9.20",
            netmask="255.255.255.0",
            gateway="10.1.9.1",
            dns="10.1.9.2",
        )
        assert command.startswith("/usr/local/utils/kvm-install.sh --arch x86_64 --disk 20 ")
        assert "--ip 10.1.9.20/255.255.255.0 --gateway 10.1.9.1 --dns 10.1.9.2" in command
        assert "--ks http://10.1.9.5/ks/web01.cfg" in command
        assert "--no-console --no-reboot" in command
        assert command.endswith(" web01")

    def test_dhcp_overlay_without_install(self, settings):
        command = helper_command(
            settings,
            "web02",
            arch="x86_64",
            os_name="centos7",
            ram=2048,
            mac="52:54:00:01:02:04",
            uuid="u-2",
            interface="br-build",
            disk=20,
            base="/vm/backing/web-base-1.img",
            no_install=True,
            ks_url="http://ignored",
        )
        assert "--ip dhcp" in command
        assert "--disk " not in command
        assert "--base /vm/backing/web-base-1.img" in command
        assert "--no-install" in command
        assert "--ks" not in command

    def test_existing_disk(self, settings):
        command = helper_command(
            settings,
            "db01",
            arch="x86_64",
            os_name="centos7",
            ram=1024,
            mac="52:54:00:01:02:05",
            uuid="u-3",
            interface="br-core",
            disk=40,
            disk_path="/vm/db01.img",
            use_existing=True,
            no_install=True,
        )
        assert "--disk-path /vm/db01.img --use-existing --no-install" in command
        assert "--disk 40" not in command
