"""
Unit tests for setup_proxy.py - command line entry point.
"""

import argparse

import pytest

import setup_proxy
from event_router import Stage
from log_config import detach_debug_file
from setup_proxy import (
    EXIT_OK,
    EXIT_USAGE,
    event_from_invocation,
    main,
    stage_from_program,
)


@pytest.fixture(autouse=True)
def quiet_logging(monkeypatch):
    """Keep main() from reconfiguring the root logger during tests."""
    monkeypatch.setattr(setup_proxy, "setup_logging", lambda **kwargs: None)
    yield
    detach_debug_file()


@pytest.fixture
def offline_config(write_config):
    """Configuration without a remote autoproxy list."""
    return write_config(AUTOPROXY_URL="")


class TestStageFromProgram:
    """Tests for stage detection from the program name."""

    @pytest.mark.parametrize("prog,stage", [
        ("/usr/sbin/redsocks-setup-proxy", Stage.MAIN),
        ("redsocks-setup-proxy-prepare", Stage.PREPARE),
        ("/etc/NetworkManager/dispatcher.d/pre-up.d/redsocks-setup-proxy-prepare", Stage.PREPARE),
        ("redsocks-setup-proxy-finalize", Stage.FINALIZE),
    ])
    def test_stage(self, prog, stage):
        assert stage_from_program(prog) is stage


class TestEventFromInvocation:
    """Tests for device/action selection."""

    def test_arguments(self):
        args = argparse.Namespace(device="eth0", action="up")
        assert event_from_invocation(args, {}) == ("eth0", "up")

    def test_dispatcher_environment(self):
        """Test that DEVICE_IFACE / NM_DISPATCHER_ACTION take precedence."""
        args = argparse.Namespace(device="eth0", action="up")
        environ = {"DEVICE_IFACE": "wlan0", "NM_DISPATCHER_ACTION": "down"}
        assert event_from_invocation(args, environ) == ("wlan0", "down")


class TestMain:
    """Tests for main() exit status and behaviour."""

    def test_missing_config_exits_zero(self, temp_dir, capsys):
        """Test that an unconfigured host is a silent no-op."""
        code = main(["--config", str(temp_dir / "absent"), "eth0", "up"],
                    prog="redsocks-setup-proxy", environ={})
        assert code == EXIT_OK
        assert capsys.readouterr().out == ""

    def test_invalid_config_exits_zero(self, write_config):
        """Test that an invalid configuration is logged, not fatal."""
        path = write_config(PROXY_TYPE="ftp")
        assert main(["--config", str(path), "eth0", "up"], prog="redsocks-setup-proxy", environ={}) == EXIT_OK

    def test_non_trigger_device(self, offline_config, capsys):
        """Test that a non-trigger device does nothing, even in dry-run."""
        code = main(["-n", "--config", str(offline_config), "tun0", "up"],
                    prog="redsocks-setup-proxy", environ={})
        assert code == EXIT_OK
        assert capsys.readouterr().out == ""

    def test_unknown_action(self, offline_config):
        """Test that an unknown action on a trigger device exits 1."""
        code = main(["-n", "--config", str(offline_config), "eth0", "restart"],
                    prog="redsocks-setup-proxy", environ={})
        assert code == EXIT_USAGE

    def test_missing_action(self, offline_config):
        """Test that a missing action on a trigger device exits 1."""
        code = main(["-n", "--config", str(offline_config), "eth0"],
                    prog="redsocks-setup-proxy", environ={})
        assert code == EXIT_USAGE

    def test_dry_run_up(self, offline_config, temp_dir, capsys):
        """Test that dry-run prints the bring-up commands in order."""
        code = main(["-n", "--config", str(offline_config), "eth0", "up"],
                    prog="redsocks-setup-proxy", environ={})

        assert code == EXIT_OK
        out = capsys.readouterr().out
        assert "ip route flush cache" in out
        assert "iptables -t nat -N PROXY" in out
        assert "iptables -t nat -A PROXY -d 10.0.0.0/8 -j RETURN" in out
        assert "iptables -t nat -A PROXY -p tcp -j REDIRECT --to-ports 1080" in out
        assert "systemctl restart redsocks" in out
        assert out.index("-j RETURN") < out.index("-j REDIRECT") < out.index("systemctl restart")
        assert not (temp_dir / "redsocks.conf").exists()

    def test_dispatcher_environment(self, offline_config, capsys):
        """Test that the device and action are taken from the dispatcher environment."""
        environ = {"DEVICE_IFACE": "wlan0", "NM_DISPATCHER_ACTION": "down"}
        code = main(["-n", "--config", str(offline_config)],
                    prog="redsocks-setup-proxy", environ=environ)

        assert code == EXIT_OK
        assert "systemctl stop redsocks" in capsys.readouterr().out

    def test_prepare_stage_runs_no_commands(self, offline_config, capsys):
        """Test that the prepare entry point runs hooks only."""
        code = main(["-n", "--config", str(offline_config), "eth0", "up"],
                    prog="/usr/sbin/redsocks-setup-proxy-prepare", environ={})

        assert code == EXIT_OK
        assert capsys.readouterr().out == ""

    def test_stage_option_overrides_program(self, offline_config, capsys):
        """Test that --stage wins over the program name."""
        code = main(["-n", "--stage", "finalize", "--config", str(offline_config), "eth0", "up"],
                    prog="redsocks-setup-proxy", environ={})

        assert code == EXIT_OK
        assert "iptables" not in capsys.readouterr().out

    def test_debug_file_receives_invocation(self, write_config, temp_dir):
        """Test that the invocation is dumped to an existing DEBUG_FILE."""
        debug_file = temp_dir / "debug.log"
        debug_file.write_text("")
        path = write_config(AUTOPROXY_URL="", DEBUG_FILE=str(debug_file))

        main(["--config", str(path), "tun0", "up"], prog="redsocks-setup-proxy",
             environ={"CONNECTION_ID": "office"})
        detach_debug_file()

        content = debug_file.read_text()
        assert "device=tun0, action=up" in content
        assert "CONNECTION_ID=office" in content

    def test_debug_file_must_exist(self, write_config, temp_dir):
        """Test that a missing DEBUG_FILE is not created."""
        debug_file = temp_dir / "debug.log"
        path = write_config(AUTOPROXY_URL="", DEBUG_FILE=str(debug_file))

        main(["--config", str(path), "tun0", "up"], prog="redsocks-setup-proxy", environ={})

        assert not debug_file.exists()
