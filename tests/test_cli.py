"""Tests for the validator-updater CLI."""

from __future__ import annotations

import json
from unittest.mock import MagicMock, patch

import pytest
from click.testing import CliRunner

from validator_updater import __version__
from validator_updater.cli import main
from validator_updater.cli._common import mask
from validator_updater.errors import StopTimeout
from validator_updater.models import AppliedState
from validator_updater.reconciler import CycleOutcome, CycleResult


@pytest.fixture
def runner():
    return CliRunner()


def _config(runner, config_file, *args):
    return runner.invoke(main, ["config", *args[:1], "--config", str(config_file), *args[1:]])


class TestMask:
    def test_hides_everything(self):
        assert mask("abc") == "****"
        assert mask("supersecret") == "****"

    def test_empty(self):
        assert mask("") == "(empty)"


class TestVersion:
    def test_version(self, runner):
        result = runner.invoke(main, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output


class TestConfigCommands:
    """Tests for the config command group."""

    def test_show_masks_secrets(self, runner, config_file):
        result = _config(runner, config_file, "show")
        assert result.exit_code == 0
        assert "http://10.0.2.2:16850/" in result.output
        assert "HOTKEY_PASSPHRASE" in result.output
        assert "correct horse" not in result.output

    def test_show_reveal(self, runner, config_file):
        result = _config(runner, config_file, "show", "--reveal")
        assert result.exit_code == 0
        assert "correct horse battery staple" in result.output

    def test_set_env(self, runner, config_file):
        result = _config(runner, config_file, "set-env", "WALLET_NAME", "default")
        assert result.exit_code == 0
        assert "Environment variable set: WALLET_NAME" in result.output
        data = json.loads(config_file.read_text())
        assert data["env"]["WALLET_NAME"] == "default"

    def test_set_vmm_url(self, runner, config_file):
        result = _config(runner, config_file, "set-vmm-url", "http://10.0.2.2:10300/")
        assert result.exit_code == 0
        assert json.loads(config_file.read_text())["dstack_vmm_url"] == "http://10.0.2.2:10300/"

    def test_get_env_prints_raw_value(self, runner, config_file):
        result = _config(runner, config_file, "get-env", "HOTKEY_PASSPHRASE")
        assert result.exit_code == 0
        assert result.output == "correct horse battery staple\n"

    def test_get_env_missing(self, runner, config_file):
        result = _config(runner, config_file, "get-env", "NOPE")
        assert result.exit_code == 1
        assert "not found" in result.output

    def test_remove_env(self, runner, config_file):
        result = _config(runner, config_file, "remove-env", "HOTKEY_PASSPHRASE")
        assert result.exit_code == 0
        assert "HOTKEY_PASSPHRASE" not in json.loads(config_file.read_text())["env"]

    def test_remove_env_missing(self, runner, config_file):
        result = _config(runner, config_file, "remove-env", "NOPE")
        assert result.exit_code == 1

    def test_list_env(self, runner, config_file):
        result = _config(runner, config_file, "list-env")
        assert result.exit_code == 0
        assert "VALIDATOR_BASE_URL" in result.output
        assert "https://validator.example" not in result.output

    def test_list_env_empty(self, runner, tmp_path):
        result = _config(runner, tmp_path / "config.json", "list-env")
        assert result.exit_code == 0
        assert "No environment variables configured" in result.output

    def test_malformed_config(self, runner, tmp_path):
        path = tmp_path / "config.json"
        path.write_text("{oops")
        result = _config(runner, path, "list-env")
        assert result.exit_code == 1
        assert "Error" in result.output


class TestCheckCommand:
    """Tests for the single-cycle check command."""

    @patch("validator_updater.daemon.UpdaterService")
    def test_check_ok(self, mock_svc_cls, runner, tmp_path):
        svc = MagicMock()
        svc.run_cycle.return_value = CycleResult(
            applied=AppliedState(last_fingerprint="a" * 64, vm_id="vm-1"),
            outcome=CycleOutcome.REPLACED,
        )
        mock_svc_cls.return_value = svc
        result = runner.invoke(main, ["check", "--config", str(tmp_path / "c.json")])
        assert result.exit_code == 0
        assert "replaced" in result.output
        assert "vm-1" in result.output
        settings = mock_svc_cls.call_args.args[0]
        assert settings.config_path == tmp_path / "c.json"

    @patch("validator_updater.daemon.UpdaterService")
    def test_check_failed(self, mock_svc_cls, runner):
        svc = MagicMock()
        svc.run_cycle.return_value = CycleResult(
            applied=AppliedState(), outcome=CycleOutcome.FAILED, error=StopTimeout("vm-1", 60),
        )
        mock_svc_cls.return_value = svc
        result = runner.invoke(main, ["check"])
        assert result.exit_code == 1
        assert "failed" in result.output

    @patch("validator_updater.daemon.UpdaterService")
    def test_check_json(self, mock_svc_cls, runner):
        svc = MagicMock()
        svc.run_cycle.return_value = CycleResult(applied=AppliedState(), outcome=CycleOutcome.UNCHANGED)
        svc.state.snapshot.return_value = {"cycles_run": 1, "last_outcome": "unchanged"}
        mock_svc_cls.return_value = svc
        result = runner.invoke(main, ["check", "--json-out"])
        assert result.exit_code == 0
        assert json.loads(result.output)["last_outcome"] == "unchanged"


class TestRunCommand:
    @patch("validator_updater.daemon.setup_logging")
    @patch("validator_updater.daemon.UpdaterService")
    def test_run_builds_settings(self, mock_svc_cls, mock_logging, runner, tmp_path):
        result = runner.invoke(main, [
            "run", "--vmm-url", "http://vmm.test:10300", "--interval", "7",
            "--config", str(tmp_path / "c.json"),
        ])
        assert result.exit_code == 0, result.output
        settings = mock_svc_cls.call_args.args[0]
        assert settings.vmm_url == "http://vmm.test:10300"
        assert settings.poll_interval == 7
        mock_svc_cls.return_value.start.assert_called_once()
        mock_svc_cls.return_value.run_forever.assert_called_once()
        mock_logging.assert_called_once_with("INFO", None)

    def test_run_bad_settings_file(self, runner, tmp_path):
        path = tmp_path / "updater.yaml"
        path.write_text("poll_interval: -1\n")
        result = runner.invoke(main, ["run", "--settings", str(path)])
        assert result.exit_code == 1
        assert "Invalid settings" in result.output
