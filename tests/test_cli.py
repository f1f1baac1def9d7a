"""Tests for CLI module."""

from __future__ import annotations

from unittest.mock import patch

import pytest
from typer.testing import CliRunner

import termo.cli as cli_module
import termo.config as cfg_module
from termo.cli import app
from termo.config import AppConfig, BotConfig, LoggingConfig, save_config
from termo.storage.models import TmuxSessionInfo

runner = CliRunner()


@pytest.fixture
def config_file(tmp_path, monkeypatch):
    path = tmp_path / "config.toml"
    monkeypatch.setattr(cfg_module, "CONFIG_FILE", path)
    monkeypatch.setattr(cfg_module, "CONFIG_DIR", tmp_path)
    monkeypatch.setattr(cli_module, "CONFIG_FILE", path)
    for env_name, *_ in cfg_module.ENV_OVERRIDES:
        monkeypatch.delenv(env_name, raising=False)
    monkeypatch.delenv("TERMO_ALLOWED_USERS", raising=False)
    return path


@pytest.fixture
def no_tmux():
    with patch("termo.cli.check_tmux", return_value=(False, "tmux not found")):
        yield


class TestCli:
    def test_version(self, no_tmux):
        result = runner.invoke(app, ["version"])
        assert result.exit_code == 0
        assert "termo v" in result.output
        assert "not installed" in result.output

    def test_status_not_configured(self, config_file, no_tmux):
        result = runner.invoke(app, ["status"])
        assert result.exit_code == 0
        assert "not configured" in result.output.lower()

    def test_status_lists_sessions(self, config_file):
        save_config(AppConfig(bot=BotConfig(token="t")))
        sessions = [TmuxSessionInfo(name="termo-main", window_count=2, attached=True)]
        with patch("termo.cli.check_tmux", return_value=(True, "tmux 3.4")), patch(
            "termo.cli._list_tmux_sessions", return_value=sessions
        ):
            result = runner.invoke(app, ["status"])
        assert result.exit_code == 0
        assert "termo-main" in result.output

    def test_start_without_config(self, config_file):
        result = runner.invoke(app, ["start"])
        assert result.exit_code == 1

    def test_config_without_setup(self, config_file):
        result = runner.invoke(app, ["config"])
        assert result.exit_code == 1

    def test_config_show_masks_token(self, config_file):
        save_config(AppConfig(bot=BotConfig(token="123456789:secret")))
        result = runner.invoke(app, ["config"])
        assert result.exit_code == 0
        assert "secret" not in result.output
        assert "refresh.poll_interval" in result.output

    def test_config_set_values(self, config_file):
        save_config(AppConfig(bot=BotConfig(token="t")))
        assert runner.invoke(app, ["config", "refresh.poll_interval", "1.5"]).exit_code == 0
        assert runner.invoke(app, ["config", "bot.allowed_users", "1,2"]).exit_code == 0
        assert runner.invoke(app, ["config", "notify.enabled", "false"]).exit_code == 0

        loaded = cfg_module.load_config()
        assert loaded.refresh.poll_interval == 1.5
        assert loaded.bot.allowed_users == [1, 2]
        assert loaded.notify.enabled is False

    @pytest.mark.parametrize(
        "args",
        [
            ["config", "terminal.timeout", "soon"],
            ["config", "nosuch.key", "1"],
            ["config", "terminal.nosuch", "1"],
            ["config", "timeout", "1"],
            ["config", "tmux.default_session", "bad name"],
        ],
    )
    def test_config_rejects_bad_input(self, config_file, args):
        save_config(AppConfig(bot=BotConfig(token="t")))
        assert runner.invoke(app, args).exit_code == 1

    def test_init_writes_config(self, config_file, no_tmux):
        result = runner.invoke(app, ["init"], input="123:abc\n42, 43\nwork\n/bin/sh\n")
        assert result.exit_code == 0
        loaded = cfg_module.load_config()
        assert loaded.bot.token == "123:abc"
        assert loaded.bot.allowed_users == [42, 43]
        assert loaded.tmux.default_session == "work"

    def test_init_rejects_bad_session_name(self, config_file, no_tmux):
        result = runner.invoke(app, ["init"], input="123:abc\n\nbad name\n")
        assert result.exit_code == 1
        assert not config_file.exists()

    def test_logs_no_file(self, tmp_path, config_file):
        save_config(AppConfig(logging=LoggingConfig(file=str(tmp_path / "nonexistent.log"))))
        result = runner.invoke(app, ["logs"])
        assert result.exit_code == 0
        assert "no log" in result.output.lower()

    def test_logs_tail(self, tmp_path, config_file):
        log = tmp_path / "termo.log"
        log.write_text("\n".join(f"entry {i}" for i in range(100)))
        save_config(AppConfig(logging=LoggingConfig(file=str(log))))
        result = runner.invoke(app, ["logs", "-n", "3"])
        assert result.output.split() == ["entry", "97", "entry", "98", "entry", "99"]
