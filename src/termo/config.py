"""Settings for termo: ~/.termo/config.toml, overridden by TERMO_* variables."""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

if sys.version_info >= (3, 11):
    import tomllib
else:
    try:
        import tomllib
    except ModuleNotFoundError:
        import tomli as tomllib  # type: ignore[no-redef]

import tomli_w

CONFIG_DIR = Path.home() / ".termo"
CONFIG_FILE = CONFIG_DIR / "config.toml"


@dataclass
class BotConfig:
    token: str = ""
    allowed_users: list[int] = field(default_factory=list)


@dataclass
class TerminalConfig:
    shell: str = "/bin/bash"
    timeout: int = 300
    max_output: int = 4000
    default_cwd: str = "~"
    kill_grace: float = 1.0


@dataclass
class TmuxConfig:
    default_session: str = "termo-main"
    capture_lines: int = 500
    command_timeout: int = 10


@dataclass
class RefreshConfig:
    poll_interval: float = 3.0
    ui_update_interval: float = 8.0
    timeout: float = 600.0
    stable_threshold: int = 5
    force_done_threshold: int = 8
    min_change_lines: int = 2
    preview_chars: int = 600


@dataclass
class DeliveryConfig:
    max_message: int = 3500
    hard_limit: int = 4096
    file_threshold: int = 10000


@dataclass
class NotifyConfig:
    enabled: bool = True
    min_seconds: int = 10


@dataclass
class StorageConfig:
    db_path: str = "~/.termo/termo.db"


@dataclass
class LoggingConfig:
    level: str = "WARNING"
    file: str = "~/.termo/termo.log"


@dataclass
class AppConfig:
    bot: BotConfig = field(default_factory=BotConfig)
    terminal: TerminalConfig = field(default_factory=TerminalConfig)
    tmux: TmuxConfig = field(default_factory=TmuxConfig)
    refresh: RefreshConfig = field(default_factory=RefreshConfig)
    delivery: DeliveryConfig = field(default_factory=DeliveryConfig)
    notify: NotifyConfig = field(default_factory=NotifyConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def sections(self) -> dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


# (env var, section, key, converter)
ENV_OVERRIDES: list[tuple[str, str, str, Any]] = [
    ("TERMO_BOT_TOKEN", "bot", "token", str),
    ("TERMO_SHELL", "terminal", "shell", str),
    ("TERMO_TIMEOUT", "terminal", "timeout", int),
    ("TERMO_MAX_OUTPUT", "terminal", "max_output", int),
    ("TERMO_DEFAULT_CWD", "terminal", "default_cwd", str),
    ("TERMO_TMUX_SESSION", "tmux", "default_session", str),
    ("TERMO_DB_PATH", "storage", "db_path", str),
    ("TERMO_LOG_LEVEL", "logging", "level", str),
]


def ensure_config_dir() -> None:
    """Create ~/.termo, readable only by its owner."""
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)
    os.chmod(CONFIG_DIR, 0o700)


def _apply_section(target: Any, values: dict[str, Any]) -> None:
    for f in fields(target):
        if f.name in values:
            setattr(target, f.name, values[f.name])


def load_config() -> AppConfig:
    """Defaults, then the TOML file, then environment overrides."""
    config = AppConfig()

    if CONFIG_FILE.exists():
        with open(CONFIG_FILE, "rb") as f:
            data = tomllib.load(f)

        for name, section in config.sections().items():
            _apply_section(section, data.get(name, {}))

    if env_users := os.environ.get("TERMO_ALLOWED_USERS"):
        config.bot.allowed_users = [int(u.strip()) for u in env_users.split(",") if u.strip()]
    for env_name, section, key, convert in ENV_OVERRIDES:
        if value := os.environ.get(env_name):
            setattr(getattr(config, section), key, convert(value))

    return config


def save_config(config: AppConfig) -> None:
    """Write every section back to the TOML file (mode 600, it holds the token)."""
    ensure_config_dir()

    data = {
        name: {f.name: getattr(section, f.name) for f in fields(section)}
        for name, section in config.sections().items()
    }

    with open(CONFIG_FILE, "wb") as f:
        tomli_w.dump(data, f)

    os.chmod(CONFIG_FILE, 0o600)


# Process-wide settings, loaded on first use
_config: AppConfig | None = None


def get_config() -> AppConfig:
    """Return the process-wide settings, loading them on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reset_config() -> None:
    """Forget the cached settings so the next get_config() reloads."""
    global _config
    _config = None
