"""Wiring of the long-lived components shared by all handlers."""

from __future__ import annotations

from dataclasses import dataclass

from termo.config import AppConfig, get_config
from termo.engine.refresh import RefreshEngine
from termo.terminal.executor import CommandExecutor
from termo.terminal.registry import SessionRegistry
from termo.terminal.sessions import SessionManager
from termo.terminal.tmux import TmuxBridge


@dataclass
class Services:
    config: AppConfig
    bridge: TmuxBridge
    registry: SessionRegistry
    sessions: SessionManager
    executor: CommandExecutor
    engine: RefreshEngine


def build_services(config: AppConfig, persist: bool = True) -> Services:
    bridge = TmuxBridge(command_timeout=config.tmux.command_timeout)
    registry = SessionRegistry()
    sessions = SessionManager(default_cwd=config.terminal.default_cwd, persist=persist)
    executor = CommandExecutor(sessions, kill_grace=config.terminal.kill_grace)
    engine = RefreshEngine(
        bridge,
        registry,
        settings=config.refresh,
        delivery=config.delivery,
        notify_after=config.notify.min_seconds if config.notify.enabled else None,
        capture_lines=config.tmux.capture_lines,
    )
    return Services(
        config=config,
        bridge=bridge,
        registry=registry,
        sessions=sessions,
        executor=executor,
        engine=engine,
    )


# Lazy-initialized singleton
_services: Services | None = None


def get_services() -> Services:
    global _services
    if _services is None:
        _services = build_services(get_config())
    return _services


def set_services(services: Services | None) -> None:
    """Install (or clear, for tests) the shared services."""
    global _services
    _services = services
