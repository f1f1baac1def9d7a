"""Shared test fixtures."""

from __future__ import annotations

import pytest

from termo.config import (
    AppConfig,
    BotConfig,
    DeliveryConfig,
    LoggingConfig,
    NotifyConfig,
    RefreshConfig,
    StorageConfig,
    TerminalConfig,
    TmuxConfig,
)


@pytest.fixture
def app_config(tmp_path):
    """Create a test configuration."""
    return AppConfig(
        bot=BotConfig(token="test-token", allowed_users=[12345]),
        terminal=TerminalConfig(shell="/bin/sh", timeout=5, max_output=4000, default_cwd=str(tmp_path)),
        tmux=TmuxConfig(default_session="termo-test", command_timeout=2),
        refresh=RefreshConfig(poll_interval=0.01, ui_update_interval=0.0),
        delivery=DeliveryConfig(),
        notify=NotifyConfig(enabled=False),
        storage=StorageConfig(db_path=str(tmp_path / "test.db")),
        logging=LoggingConfig(level="DEBUG", file=str(tmp_path / "test.log")),
    )


class FakeBridge:
    """Stands in for TmuxBridge: replays a list of screens."""

    def __init__(self, screens: list[str] | None = None) -> None:
        self.screens = list(screens or [""])
        self.captures = 0
        self.sent: list[tuple[str, str]] = []

    async def capture_pane(self, name: str, max_lines: int = 500) -> str:
        index = min(self.captures, len(self.screens) - 1)
        self.captures += 1
        return self.screens[index]

    async def send_keys(self, name: str, text: str) -> bool:
        self.sent.append((name, text))
        return True

    async def send_enter(self, name: str) -> bool:
        self.sent.append((name, "Enter"))
        return True


class FakeChannel:
    """Records everything the engine would send to Telegram."""

    def __init__(self) -> None:
        self.sent: list[str] = []
        self.edits: list[tuple[int, str]] = []
        self.deleted: list[int] = []
        self.typing_count = 0

    async def send(self, text, parse_mode=None, reply_markup=None):
        self.sent.append(text)
        return len(self.sent)

    async def edit(self, message_id, text, parse_mode=None, reply_markup=None):
        self.edits.append((message_id, text))

    async def delete(self, message_id):
        self.deleted.append(message_id)
        return True

    async def typing(self):
        self.typing_count += 1

    async def send_safe(self, text, parse_mode=None, code_block=False, filename="output.txt", reply_markup=None):
        self.sent.append(text)
        return True

    async def edit_safe(self, message_id, text, parse_mode=None, plain_text=None, reply_markup=None):
        self.edits.append((message_id, text))
        return True

    def everything(self) -> list[str]:
        return self.sent + [text for _, text in self.edits]


@pytest.fixture
def fake_channel():
    return FakeChannel()


@pytest.fixture
def make_bridge():
    return FakeBridge
