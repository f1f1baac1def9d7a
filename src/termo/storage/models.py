"""Data models for termo."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass
class Session:
    """A non-interactive shell session owned by one chat user."""

    name: str
    owner_id: int
    working_directory: str
    is_running: bool = False

    @property
    def key(self) -> str:
        return f"{self.owner_id}:{self.name}"


@dataclass
class ExecutionResult:
    """Result from a one-shot shell command."""

    output: str = ""
    exit_code: int = 0
    duration_ms: int = 0
    truncated: bool = False
    new_working_directory: str | None = None


@dataclass
class TmuxSessionInfo:
    """One row of `tmux list-sessions`."""

    name: str
    window_count: int = 1
    created_at: datetime | None = None
    attached: bool = False


@dataclass
class CommandRecord:
    """A stored command history entry."""

    id: int = 0
    user_id: int = 0
    session_name: str = ""
    command: str = ""
    cwd: str = ""
    exit_code: int | None = None
    duration_ms: int = 0
    source: str = "shell"
    created_at: str = ""
