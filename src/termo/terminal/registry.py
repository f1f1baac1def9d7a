"""Per-user attachment state with idle eviction."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable

logger = logging.getLogger(__name__)

SWEEP_INTERVAL = 3600.0
MAX_IDLE = 3600.0

EvictionHook = Callable[[int], None]


class SessionRegistry:
    """In-memory map of user id -> attached tmux session, plus per-user caches.

    Every map is keyed by user id; nothing here is shared between users.
    """

    def __init__(self, max_idle: float = MAX_IDLE, clock: Callable[[], float] = time.monotonic) -> None:
        self.max_idle = max_idle
        self._clock = clock
        self._attached: dict[int, str] = {}
        self._active_shell: dict[int, str] = {}
        self._last_screen: dict[int, str] = {}
        self._last_command: dict[int, str] = {}
        self._pending: dict[int, str] = {}
        self._last_seen: dict[int, float] = {}
        self._hooks: list[EvictionHook] = []

    # --- Attachment ---

    def attach(self, user_id: int, name: str) -> None:
        self._attached[user_id] = name
        self.touch(user_id)

    def detach(self, user_id: int) -> str | None:
        self.touch(user_id)
        return self._attached.pop(user_id, None)

    def is_attached(self, user_id: int) -> bool:
        return user_id in self._attached

    def current_session(self, user_id: int) -> str | None:
        return self._attached.get(user_id)

    # --- Non-interactive shell session selection ---

    def active_shell_session(self, user_id: int) -> str:
        return self._active_shell.get(user_id, "default")

    def set_active_shell_session(self, user_id: int, name: str) -> None:
        self._active_shell[user_id] = name

    # --- Caches ---

    def last_screen(self, user_id: int) -> str:
        return self._last_screen.get(user_id, "")

    def set_last_screen(self, user_id: int, screen: str) -> None:
        self._last_screen[user_id] = screen

    def last_command(self, user_id: int) -> str | None:
        return self._last_command.get(user_id)

    def set_last_command(self, user_id: int, command: str) -> None:
        self._last_command[user_id] = command

    def set_pending_confirmation(self, user_id: int, command: str) -> None:
        self._pending[user_id] = command

    def pop_pending_confirmation(self, user_id: int) -> str | None:
        return self._pending.pop(user_id, None)

    # --- Eviction ---

    def touch(self, user_id: int) -> None:
        self._last_seen[user_id] = self._clock()

    def on_evict(self, hook: EvictionHook) -> None:
        """Register a callback run for each evicted user id."""
        self._hooks.append(hook)

    def forget(self, user_id: int) -> None:
        for table in (
            self._attached,
            self._active_shell,
            self._last_screen,
            self._last_command,
            self._pending,
            self._last_seen,
        ):
            table.pop(user_id, None)
        for hook in self._hooks:
            try:
                hook(user_id)
            except Exception:
                logger.exception("Eviction hook failed for user %s", user_id)

    def sweep(self, now: float | None = None) -> list[int]:
        """Evict users idle for longer than max_idle. Returns evicted ids."""
        now = self._clock() if now is None else now
        stale = [uid for uid, seen in self._last_seen.items() if now - seen > self.max_idle]
        for user_id in stale:
            self.forget(user_id)
            logger.info("Removed stale state for user %s", user_id)
        return stale

    async def run_sweeper(self, interval: float = SWEEP_INTERVAL) -> None:
        """Sweep forever; meant to run as a background task."""
        while True:
            await asyncio.sleep(interval)
            self.sweep()
