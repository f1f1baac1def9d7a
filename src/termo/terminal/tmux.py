"""tmux bridge: session lifecycle, keystroke injection and pane capture.

Every public method validates session names before spawning anything and
turns tmux failures into a safe default. Nothing here raises to the caller.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime

from termo.errors import BridgeUnavailable, InputRejected
from termo.storage.models import TmuxSessionInfo
from termo.terminal.sanitizer import validate_session_name

logger = logging.getLogger(__name__)

LIST_FORMAT = "#{session_name}|#{session_windows}|#{session_created}|#{session_attached}"


def parse_session_list(output: str) -> list[TmuxSessionInfo]:
    """Parse `tmux list-sessions -F LIST_FORMAT` output."""
    sessions: list[TmuxSessionInfo] = []
    for line in output.splitlines():
        parts = line.strip().split("|")
        if len(parts) != 4 or not parts[0]:
            continue
        name, windows, created, attached = parts
        try:
            created_at = datetime.fromtimestamp(int(created))
        except (ValueError, OverflowError, OSError):
            created_at = None
        sessions.append(
            TmuxSessionInfo(
                name=name,
                window_count=int(windows) if windows.isdigit() else 1,
                created_at=created_at,
                attached=attached.isdigit() and int(attached) > 0,
            )
        )
    return sessions


class TmuxBridge:
    """Async wrapper around the tmux CLI."""

    def __init__(self, command_timeout: float = 10, binary: str = "tmux") -> None:
        self.command_timeout = command_timeout
        self.binary = binary

    # --- Low-level ---

    async def _communicate(self, proc: asyncio.subprocess.Process) -> tuple[int, str]:
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.command_timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.communicate()
            raise BridgeUnavailable(f"tmux did not answer within {self.command_timeout}s")
        if proc.returncode:
            logger.debug("tmux exited %s: %s", proc.returncode, stderr.decode("utf-8", errors="replace").strip())
        return proc.returncode or 0, stdout.decode("utf-8", errors="replace")

    async def _exec(self, *args: str) -> tuple[int, str]:
        try:
            proc = await asyncio.create_subprocess_exec(
                self.binary,
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise BridgeUnavailable(f"tmux not available: {e}") from e
        return await self._communicate(proc)

    async def _call(self, names: tuple[str, ...], *args: str) -> tuple[int, str] | None:
        """Validate every session name, then run tmux. None on any failure."""
        try:
            for name in names:
                validate_session_name(name)
            return await self._exec(*args)
        except InputRejected as e:
            logger.warning("Rejected tmux call %s: %s", args[:1], e)
        except BridgeUnavailable as e:
            logger.debug("tmux call %s failed: %s", args[:1], e)
        except Exception:
            logger.exception("Unexpected tmux failure for %s", args[:1])
        return None

    async def _ok(self, names: tuple[str, ...], *args: str) -> bool:
        result = await self._call(names, *args)
        return result is not None and result[0] == 0

    # --- Session lifecycle ---

    async def create_session(self, name: str, width: int = 120, height: int = 30, cwd: str | None = None) -> bool:
        args = ["new-session", "-d", "-s", name, "-x", str(width), "-y", str(height)]
        if cwd:
            args.extend(["-c", cwd])
        created = await self._ok((name,), *args)
        if created:
            logger.info("Created tmux session %s", name)
        return created

    async def has_session(self, name: str) -> bool:
        return await self._ok((name,), "has-session", "-t", name)

    async def kill_session(self, name: str) -> bool:
        return await self._ok((name,), "kill-session", "-t", name)

    async def rename_session(self, old: str, new: str) -> bool:
        return await self._ok((old, new), "rename-session", "-t", old, new)

    async def list_sessions(self) -> list[TmuxSessionInfo]:
        result = await self._call((), "list-sessions", "-F", LIST_FORMAT)
        if result is None or result[0] != 0:
            # No server running means no sessions.
            return []
        return parse_session_list(result[1])

    # --- Keystrokes ---

    async def send_keys(self, name: str, text: str) -> bool:
        """Type text into the session as literal keystrokes (no Enter)."""
        # -l stops tmux from reading key names; -- lets text start with "-".
        return await self._ok((name,), "send-keys", "-t", name, "-l", "--", text)

    async def send_enter(self, name: str) -> bool:
        return await self._ok((name,), "send-keys", "-t", name, "Enter")

    async def send_interrupt(self, name: str) -> bool:
        return await self._ok((name,), "send-keys", "-t", name, "C-c")

    # --- Screen ---

    async def capture_pane(self, name: str, max_lines: int = 500) -> str:
        """Visible pane plus up to max_lines of scrollback; "" on any failure."""
        result = await self._call((name,), "capture-pane", "-t", name, "-p", "-S", f"-{max_lines}")
        if result is None or result[0] != 0:
            return ""
        return result[1].strip()

    async def clear_scrollback(self, name: str) -> bool:
        return await self._ok((name,), "clear-history", "-t", name)

    async def get_working_directory(self, name: str) -> str | None:
        result = await self._call((name,), "display-message", "-p", "-t", name, "#{pane_current_path}")
        if result is None or result[0] != 0:
            return None
        return result[1].strip() or None
