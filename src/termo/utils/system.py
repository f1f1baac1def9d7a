"""System utility checks and desktop notifications."""

from __future__ import annotations

import asyncio
import logging
import shutil
import subprocess
import sys

logger = logging.getLogger(__name__)


def check_tmux() -> tuple[bool, str]:
    """Check if tmux is installed and return its version."""
    tmux_path = shutil.which("tmux")
    if not tmux_path:
        return False, "tmux not found. Install it with your package manager (e.g. apt install tmux)."
    try:
        result = subprocess.run(
            ["tmux", "-V"],
            capture_output=True,
            text=True,
            timeout=10,
        )
        version = result.stdout.strip() or result.stderr.strip()
        return True, version
    except subprocess.TimeoutExpired:
        return False, "tmux version check timed out"
    except Exception as e:
        return False, f"Error checking tmux: {e}"


def _sanitize(text: str, max_len: int) -> str:
    """Strip control characters and quotes for a one-line notification."""
    cleaned = "".join(" " if ch in "\r\n" else ch for ch in text if ch >= " " or ch in "\r\n")
    return cleaned.replace("\\", "\\\\").replace('"', '\\"')[:max_len]


def _notification_command(title: str, message: str) -> list[str] | None:
    title = _sanitize(title, 50)
    message = _sanitize(message, 100)
    if sys.platform == "darwin" and shutil.which("osascript"):
        script = f'display notification "{message}" with title "{title}" sound name "Glass"'
        return ["osascript", "-e", script]
    if shutil.which("notify-send"):
        return ["notify-send", title, message]
    return None


async def notify(title: str, message: str) -> bool:
    """Show a desktop notification. Failures are logged and ignored."""
    cmd = _notification_command(title, message)
    if cmd is None:
        return False
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
        await asyncio.wait_for(proc.wait(), timeout=5)
        return proc.returncode == 0
    except (OSError, asyncio.TimeoutError) as e:
        logger.debug("Notification failed: %s", e)
        return False


def notify_in_background(title: str, message: str) -> asyncio.Task[bool]:
    """Fire-and-forget notify(); the caller never waits on it."""
    task = asyncio.get_running_loop().create_task(notify(title, message))
    _background.add(task)
    task.add_done_callback(_background.discard)
    return task


_background: set[asyncio.Task[bool]] = set()
