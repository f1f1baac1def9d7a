"""Message formatting and splitting utilities for Telegram."""

from __future__ import annotations

import os

from termo.storage.models import ExecutionResult

MAX_TELEGRAM_LENGTH = 4096
TRUNCATION_MARKER = "...(truncated)...\n"


def split_for_channel(text: str, max_len: int = MAX_TELEGRAM_LENGTH) -> list[str]:
    """Split text into chunks of at most max_len, breaking on line boundaries.

    The newline at each break is dropped, so "\\n".join(chunks) == text.
    A single line longer than max_len becomes its own, oversized chunk.
    """
    if not text:
        return []
    chunks: list[str] = []
    current: list[str] = []
    size = 0
    for line in text.split("\n"):
        added = len(line) if not current else len(line) + 1
        if current and size + added > max_len:
            chunks.append("\n".join(current))
            current, size = [line], len(line)
        else:
            current.append(line)
            size += added
    chunks.append("\n".join(current))
    return chunks


def truncate_head(text: str, limit: int, marker: str = TRUNCATION_MARKER) -> str:
    """Keep the tail of text so that marker + tail fits in limit."""
    if len(text) <= limit:
        return text
    keep = max(limit - len(marker), 0)
    return marker + (text[-keep:] if keep else "")


def format_duration(ms: int) -> str:
    """Format milliseconds to human-readable duration."""
    if ms < 1000:
        return f"{ms}ms"
    elif ms < 60000:
        return f"{ms / 1000:.1f}s"
    else:
        minutes = ms // 60000
        seconds = (ms % 60000) // 1000
        return f"{minutes}m {seconds}s"


def format_elapsed(seconds: float) -> str:
    total = int(seconds)
    minutes, secs = divmod(total, 60)
    return f"{minutes}m {secs}s" if minutes else f"{secs}s"


def shorten_path(path: str, max_length: int = 40) -> str:
    home = os.environ.get("HOME", "")
    shortened = path.replace(home, "~", 1) if home else path
    if len(shortened) <= max_length:
        return shortened
    head, *tail = shortened.split("/")
    while len(tail) > 1 and len("/".join([head, "...", *tail])) > max_length:
        tail.pop(0)
    return "/".join([head, "...", *tail])


def format_shell_result(result: ExecutionResult, command: str) -> str:
    """Format shell command execution result."""
    output = result.output.strip() or "(no output)"
    if result.truncated:
        output = "[...output truncated...]\n\n" + output
    icon = "OK" if result.exit_code == 0 else f"ERR({result.exit_code})"
    lines = [f"$ {command}", f"[{icon}] {format_duration(result.duration_ms)}", "", output]
    if result.new_working_directory:
        lines.extend(["", f"Directory: {shorten_path(result.new_working_directory)}"])
    return "\n".join(lines)
