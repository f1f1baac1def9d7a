"""Text helpers for captured screens: diffing, response extraction, cleanup."""

from __future__ import annotations

import re

ECHO_MATCH_CHARS = 30
SEPARATOR = "─" * 7

ANSI_RE = re.compile(r"\x1B(?:[@-Z\\-_]|\[[0-?]*[ -/]*[@-~])")
EMPTY_PROMPT_RE = re.compile(r"^>\s*$")
SEND_LINE_RE = re.compile(r"^>\s+.*↵\s*send$")
STATUS_LINE_RE = re.compile(r"^\s*✦\s*(Thinking|Reading|Writing)")

CHROME_SUBSTRINGS: tuple[str, ...] = (
    SEPARATOR,
    "esc to interrupt",
    "Context left until",
    "shift+tab",
    "bypass permissions",
)

CONTEXT_PATTERNS = [
    re.compile(r"context.*?(\d+(?:\.\d+)?)%", re.IGNORECASE),
    re.compile(r"(\d+(?:\.\d+)?)%.*context", re.IGNORECASE),
    re.compile(r"using\s+(\d+(?:\.\d+)?)%", re.IGNORECASE),
]


def strip_ansi(text: str) -> str:
    return ANSI_RE.sub("", text)


def changed_line_count(old: str, new: str) -> int:
    """Length difference plus lines that differ at the same position."""
    old_lines = old.split("\n")
    new_lines = new.split("\n")
    mismatched = sum(1 for i, line in enumerate(new_lines) if i >= len(old_lines) or old_lines[i] != line)
    return abs(len(new_lines) - len(old_lines)) + mismatched


def find_echo(lines: list[str], user_text: str) -> int:
    """Index of the line after the echoed user input, or 0 if not found."""
    needle = user_text.strip()[:ECHO_MATCH_CHARS]
    if not needle:
        return 0
    for i, line in enumerate(lines):
        if needle in line:
            return i + 1
    return 0


def is_chrome(line: str) -> bool:
    if any(marker in line for marker in CHROME_SUBSTRINGS):
        return True
    return bool(EMPTY_PROMPT_RE.match(line) or SEND_LINE_RE.match(line) or STATUS_LINE_RE.match(line))


def strip_chrome(content: str) -> str:
    """Drop assistant UI lines and trim blank lines at both ends."""
    lines = [line for line in strip_ansi(content).split("\n") if not is_chrome(line)]
    while lines and not lines[0].strip():
        lines.pop(0)
    while lines and not lines[-1].strip():
        lines.pop()
    return "\n".join(lines)


def extract_response(screen: str, user_text: str = "") -> str:
    """Content after the echoed user input, or the whole screen if not found."""
    lines = screen.split("\n")
    start = find_echo(lines, user_text) if user_text else 0
    if start == 0:
        return screen
    return "\n".join(lines[start:]).strip()


def response_preview(screen: str, user_text: str, limit: int = 600, min_chars: int = 30) -> str:
    """Tail of the in-progress reply, or "" until there is enough to show."""
    if not user_text:
        return ""
    lines = screen.split("\n")
    start = find_echo(lines, user_text)
    if start == 0:
        return ""
    cleaned = strip_chrome("\n".join(lines[start:])).strip()
    if len(cleaned) <= min_chars:
        return ""
    if len(cleaned) > limit:
        return "..." + cleaned[-limit:]
    return cleaned


def context_percentage(screen: str) -> float | None:
    """Scan for a context-usage percentage token."""
    for pattern in CONTEXT_PATTERNS:
        match = pattern.search(screen)
        if match:
            percent = float(match.group(1))
            if 0 <= percent <= 100:
                return percent
    return None


def context_warning(percent: float | None) -> str | None:
    if percent is None:
        return None
    if percent >= 95:
        return "🔴 *Context almost full!* Start a fresh conversation soon."
    if percent >= 85:
        return "🟠 *Context getting low.* Consider resetting soon."
    if percent >= 70:
        return f"🟡 *Context usage: {round(percent)}%*"
    return None


def screen_tail(screen: str, max_lines: int = 30, max_chars: int = 2000) -> str:
    lines = screen.split("\n")
    if len(lines) > max_lines:
        screen = "...\n" + "\n".join(lines[-max_lines:])
    return screen[-max_chars:]
