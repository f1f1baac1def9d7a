"""Input validation: session names, file paths and shell commands."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path

from termo.errors import InputRejected

logger = logging.getLogger(__name__)

SESSION_NAME_RE = re.compile(r"[A-Za-z0-9_-]{1,50}")

BLOCKED_PATTERNS: list[tuple[str, str]] = [
    (r"\brm\s+(-\S*\s+)*/\s*$", "Deleting the root directory is blocked"),
    (r"\brm\s+-rf\s+/(?!\w)", "rm -rf / is blocked"),
    (r"\brm\s+-rf\s+/\*", "rm -rf /* is blocked"),
    (r"\bmkfs(\.|\b)", "Filesystem formatting is blocked"),
    (r"\bdd\s+if=.*of=/dev/", "Direct disk writes are blocked"),
    (r":\(\)\s*\{\s*:\s*\|\s*:\s*&\s*\}\s*;", "Fork bombs are blocked"),
    (r">\s*/dev/sd[a-z]", "Direct device writes are blocked"),
    (r"\bchmod\s+-R\s+777\s+/", "Recursive chmod 777 on root is blocked"),
    (r"\bchown\s+-R\s+.*\s+/\s*$", "Recursive chown on root is blocked"),
    (r"base64\s+(-d|--decode).*\|\s*(sh|bash|zsh)", "Encoded shell execution is blocked"),
    (r"\bcurl\s+[^|]*\|\s*(sh|bash|zsh)\b", "Curl to shell is blocked"),
    (r"\bwget\s+[^|]*\|\s*(sh|bash|zsh)\b", "Wget to shell is blocked"),
    (r"\|\s*(sh|bash|zsh)\s*$", "Piping to a shell is blocked"),
    (r"\beval\s+", "eval is blocked"),
]

CONFIRMATION_PATTERNS: list[tuple[str, str]] = [
    (r"\bsudo\b", "This command uses sudo (elevated privileges)"),
    (r"\brm\s+-\S*r", "This command deletes files recursively"),
    (r"\b(reboot|shutdown|halt|poweroff)\b", "This will stop or restart the machine"),
    (r"\b(killall|pkill)\s+", "This will kill processes"),
    (r">\s*/etc/", "This will modify system config files"),
    (r"\b(pip|pip3)\s+uninstall\b", "This will uninstall Python packages"),
    (r"\bnpm\s+uninstall\s+-g\b", "This will uninstall global npm packages"),
]

EDITORS = {"vim", "vi", "nvim", "nano", "emacs"}
PAGERS = {"less", "more", "man"}
REPLS = {"python", "python3", "node", "irb", "ghci"}
REMOTE = {"ssh", "telnet", "ftp", "mysql", "psql", "mongo", "redis-cli"}

BLOCKED_FILES: list[str] = [
    r"^/etc/shadow$",
    r"^/etc/sudoers",
    r"\.ssh/.*_(rsa|ed25519|dsa|ecdsa)$",
    r"\.gnupg/",
    r"\.aws/credentials$",
    r"\.netrc$",
    r"\.npmrc$",
    r"\.pypirc$",
    r"\.docker/config\.json$",
    r"\.env($|\.)",
]


@dataclass
class ValidationResult:
    allowed: bool
    requires_confirmation: bool = False
    reason: str = ""


class CommandGuard:
    """Regex-based command checker: blocked and confirm-first patterns."""

    def __init__(self) -> None:
        self._blocked = [(re.compile(p), reason) for p, reason in BLOCKED_PATTERNS]
        self._confirm = [(re.compile(p), reason) for p, reason in CONFIRMATION_PATTERNS]

    def check(self, command: str) -> ValidationResult:
        trimmed = command.strip()
        for compiled, reason in self._blocked:
            if compiled.search(trimmed):
                logger.warning("Blocked command: %s (reason: %s)", trimmed, reason)
                return ValidationResult(allowed=False, reason=reason)
        for compiled, reason in self._confirm:
            if compiled.search(trimmed):
                return ValidationResult(allowed=True, requires_confirmation=True, reason=reason)
        return ValidationResult(allowed=True)


command_guard = CommandGuard()


def validate_command(command: str) -> ValidationResult:
    return command_guard.check(command)


def interactive_warning(command: str) -> str | None:
    """Warn about programs that expect a TTY and will hang or misbehave."""
    words = command.strip().split()
    if not words:
        return None
    first = words[0]
    if first in EDITORS:
        return f"'{first}' is an interactive editor. Consider 'cat', 'head', 'tail' or 'sed' instead."
    if first in PAGERS:
        return f"'{first}' is a pager. Output will be truncated; pipe to 'cat' instead."
    if first in REPLS and len(words) == 1:
        return f"'{first}' without arguments starts a REPL. Pass a script file instead."
    if first in REMOTE:
        return f"'{first}' opens an interactive session. This won't work well over chat."
    return None


def is_valid_session_name(name: str) -> bool:
    return bool(name) and SESSION_NAME_RE.fullmatch(name) is not None


def validate_session_name(name: str) -> str:
    """Return the name unchanged, or raise InputRejected."""
    if not isinstance(name, str) or not is_valid_session_name(name):
        raise InputRejected(f"Invalid session name: {name!r}")
    return name


def validate_path(path: str, roots: list[Path] | None = None) -> Path:
    """Resolve a path and make sure it stays inside home or /tmp.

    Sensitive files (keys, credentials, .env) are refused even inside
    the allowed roots.
    """
    try:
        resolved = Path(path).expanduser().resolve()
    except (OSError, RuntimeError) as e:
        raise InputRejected(f"Invalid path: {path}") from e

    text = str(resolved)
    for pattern in BLOCKED_FILES:
        if re.search(pattern, text):
            raise InputRejected("Access to this file is blocked")

    allowed = roots if roots is not None else [Path.home().resolve(), Path("/tmp").resolve()]
    if not any(resolved == root or root in resolved.parents for root in allowed):
        raise InputRejected("Path must be inside the home directory or /tmp")
    return resolved
