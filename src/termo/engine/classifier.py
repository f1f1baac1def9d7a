"""Heuristic activity detection from a captured assistant screen.

Only the trailing window of the screen is inspected: anything older is
assumed to be stale scrollback. Marker sets live in ActivityMarkers so they
can be swapped for another assistant without touching the precedence rules.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass

WINDOW_LINES = 10


class ActivityState(str, enum.Enum):
    THINKING = "thinking"
    READY = "ready"
    DONE = "done"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ActivityMarkers:
    spinners: frozenset[str] = frozenset("○◐◓◑")
    interrupt_hints: tuple[str, ...] = ("esc to interrupt",)
    thinking_words: tuple[str, ...] = ("thinking",)
    prompt: str = ">"
    checkmarks: frozenset[str] = frozenset("✓")
    done_word: str = "done"
    done_veto: str = "undo"


DEFAULT_MARKERS = ActivityMarkers()


@dataclass(frozen=True)
class Activity:
    thinking: bool
    ready: bool
    done: bool
    status: ActivityState


def trailing_window(screen: str, lines: int = WINDOW_LINES) -> list[str]:
    return screen.split("\n")[-lines:]


def _is_prompt_line(line: str, prompt: str) -> bool:
    trimmed = line.strip()
    return trimmed == prompt or trimmed.startswith(prompt + " ")


def parse_activity(screen: str, markers: ActivityMarkers = DEFAULT_MARKERS) -> Activity:
    """Classify the screen as thinking, ready, done or unknown.

    Precedence is thinking > ready > done > unknown: a spinner can sit
    under a stale echoed prompt line, so activity always wins.
    """
    window = trailing_window(screen)
    text = "\n".join(window)
    lower = text.lower()

    thinking = (
        any(glyph in text for glyph in markers.spinners)
        or any(hint in text for hint in markers.interrupt_hints)
        or any(word in lower for word in markers.thinking_words)
    )
    ready = not thinking and any(_is_prompt_line(line, markers.prompt) for line in window)
    done = any(glyph in text for glyph in markers.checkmarks) or (
        markers.done_word in lower and markers.done_veto not in lower
    )

    if thinking:
        status = ActivityState.THINKING
    elif ready:
        status = ActivityState.READY
    elif done:
        status = ActivityState.DONE
    else:
        status = ActivityState.UNKNOWN

    return Activity(thinking=thinking, ready=ready, done=done, status=status)
