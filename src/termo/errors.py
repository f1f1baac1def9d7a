"""Error taxonomy shared across layers.

Most of these never escape their component: the bridge, executor and
delivery layers catch them at the call site and hand back a safe default or
a typed result instead.
"""

from __future__ import annotations


class TermoError(Exception):
    """Base class for termo errors."""


class InputRejected(TermoError):
    """A session name or path failed validation and was never used."""


class ProcessSpawnFailed(TermoError):
    """A child process could not be started."""


class ProcessTimeout(TermoError):
    """A child process exceeded its time budget."""


class BridgeUnavailable(TermoError):
    """tmux is missing or the requested session does not exist."""


class DeliveryFailed(TermoError):
    """Every delivery fallback for an outbound message failed."""
