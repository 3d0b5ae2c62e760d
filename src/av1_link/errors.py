"""Error types reported by the call session."""
from __future__ import annotations


class CallError(RuntimeError):
    """Base class for failures surfaced to the user as status reports."""


class PreconditionError(CallError):
    """Raised when a call cannot be placed in the current state.

    Covers a disconnected signaling channel and a missing local media stream.
    No session state is mutated when this is raised.
    """


class NegotiationError(CallError):
    """Raised when the media engine rejects description creation or application."""


class EncodingConfigError(CallError):
    """Raised when encoder parameters cannot be applied to the video sender."""


class TransportError(CallError):
    """Raised when a signaling message is sent while the channel is disconnected."""


__all__ = [
    "CallError",
    "EncodingConfigError",
    "NegotiationError",
    "PreconditionError",
    "TransportError",
]
