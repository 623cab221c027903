"""Error taxonomy for the orchestration core.

  TransportError       model backend unreachable, timed out, refused auth
                       or answered in an unexpected shape; retried by the
                       orchestrator, then escalated to SessionFatal
  ParseError           one embedded call payload could not be decoded;
                       never leaves the parser (becomes a "malformed" rejection)
  CallValidationError  a decoded call failed schema or reference checks;
                       recovered per candidate
  ConflictError        a batch violated a state invariant at commit time
  InvariantViolation   the stored state itself is impossible — a bug; fatal
  SessionFatal         the session cannot continue
"""

from __future__ import annotations

from typing import Literal

TransportErrorKind = Literal["network", "timeout", "auth", "protocol"]


class SharadError(Exception):
    """Base class for every error raised by the core."""


class TransportError(SharadError):
    """Raised when the model backend cannot be reached or returns an error."""

    def __init__(self, message: str, kind: TransportErrorKind = "network") -> None:
        super().__init__(message)
        self.kind = kind


class ParseError(SharadError):
    """Raised inside the parser for a payload that cannot be decoded."""


class CallValidationError(SharadError):
    """A candidate failed validation. ``reason`` is the rejection tag."""

    def __init__(self, reason: str, detail: str = "") -> None:
        super().__init__(f"{reason}: {detail}" if detail else reason)
        self.reason = reason
        self.detail = detail


class ConflictError(SharadError):
    """A mutation batch could not be committed.

    ``index`` is the position of the first failing op in the batch.
    """

    def __init__(self, index: int, message: str) -> None:
        super().__init__(f"op {index}: {message}")
        self.index = index
        self.message = message


class InvariantViolation(SharadError):
    """The stored game state breaks an invariant that apply() should make impossible."""


class SessionFatal(SharadError):
    """The session cannot continue; the message is safe to show the player."""


class ConfigError(SharadError):
    """Raised for unreadable or unrecognised configuration."""


class PromptError(SharadError):
    """Raised when a Handlebars template fails to compile or render."""


class StorageError(SharadError):
    """Raised when persisted session data is missing or unreadable."""
