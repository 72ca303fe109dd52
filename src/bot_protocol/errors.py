"""Errors raised when composing outgoing protocol messages."""
from __future__ import annotations

from typing import Optional

from .models import Depth


class ProtocolError(ValueError):
    """Base class for protocol violations on send."""

    def __init__(self, message: str, message_type: Optional[str] = None) -> None:
        self.message = message
        self.message_type = message_type
        super().__init__(message)


class MissingFieldError(ProtocolError):
    """A required field was absent or empty."""

    def __init__(self, field: str, message_type: str) -> None:
        self.field = field
        super().__init__(f"{message_type} requires field: {field}", message_type)


class DepthLimitError(ProtocolError):
    """The conversation reached its maximum depth; only RESPONSE may be sent."""

    def __init__(self, depth: Depth, message_type: str) -> None:
        self.depth = depth
        super().__init__(
            f"Depth limit reached ({depth.current}/{depth.max}). "
            f"Cannot send {message_type}. Must send RESPONSE instead.",
            message_type,
        )
