"""Bot-to-bot messaging protocol engine.

Agents exchange fenced, header-plus-key/value messages over any text
channel. This package provides the three pieces a hosting agent needs:

- :func:`parse` turns channel text into a :class:`Message` (or ``None``)
- ``build_*`` functions turn field mappings into wire text, refusing
  messages that would exceed the conversation's depth budget
- :class:`StateStore` tracks conversations on disk, times out stalled
  ones and reclaims finished ones

Typical usage
-------------
from bot_protocol import parse, build_response, increment_depth, StateStore

store = StateStore()
msg = parse(incoming_text)
if msg is not None:
    store.track(msg)
    reply = build_response({
        "to": msg.sender, "from": "Mantis", "requestId": msg.request_id,
        "status": "done", "result": "...", "depth": increment_depth(msg.depth),
    })
"""

from __future__ import annotations

from .builder import (
    build,
    build_broadcast,
    build_clarify,
    build_handoff,
    build_request,
    build_response,
    generate_request_id,
    increment_depth,
)
from .errors import DepthLimitError, MissingFieldError, ProtocolError
from .models import Depth, Message, MessageType
from .parser import parse
from .state import DEFAULT_TIMEOUTS, SerialQueue, StateStore, default_state_file

__all__ = [
    "__version__",
    "get_version",
    "parse",
    "build",
    "build_request",
    "build_response",
    "build_clarify",
    "build_handoff",
    "build_broadcast",
    "generate_request_id",
    "increment_depth",
    "Depth",
    "Message",
    "MessageType",
    "ProtocolError",
    "MissingFieldError",
    "DepthLimitError",
    "StateStore",
    "SerialQueue",
    "DEFAULT_TIMEOUTS",
    "default_state_file",
]

__version__ = "0.1.0"


def get_version() -> str:
    """Return the package version."""
    return __version__
