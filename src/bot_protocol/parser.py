"""Recover protocol messages from free channel text.

A protocol message is a fenced block whose first line is a header such as
``[REQUEST → @Mantis]`` followed by ``Key: value`` lines. Lines that do not
look like a new key continue the previous value, so multi-line tasks and
results survive the trip through a chat channel.

``parse`` never raises on malformed input: anything that is not a complete,
valid protocol message yields ``None``.
"""
from __future__ import annotations

import logging
import re
from typing import Any, Dict, Iterator, List, Optional, Tuple

from .models import PRIORITIES, RESPONSE_STATUSES, Depth, Message, MessageType

logger = logging.getLogger(__name__)

_FENCED_BLOCK = re.compile(r"```([^`]+)```")
_HEADER = re.compile(r"\[([A-Za-z0-9_]+)\s*→\s*@(\S+)\]")
_FIELD = re.compile(r"([A-Za-z]+):\s*(.*)")
_DEPTH = re.compile(r"(\d+)/(\d+)", re.ASCII)

# normalized key -> Message attribute
KNOWN_FIELDS: Dict[str, str] = {
    "from": "sender",
    "requestid": "request_id",
    "task": "task",
    "result": "result",
    "context": "context",
    "depth": "depth",
    "callback": "callback",
    "priority": "priority",
    "status": "status",
    "question": "question",
    "message": "message",
}

# payload attribute(s) a type must carry; any one of them is enough
_REQUIRED_PAYLOAD: Dict[MessageType, Tuple[str, ...]] = {
    MessageType.REQUEST: ("task",),
    MessageType.HANDOFF: ("task",),
    MessageType.RESPONSE: ("result", "status"),
    MessageType.CLARIFY: ("question",),
    MessageType.BROADCAST: ("message",),
}


def normalize_key(key: str) -> str:
    return key.lower().replace("-", "").replace("_", "")


def _extract_block(raw_text: str) -> Optional[str]:
    match = _FENCED_BLOCK.search(raw_text)
    if not match:
        return None
    return match.group(1).strip()


def _iter_fields(lines: List[str]) -> Iterator[Tuple[str, str]]:
    """Yield (key, value) pairs, folding continuation lines into the open field."""
    key: Optional[str] = None
    buf: List[str] = []
    for line in lines:
        m = _FIELD.fullmatch(line)
        if m:
            if key is not None:
                yield key, "\n".join(buf).strip()
            key, buf = m.group(1), [m.group(2)]
        elif key is not None:
            buf.append(line)
        # text before the first key is ignored
    if key is not None:
        yield key, "\n".join(buf).strip()


def _parse_depth(value: Optional[str]) -> Optional[Depth]:
    if not value:
        return None
    m = _DEPTH.fullmatch(value)
    if not m:
        return None
    return Depth(current=int(m.group(1)), max=int(m.group(2)))


def parse(raw_text: Any) -> Optional[Message]:
    """Parse ``raw_text`` into a :class:`Message`, or return ``None``."""
    if not raw_text or not isinstance(raw_text, str):
        return None

    block = _extract_block(raw_text)
    if not block:
        logger.debug("parse: no fenced block")
        return None

    lines = [line[:-1] if line.endswith("\r") else line for line in block.split("\n")]
    header = _HEADER.fullmatch(lines[0])
    if not header:
        logger.debug("parse: bad header line %r", lines[0])
        return None

    msg_type = MessageType.lookup(header.group(1))
    if msg_type is None:
        logger.debug("parse: unknown message type %r", header.group(1))
        return None

    values: Dict[str, Optional[str]] = {}
    meta: Dict[str, str] = {}
    for key, value in _iter_fields(lines[1:]):
        attr = KNOWN_FIELDS.get(normalize_key(key))
        if attr is None:
            meta[key] = value
        else:
            values[attr] = value

    # Invalid enum and depth values are dropped, not fatal.
    if values.get("status") not in RESPONSE_STATUSES:
        values["status"] = None
    if values.get("priority") not in PRIORITIES:
        values["priority"] = None
    depth = _parse_depth(values.pop("depth", None))

    if not values.get("sender") or not values.get("request_id"):
        logger.debug("parse: missing From or RequestId")
        return None

    required = _REQUIRED_PAYLOAD[msg_type]
    if not any(values.get(attr) for attr in required):
        logger.debug("parse: %s missing %s", msg_type.value, " or ".join(required))
        return None

    return Message(
        type=msg_type,
        to=header.group(2),
        depth=depth,
        meta=meta,
        raw=raw_text,
        **{attr: (v or None) for attr, v in values.items()},
    )
