"""Compose outgoing protocol messages.

Each ``build_*`` function takes a field mapping using the wire's field names
(``to``, ``from``, ``requestId``, ``task`` ...) and returns the fenced text
ready to post on the channel. ``sender`` and ``request_id`` are accepted as
aliases for ``from`` and ``requestId``.

REQUEST, HANDOFF and CLARIFY extend the conversation, so they are refused
once the depth budget is spent; RESPONSE and BROADCAST are always allowed.
"""
from __future__ import annotations

import secrets
from typing import Any, Callable, Dict, List, Mapping, Tuple, Union

from .errors import DepthLimitError, MissingFieldError, ProtocolError
from .models import BROADCAST_RECIPIENT, DEFAULT_MAX_DEPTH, Depth, MessageType

ID_ALPHABET = "0123456789abcdefghijklmnopqrstuvwxyz"
ID_SUFFIX_LENGTH = 6

_ALIASES = {"from": ("from", "sender"), "requestId": ("requestId", "request_id")}

Fields = Mapping[str, Any]


def default_depth(max_depth: int = DEFAULT_MAX_DEPTH) -> Depth:
    return Depth(current=1, max=max_depth)


def _get(fields: Fields, name: str) -> Any:
    for key in _ALIASES.get(name, (name,)):
        value = fields.get(key)
        if value:
            return value
    return None


def _require(fields: Fields, names: Tuple[str, ...], message_type: MessageType) -> None:
    for name in names:
        if not _get(fields, name):
            raise MissingFieldError(name, message_type.value)


def _resolve_depth(fields: Fields) -> Depth:
    raw = fields.get("depth")
    if raw is None:
        return default_depth()
    try:
        depth = Depth.coerce(raw)
    except TypeError as e:
        raise ProtocolError(str(e)) from e
    if not _is_int(depth.current) or not _is_int(depth.max):
        raise ProtocolError(f"depth must be integers {{current, max}}, got {raw!r}")
    return depth


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _check_depth(depth: Depth, message_type: MessageType) -> None:
    if depth.exhausted:
        raise DepthLimitError(depth, message_type.value)


def _render(message_type: MessageType, to: str, lines: List[Tuple[str, Any]]) -> str:
    out = [f"```\n[{message_type.value} → @{to}]\n"]
    for key, value in lines:
        out.append(f"{key}: {value}\n")
    out.append("```")
    return "".join(out)


def generate_request_id(sender: str) -> str:
    """``<sender with only [a-z0-9]>-<random 6-char suffix>``.

    No uniqueness check is made; collisions are left to the caller.
    """
    clean = "".join(ch for ch in sender.lower() if ch in ID_ALPHABET)
    suffix = "".join(secrets.choice(ID_ALPHABET) for _ in range(ID_SUFFIX_LENGTH))
    return f"{clean}-{suffix}"


def increment_depth(incoming: Union[Depth, Mapping[str, Any], None]) -> Depth:
    """Depth for a reply to a message that arrived with ``incoming`` depth."""
    if not incoming:
        raise ProtocolError("increment_depth requires valid incoming depth {current, max}")
    try:
        depth = Depth.coerce(incoming)
    except TypeError as e:
        raise ProtocolError("increment_depth requires valid incoming depth {current, max}") from e
    if not _is_number(depth.current):
        raise ProtocolError("increment_depth requires valid incoming depth {current, max}")
    return Depth(current=depth.current + 1, max=depth.max)


# -----------------------------
# Builders
# -----------------------------
def build_request(fields: Fields) -> str:
    kind = MessageType.REQUEST
    _require(fields, ("to", "from", "task"), kind)
    sender = _get(fields, "from")
    request_id = _get(fields, "requestId") or generate_request_id(sender)
    depth = _resolve_depth(fields)
    _check_depth(depth, kind)
    return _render(kind, fields["to"], _task_lines(fields, sender, request_id, depth))


def build_handoff(fields: Fields) -> str:
    kind = MessageType.HANDOFF
    _require(fields, ("to", "from", "requestId", "task"), kind)
    depth = _resolve_depth(fields)
    _check_depth(depth, kind)
    return _render(
        kind,
        fields["to"],
        _task_lines(fields, _get(fields, "from"), _get(fields, "requestId"), depth),
    )


def _task_lines(fields: Fields, sender: str, request_id: str, depth: Depth) -> List[Tuple[str, Any]]:
    lines: List[Tuple[str, Any]] = [
        ("From", sender),
        ("RequestId", request_id),
        ("Task", fields["task"]),
    ]
    if fields.get("context"):
        lines.append(("Context", fields["context"]))
    lines.append(("Depth", depth))
    if fields.get("callback"):
        lines.append(("Callback", fields["callback"]))
    if fields.get("priority"):
        lines.append(("Priority", fields["priority"]))
    return lines


def build_response(fields: Fields) -> str:
    kind = MessageType.RESPONSE
    _require(fields, ("to", "from", "requestId"), kind)
    if not fields.get("status") and not fields.get("result"):
        raise ProtocolError("RESPONSE requires either status or result", kind.value)
    depth = _resolve_depth(fields)

    lines: List[Tuple[str, Any]] = [
        ("From", _get(fields, "from")),
        ("RequestId", _get(fields, "requestId")),
    ]
    if fields.get("status"):
        lines.append(("Status", fields["status"]))
    if fields.get("result"):
        lines.append(("Result", fields["result"]))
    if fields.get("context"):
        lines.append(("Context", fields["context"]))
    lines.append(("Depth", depth))
    return _render(kind, fields["to"], lines)


def build_clarify(fields: Fields) -> str:
    kind = MessageType.CLARIFY
    _require(fields, ("to", "from", "requestId", "question"), kind)
    depth = _resolve_depth(fields)
    _check_depth(depth, kind)
    return _render(
        kind,
        fields["to"],
        [
            ("From", _get(fields, "from")),
            ("RequestId", _get(fields, "requestId")),
            ("Question", fields["question"]),
            ("Depth", depth),
        ],
    )


def build_broadcast(fields: Fields) -> str:
    kind = MessageType.BROADCAST
    _require(fields, ("from", "message"), kind)
    sender = _get(fields, "from")
    depth = _resolve_depth(fields)

    lines: List[Tuple[str, Any]] = [
        ("From", sender),
        ("RequestId", _get(fields, "requestId") or generate_request_id(sender)),
        ("Message", fields["message"]),
    ]
    if fields.get("context"):
        lines.append(("Context", fields["context"]))
    lines.append(("Depth", depth))
    return _render(kind, BROADCAST_RECIPIENT, lines)


BUILDERS: Dict[MessageType, Callable[[Fields], str]] = {
    MessageType.REQUEST: build_request,
    MessageType.RESPONSE: build_response,
    MessageType.CLARIFY: build_clarify,
    MessageType.HANDOFF: build_handoff,
    MessageType.BROADCAST: build_broadcast,
}


def build(message_type: Union[MessageType, str], fields: Fields) -> str:
    """Dispatch to the builder for ``message_type``."""
    kind = MessageType.lookup(str(getattr(message_type, "value", message_type)).upper())
    if kind is None:
        raise ProtocolError(f"Unknown message type: {message_type}")
    return BUILDERS[kind](fields)
