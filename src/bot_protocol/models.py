"""Shared protocol types: message types, depth, parsed messages and records."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, NotRequired, Optional, TypedDict, Union


class MessageType(str, Enum):
    REQUEST = "REQUEST"
    RESPONSE = "RESPONSE"
    CLARIFY = "CLARIFY"
    HANDOFF = "HANDOFF"
    BROADCAST = "BROADCAST"

    @classmethod
    def lookup(cls, value: str) -> Optional["MessageType"]:
        """Exact (case-sensitive) lookup; returns None for anything else."""
        try:
            return cls(value)
        except ValueError:
            return None


# Wire-level enumerations
RESPONSE_STATUSES = ("done", "partial", "failed")
PRIORITIES = ("low", "normal", "high")

# Conversation record statuses
STATUS_OPEN = "open"
STATUS_CLARIFYING = "clarifying"
STATUS_DONE = "done"
STATUS_PARTIAL = "partial"
STATUS_FAILED = "failed"
STATUS_TIMEOUT = "timeout"

ACTIVE_STATUSES = (STATUS_OPEN, STATUS_CLARIFYING)
CLEANABLE_STATUSES = (STATUS_DONE, STATUS_FAILED, STATUS_TIMEOUT)

BROADCAST_RECIPIENT = "all"
DEFAULT_MAX_DEPTH = 5


@dataclass(frozen=True)
class Depth:
    """How far a conversation has travelled (`current`) and how far it may go (`max`)."""
    current: int
    max: int

    @classmethod
    def coerce(cls, value: Union["Depth", Mapping[str, Any], None]) -> Optional["Depth"]:
        if value is None or isinstance(value, Depth):
            return value
        if isinstance(value, Mapping):
            return cls(current=value.get("current"), max=value.get("max"))  # type: ignore[arg-type]
        raise TypeError(f"depth must be a Depth or a mapping, got {type(value).__name__}")

    @property
    def exhausted(self) -> bool:
        return self.current == self.max

    def to_dict(self) -> Dict[str, int]:
        return {"current": self.current, "max": self.max}

    def __str__(self) -> str:
        return f"{self.current}/{self.max}"


@dataclass
class Message:
    """A protocol message recovered from channel text.

    Only fully valid messages are ever constructed by the parser: the
    sender, request id and the type's payload field are always present.
    """
    type: MessageType
    to: str
    sender: str
    request_id: str
    task: Optional[str] = None
    result: Optional[str] = None
    context: Optional[str] = None
    depth: Optional[Depth] = None
    callback: Optional[str] = None
    priority: Optional[str] = None
    status: Optional[str] = None
    question: Optional[str] = None
    message: Optional[str] = None
    meta: Dict[str, str] = field(default_factory=dict)
    raw: str = ""

    def to_dict(self) -> Dict[str, Any]:
        """JSON shape using the wire's field names (`from`, `requestId`)."""
        return {
            "type": self.type.value,
            "to": self.to,
            "from": self.sender,
            "requestId": self.request_id,
            "task": self.task,
            "result": self.result,
            "context": self.context,
            "depth": self.depth.to_dict() if self.depth else None,
            "callback": self.callback,
            "priority": self.priority,
            "status": self.status,
            "question": self.question,
            "message": self.message,
            "meta": dict(self.meta),
            "raw": self.raw,
        }


# -----------------------------
# Persisted shapes
# -----------------------------
HistoryEntry = TypedDict(
    "HistoryEntry",
    {
        "type": str,
        "from": NotRequired[str],
        "to": NotRequired[str],
        "status": NotRequired[str],
        "at": str,
        "content": NotRequired[Optional[str]],
        "reason": NotRequired[str],  # TIMEOUT entries only
    },
)

ConversationRecord = TypedDict(
    "ConversationRecord",
    {
        "type": str,
        "to": str,
        "from": str,
        "task": Optional[str],
        "status": str,
        "depth": int,
        "createdAt": str,       # ISO-8601 UTC
        "updatedAt": str,
        "lastType": str,        # drives timeout-window selection
        "history": List[HistoryEntry],
        "requestId": NotRequired[str],  # only on list() results
    },
)
