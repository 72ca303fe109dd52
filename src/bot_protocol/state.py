"""Persisted conversation state: tracking, timeouts and cleanup.

All conversations live in one pretty-printed JSON document mapping
``requestId -> record``. Every mutation is a full load -> mutate -> save
cycle that runs through the store's :class:`SerialQueue`, so overlapping
callers in one process never lose each other's updates. Two processes
sharing a state file are *not* protected.
"""
from __future__ import annotations

import copy
import json
import logging
import math
import os
import tempfile
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, TypeVar, Union

from .models import (
    ACTIVE_STATUSES,
    CLEANABLE_STATUSES,
    STATUS_CLARIFYING,
    STATUS_DONE,
    STATUS_OPEN,
    STATUS_TIMEOUT,
    ConversationRecord,
    HistoryEntry,
    Message,
    MessageType,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")
State = Dict[str, ConversationRecord]

_MINUTE_MS = 60 * 1000

DEFAULT_TIMEOUTS: Dict[str, int] = {
    MessageType.CLARIFY.value: 10 * _MINUTE_MS,
    MessageType.REQUEST.value: 30 * _MINUTE_MS,
    MessageType.HANDOFF.value: 30 * _MINUTE_MS,
    MessageType.BROADCAST.value: 5 * _MINUTE_MS,
}
DEFAULT_CLEANUP_MS = 24 * 60 * _MINUTE_MS


def default_state_file() -> Path:
    home = os.environ.get("HOME") or os.environ.get("USERPROFILE") or str(Path.home())
    return Path(home) / ".openclaw" / "workspace" / "bot-protocol-state.json"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _to_iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _from_iso(value: str) -> datetime:
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _age_ms(now: datetime, iso: str) -> float:
    return (now - _from_iso(iso)).total_seconds() * 1000


# -----------------------------
# Write serialization
# -----------------------------
class SerialQueue:
    """FIFO gate for state mutations.

    Each caller takes a ticket and waits until it is served, so mutations
    run one at a time and in arrival order. Not re-entrant.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._next_ticket = 0
        self._serving = 0

    @contextmanager
    def turn(self) -> Iterator[None]:
        with self._cond:
            ticket = self._next_ticket
            self._next_ticket += 1
            while ticket != self._serving:
                self._cond.wait()
        try:
            yield
        finally:
            with self._cond:
                self._serving += 1
                self._cond.notify_all()

    def run(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        with self.turn():
            return fn(*args, **kwargs)


# -----------------------------
# Persistence helpers
# -----------------------------
def _atomic_write_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile("w", encoding="utf-8", delete=False, dir=str(path.parent)) as tmp:
        tmp.write(text)
        tmp.flush()
        os.fsync(tmp.fileno())
        tmp_name = tmp.name
    os.replace(tmp_name, path)


def _message_fields(message: Union[Message, Mapping[str, Any]]) -> Dict[str, Any]:
    if isinstance(message, Message):
        return message.to_dict()
    if isinstance(message, Mapping):
        fields = dict(message)
        msg_type = fields.get("type")
        fields["type"] = getattr(msg_type, "value", msg_type)
        depth = fields.get("depth")
        if depth is not None and not isinstance(depth, Mapping):
            fields["depth"] = depth.to_dict()
        return fields
    raise TypeError("message must be a Message or a mapping")


# -----------------------------
# StateStore
# -----------------------------
class StateStore:
    """Conversation tracker backed by a single JSON file.

    Public API:
        track(message) -> record
        get(request_id) -> record | None
        list(status=None, sender=None, to=None) -> [record]
        timeout(request_id, reason) -> record | None
        cleanup(older_than_ms) -> int
        check_timeouts() -> [request_id]

    Records handed back are deep copies; mutating them does not touch the store.
    """

    def __init__(
        self,
        state_file: Union[str, Path, None] = None,
        *,
        timeouts: Optional[Mapping[str, int]] = None,
        clock: Optional[Callable[[], datetime]] = None,
        queue: Optional[SerialQueue] = None,
    ) -> None:
        self.path = Path(state_file) if state_file else default_state_file()
        self.timeouts: Dict[str, int] = {**DEFAULT_TIMEOUTS, **(timeouts or {})}
        self._clock = clock or _utc_now
        self._queue = queue or SerialQueue()

    @classmethod
    def from_config(cls, cfg: Mapping[str, Any], **kwargs: Any) -> "StateStore":
        """Build a store from the ``state`` and ``timeouts`` sections of a config."""
        state_cfg = cfg.get("state") or {}
        timeouts = {
            str(kind).upper(): int(float(minutes) * _MINUTE_MS)
            for kind, minutes in (cfg.get("timeouts") or {}).items()
        }
        return cls(state_cfg.get("file"), timeouts=timeouts, **kwargs)

    # --------- persistence ----------
    def _load(self) -> State:
        try:
            with self.path.open("r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return {}
        if not isinstance(data, dict):
            raise ValueError(f"Invalid state file {self.path}: expected a JSON object")
        return data

    def _save(self, state: State) -> None:
        _atomic_write_text(self.path, json.dumps(state, ensure_ascii=False, indent=2))

    def _mutate(self, fn: Callable[[State], T]) -> T:
        def step() -> T:
            state = self._load()
            return fn(state)
        return self._queue.run(step)

    # --------- core API ----------
    def track(self, message: Union[Message, Mapping[str, Any]]) -> ConversationRecord:
        """Record ``message`` against its conversation, creating it if needed."""
        fields = _message_fields(message)
        request_id = fields.get("requestId")
        if not request_id:
            raise ValueError("track requires a message with requestId")

        def apply(state: State) -> ConversationRecord:
            now = _to_iso(self._clock())
            msg_type = fields.get("type")
            status = fields.get("status")
            conv = state.get(request_id)

            if conv is None:
                depth = fields.get("depth") or {}
                conv = state[request_id] = {
                    "type": msg_type,
                    "to": fields.get("to"),
                    "from": fields.get("from"),
                    "task": fields.get("task") or fields.get("question") or fields.get("message"),
                    "status": (status or STATUS_DONE) if msg_type == MessageType.RESPONSE.value else STATUS_OPEN,
                    "depth": depth.get("current", 1),
                    "createdAt": now,
                    "updatedAt": now,
                    "lastType": msg_type,
                    "history": [],
                }
                logger.info("Tracking new conversation %s (%s %s -> %s)",
                            request_id, msg_type, fields.get("from"), fields.get("to"))
            else:
                if msg_type == MessageType.RESPONSE.value:
                    conv["status"] = status or STATUS_DONE
                elif msg_type == MessageType.CLARIFY.value:
                    conv["status"] = STATUS_CLARIFYING
                conv["updatedAt"] = now
                conv["lastType"] = msg_type
                logger.debug("Conversation %s updated by %s, status=%s", request_id, msg_type, conv["status"])

            entry: HistoryEntry = {"type": msg_type, "from": fields.get("from"), "to": fields.get("to")}
            if status:
                entry["status"] = status
            entry["at"] = now
            entry["content"] = (
                fields.get("task") or fields.get("result") or fields.get("question") or fields.get("message")
            )
            conv["history"].append(entry)

            self._save(state)
            return copy.deepcopy(conv)

        return self._mutate(apply)

    def get(self, request_id: str) -> Optional[ConversationRecord]:
        return self._load().get(request_id)

    def list(
        self,
        status: Optional[str] = None,
        sender: Optional[str] = None,
        to: Optional[str] = None,
    ) -> List[ConversationRecord]:
        """All records matching the given equality filters, tagged with ``requestId``."""
        out: List[ConversationRecord] = []
        for request_id, conv in self._load().items():
            if status and conv.get("status") != status:
                continue
            if sender and conv.get("from") != sender:
                continue
            if to and conv.get("to") != to:
                continue
            out.append({"requestId": request_id, **conv})
        return out

    def timeout(self, request_id: str, reason: str = "timeout") -> Optional[ConversationRecord]:
        """Mark a conversation as timed out. Unknown ids return None."""
        def apply(state: State) -> Optional[ConversationRecord]:
            if request_id not in state:
                return None
            self._mark_timeout(state[request_id], request_id, reason)
            self._save(state)
            return copy.deepcopy(state[request_id])

        return self._mutate(apply)

    def cleanup(self, older_than_ms: float = DEFAULT_CLEANUP_MS) -> int:
        """Delete finished conversations idle for longer than ``older_than_ms``."""
        def apply(state: State) -> int:
            now = self._clock()
            stale = [
                request_id
                for request_id, conv in state.items()
                if conv.get("status") in CLEANABLE_STATUSES and _age_ms(now, conv["updatedAt"]) > older_than_ms
            ]
            for request_id in stale:
                del state[request_id]
            if stale:
                self._save(state)
                logger.info("Cleaned up %d conversation(s)", len(stale))
            return len(stale)

        return self._mutate(apply)

    def check_timeouts(self) -> List[str]:
        """Time out open/clarifying conversations idle past their type's window."""
        def apply(state: State) -> List[str]:
            now = self._clock()
            timed_out: List[str] = []
            for request_id, conv in state.items():
                if conv.get("status") not in ACTIVE_STATUSES:
                    continue
                window = self.window_for(conv.get("lastType") or conv.get("type"))
                age = _age_ms(now, conv["updatedAt"])
                if age > window:
                    minutes = math.floor(age / _MINUTE_MS)
                    self._mark_timeout(conv, request_id, f"No response after {minutes} minutes")
                    timed_out.append(request_id)
            if timed_out:
                self._save(state)
            return timed_out

        return self._mutate(apply)

    # --------- internals ----------
    def window_for(self, message_type: Optional[str]) -> int:
        """Timeout window in ms; unknown types fall back to the REQUEST window."""
        return self.timeouts.get(message_type or "", self.timeouts[MessageType.REQUEST.value])

    def _mark_timeout(self, conv: ConversationRecord, request_id: str, reason: str) -> None:
        now = _to_iso(self._clock())
        conv["status"] = STATUS_TIMEOUT
        conv["updatedAt"] = now
        conv["history"].append({"type": "TIMEOUT", "reason": reason, "at": now})
        logger.info("Conversation %s timed out: %s", request_id, reason)
