from __future__ import annotations

import re

import pytest

from bot_protocol.builder import (
    build,
    build_broadcast,
    build_clarify,
    build_handoff,
    build_request,
    build_response,
    generate_request_id,
    increment_depth,
)
from bot_protocol.errors import DepthLimitError, MissingFieldError, ProtocolError
from bot_protocol.models import Depth, MessageType
from bot_protocol.parser import parse


def test_build_request_exact_wire_text():
    text = build_request({
        "to": "Mantis",
        "from": "Lotbot",
        "requestId": "lotbot-abc123",
        "task": "Check CLI version",
        "context": "Weekly audit",
        "depth": {"current": 1, "max": 5},
        "callback": "@Lotbot",
        "priority": "normal",
    })
    assert text == (
        "```\n"
        "[REQUEST → @Mantis]\n"
        "From: Lotbot\n"
        "RequestId: lotbot-abc123\n"
        "Task: Check CLI version\n"
        "Context: Weekly audit\n"
        "Depth: 1/5\n"
        "Callback: @Lotbot\n"
        "Priority: normal\n"
        "```"
    )


def test_build_request_generates_id_and_default_depth():
    text = build_request({"to": "Mantis", "from": "Lot-Bot!", "task": "T"})
    assert re.search(r"^RequestId: lotbot-[0-9a-z]{6}$", text, re.M)
    assert "Depth: 1/5" in text
    assert "Context" not in text and "Priority" not in text


def test_build_response_field_order():
    text = build_response({
        "to": "Lotbot",
        "from": "Mantis",
        "requestId": "lotbot-abc123",
        "status": "done",
        "result": "CLI is up to date",
        "depth": Depth(2, 5),
    })
    assert text == (
        "```\n[RESPONSE → @Lotbot]\nFrom: Mantis\nRequestId: lotbot-abc123\n"
        "Status: done\nResult: CLI is up to date\nDepth: 2/5\n```"
    )


def test_build_response_requires_status_or_result():
    with pytest.raises(ProtocolError, match="requires either status or result"):
        build_response({"to": "Lotbot", "from": "Mantis", "requestId": "r"})


def test_response_and_broadcast_ignore_depth_limit():
    at_limit = {"current": 5, "max": 5}
    assert "Depth: 5/5" in build_response(
        {"to": "L", "from": "M", "requestId": "r", "result": "ok", "depth": at_limit}
    )
    assert "Depth: 5/5" in build_broadcast({"from": "M", "message": "bye", "depth": at_limit})


def test_build_broadcast_targets_all():
    text = build_broadcast({"from": "Lotbot", "message": "Going offline", "context": "maintenance"})
    assert text.startswith("```\n[BROADCAST → @all]\nFrom: Lotbot\nRequestId: lotbot-")
    assert "Message: Going offline\nContext: maintenance\nDepth: 1/5\n```" in text


def test_build_handoff_and_clarify():
    handoff = build_handoff({
        "to": "Clawcos", "from": "Mantis", "requestId": "r-1",
        "task": "Check Mac Mini", "callback": "@Lotbot", "depth": {"current": 2, "max": 5},
    })
    assert "[HANDOFF → @Clawcos]" in handoff
    assert "Task: Check Mac Mini\nDepth: 2/5\nCallback: @Lotbot\n" in handoff

    clarify = build_clarify({"to": "Lotbot", "from": "Mantis", "requestId": "r-1", "question": "Which version?"})
    assert clarify == "```\n[CLARIFY → @Lotbot]\nFrom: Mantis\nRequestId: r-1\nQuestion: Which version?\nDepth: 1/5\n```"


def test_depth_limit_example():
    with pytest.raises(DepthLimitError) as exc:
        build_request({"to": "X", "from": "Y", "task": "T", "depth": {"current": 5, "max": 5}})
    assert "Depth limit reached (5/5)" in str(exc.value)
    assert "Cannot send REQUEST" in str(exc.value)
    assert "Must send RESPONSE instead" in str(exc.value)


@pytest.mark.parametrize(
    "builder,kind,fields",
    [
        (build_request, "REQUEST", {"to": "X", "from": "Y", "task": "T"}),
        (build_handoff, "HANDOFF", {"to": "X", "from": "Y", "requestId": "r", "task": "T"}),
        (build_clarify, "CLARIFY", {"to": "X", "from": "Y", "requestId": "r", "question": "Q"}),
    ],
)
def test_depth_chain_types_refuse_only_at_limit(builder, kind, fields):
    for current in range(0, 5):
        assert builder({**fields, "depth": {"current": current, "max": 5}})
    with pytest.raises(DepthLimitError, match=f"Cannot send {kind}"):
        builder({**fields, "depth": {"current": 5, "max": 5}})


def test_depth_past_max_is_not_the_limit():
    text = build_request({"to": "X", "from": "Y", "task": "T", "depth": {"current": 6, "max": 5}})
    assert "Depth: 6/5" in text


def test_increment_depth_accepts_float_current():
    assert increment_depth({"current": 2.0, "max": 5}) == Depth(3.0, 5)


@pytest.mark.parametrize(
    "builder,kind,fields",
    [
        (build_request, "REQUEST", {"to": "X", "from": "Y", "task": "T"}),
        (build_response, "RESPONSE", {"to": "X", "from": "Y", "requestId": "r", "result": "R"}),
        (build_clarify, "CLARIFY", {"to": "X", "from": "Y", "requestId": "r", "question": "Q"}),
        (build_handoff, "HANDOFF", {"to": "X", "from": "Y", "requestId": "r", "task": "T"}),
        (build_broadcast, "BROADCAST", {"from": "Y", "message": "M"}),
    ],
)
def test_every_required_field_is_enforced(builder, kind, fields):
    required = [k for k in fields if k not in ("result",)]
    for name in required:
        partial = {k: v for k, v in fields.items() if k != name}
        with pytest.raises(MissingFieldError) as exc:
            builder(partial)
        assert str(exc.value) == f"{kind} requires field: {name}"
        assert exc.value.field == name
        # empty strings count as missing too
        with pytest.raises(MissingFieldError):
            builder({**fields, name: ""})


def test_sender_and_request_id_aliases():
    text = build_clarify({"to": "L", "sender": "M", "request_id": "r-9", "question": "Q?"})
    assert "From: M\nRequestId: r-9\n" in text


def test_invalid_depth_values_raise_protocol_error():
    with pytest.raises(ProtocolError):
        build_request({"to": "X", "from": "Y", "task": "T", "depth": {"current": "1", "max": 5}})
    with pytest.raises(ProtocolError):
        build_request({"to": "X", "from": "Y", "task": "T", "depth": [1, 5]})


def test_generate_request_id():
    a = generate_request_id("Lotbot")
    b = generate_request_id("Lotbot")
    assert a.startswith("lotbot-")
    assert len(a) == len("lotbot-") + 6
    assert re.fullmatch(r"[0-9a-z]{6}", a.split("-", 1)[1])
    assert a != b


def test_increment_depth():
    assert increment_depth({"current": 1, "max": 5}) == Depth(2, 5)
    d = Depth(0, 3)
    for _ in range(4):
        d = increment_depth(d)
    assert d == Depth(4, 3)


@pytest.mark.parametrize("bad", [None, {}, {"current": "1", "max": 5}, {"max": 5}, {"current": True, "max": 5}, "1/5"])
def test_increment_depth_rejects_invalid(bad):
    with pytest.raises(ProtocolError, match="requires valid incoming depth"):
        increment_depth(bad)


def test_build_dispatch():
    text = build("response", {"to": "L", "from": "M", "requestId": "r", "status": "failed"})
    assert text.startswith("```\n[RESPONSE → @L]")
    assert build(MessageType.BROADCAST, {"from": "M", "message": "hi"}).startswith("```\n[BROADCAST")
    with pytest.raises(ProtocolError, match="Unknown message type"):
        build("PING", {})


@pytest.mark.parametrize(
    "builder,fields,payload",
    [
        (build_request, {"to": "Mantis", "from": "Lotbot", "requestId": "r-1", "task": "Check disk\nand memory"}, "task"),
        (build_handoff, {"to": "Clawcos", "from": "Mantis", "requestId": "r-1", "task": "Take over"}, "task"),
        (build_clarify, {"to": "Lotbot", "from": "Mantis", "requestId": "r-1", "question": "Which host?"}, "question"),
        (build_response, {"to": "Lotbot", "from": "Mantis", "requestId": "r-1", "result": "All good"}, "result"),
        (build_broadcast, {"from": "Lotbot", "requestId": "r-1", "message": "Going offline"}, "message"),
    ],
)
def test_parse_recovers_built_messages(builder, fields, payload):
    msg = parse(builder(fields))
    assert msg is not None
    assert msg.to == fields.get("to", "all")
    assert msg.sender == fields["from"]
    assert msg.request_id == fields["requestId"]
    assert getattr(msg, payload) == fields[payload]
    assert msg.depth == Depth(1, 5)


def test_parse_recovers_generated_request_id():
    msg = parse(build_request({"to": "Mantis", "from": "Lotbot", "task": "T", "priority": "high"}))
    assert msg is not None
    assert msg.request_id.startswith("lotbot-")
    assert msg.priority == "high"


@pytest.mark.parametrize("task", ["page one\x0cpage two", "line\u2028separator", "tab\x0bbed", "next\x85line"])
def test_parse_keeps_non_newline_line_breaks_in_values(task):
    msg = parse(build_request({"to": "Mantis", "from": "Lotbot", "requestId": "r-1", "task": task}))
    assert msg is not None
    assert msg.task == task
