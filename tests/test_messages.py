from __future__ import annotations

import random

import pytest

from mirror_chat.messages import (
    PUSH_CHARS,
    InvalidMessage,
    Message,
    PushIdGenerator,
    Role,
    messages_from_entries,
    recent_keys,
    sort_snapshot,
    validate_conversation_id,
    validate_message,
)


def test_entry_shape_excludes_id():
    msg = Message(role=Role.USER, content="hi", timestamp=5, id="abc")
    assert msg.to_entry() == {"role": "user", "content": "hi", "timestamp": 5}
    assert Message.from_entry("abc", msg.to_entry()) == msg


@pytest.mark.parametrize(
    "msg",
    [
        Message(role=Role.USER, content="", timestamp=1),
        Message(role=Role.USER, content="   ", timestamp=1),
        Message(role=Role.MIRROR, content="x", timestamp="1"),  # type: ignore[arg-type]
        Message(role=Role.MIRROR, content="x", timestamp=True),  # type: ignore[arg-type]
        Message(role="bot", content="x", timestamp=1),  # type: ignore[arg-type]
    ],
)
def test_validate_rejects_missing_fields(msg):
    with pytest.raises(InvalidMessage):
        validate_message(msg)


@pytest.mark.parametrize(
    "cid", ["", "a/b", "a.b", "x$", "#", "[x]", "x" * 129, "a b", " u1", "User_1", "u1\n", "caf\u00e9", None]
)
def test_conversation_id_rules(cid):
    with pytest.raises(InvalidMessage):
        validate_conversation_id(cid)


def test_conversation_id_accepts_session_ids():
    assert validate_conversation_id("user_123456") == "user_123456"
    assert validate_conversation_id("me@home-2") == "me@home-2"
    assert validate_conversation_id("x" * 128) == "x" * 128


def test_malformed_entries_are_skipped():
    entries = {
        "a": {"role": "user", "content": "hi", "timestamp": 1},
        "b": {"role": "user", "content": "", "timestamp": 2},
        "c": "not a dict",
        "d": {"role": "ghost", "content": "boo", "timestamp": 3},
    }
    msgs = messages_from_entries(entries)
    assert [m.id for m in msgs] == ["a"]
    assert messages_from_entries(None) == []


def test_sort_snapshot_is_stable_by_timestamp():
    a = Message(Role.USER, "a", 10, id="k3")
    b = Message(Role.MIRROR, "b", 5, id="k1")
    c = Message(Role.USER, "c", 10, id="k2")
    assert sort_snapshot([a, b, c]) == [b, a, c]


def test_recent_keys_takes_greatest():
    assert recent_keys(["c", "a", "b", "d"], 2) == ["c", "d"]
    assert recent_keys(["a"], 5) == ["a"]
    assert recent_keys(["a"], 0) == []


def test_push_ids_increase_within_same_millisecond():
    gen = PushIdGenerator(clock=lambda: 1_700_000_000_000, rng=random.Random(7))
    ids = [gen() for _ in range(50)]
    assert ids == sorted(ids)
    assert len(set(ids)) == 50
    assert all(len(i) == 20 and set(i) <= set(PUSH_CHARS) for i in ids)


def test_push_ids_survive_clock_going_backwards():
    times = iter([2000, 1000, 3000])
    gen = PushIdGenerator(clock=lambda: next(times), rng=random.Random(1))
    first, second, third = gen(), gen(), gen()
    assert first < second < third


def test_push_ids_sort_by_time():
    times = iter([1, 64, 64 ** 3])
    gen = PushIdGenerator(clock=lambda: next(times), rng=random.Random(3))
    ids = [gen() for _ in range(3)]
    assert ids == sorted(ids)
