from __future__ import annotations

import pytest

from mirror_chat.replies import (
    DEPARTURE_REPLY,
    ECHO_TEMPLATE,
    NEGATIVE_REPLY,
    PLACEHOLDER,
    POSITIVE_REPLY,
    ReplySelector,
    select_reply,
)


@pytest.mark.parametrize("text", [None, "", " ", "\t\n  "])
def test_blank_input_gets_placeholder(text):
    assert select_reply(text) == PLACEHOLDER == "..."


@pytest.mark.parametrize(
    "text, expected",
    [
        ("I want to LEAVE", DEPARTURE_REPLY),
        ("should I quit my job", DEPARTURE_REPLY),
        ("please stop", DEPARTURE_REPLY),
        ("I will resign tomorrow", DEPARTURE_REPLY),
        ("I am so happy", POSITIVE_REPLY),
        ("Love it", POSITIVE_REPLY),
        ("that was great", POSITIVE_REPLY),
        ("GOOD morning", POSITIVE_REPLY),
        ("a wonderful day", POSITIVE_REPLY),
        ("feeling sad", NEGATIVE_REPLY),
        ("I feel so lonely today", NEGATIVE_REPLY),
        ("tired of this", NEGATIVE_REPLY),
        ("I am depressed", NEGATIVE_REPLY),
    ],
)
def test_lexical_classes(text, expected):
    assert select_reply(text) == expected


def test_departure_beats_positive_and_negative():
    assert select_reply("I am happy but want to quit") == DEPARTURE_REPLY
    assert select_reply("so tired, I should stop") == DEPARTURE_REPLY


def test_positive_beats_negative():
    assert select_reply("sad movie, good ending") == POSITIVE_REPLY


def test_matching_is_substring_based():
    # "unstoppable" contains "stop"
    assert select_reply("unstoppable") == DEPARTURE_REPLY


def test_generic_echo_embeds_input_verbatim():
    text = "  What is the weather like?  "
    reply = select_reply(text)
    assert text in reply
    assert reply == ECHO_TEMPLATE.replace("{text}", text)


def test_echo_keeps_braces_in_input():
    text = "format {0} and {text}"
    assert text in select_reply(text)


def test_pure_and_repeatable():
    for text in ["", "hello", "I love it", "quit"]:
        assert select_reply(text) == select_reply(text)


def test_rule_for_names_matching_rule():
    selector = ReplySelector()
    assert selector.rule_for("I am happy but want to quit") == "departure"
    assert selector.rule_for("lonely") == "negative"
    assert selector.rule_for("hello") is None
    assert selector.rule_for("   ") is None


def test_persona_overrides_texts_but_not_order():
    selector = ReplySelector.from_persona(
        {
            "departure": "Mirror: are you sure?",
            "positive": "Mirror: lovely.",
            "echo": 'Mirror: you said "{text}"',
            "placeholder": "…",
        }
    )
    assert selector("happy, but I quit") == "Mirror: are you sure?"
    assert selector("happy") == "Mirror: lovely."
    assert selector("lonely") == NEGATIVE_REPLY
    assert selector("hi there") == 'Mirror: you said "hi there"'
    assert selector("") == "…"


def test_persona_rejects_unknown_keys():
    with pytest.raises(ValueError, match="unknown persona keys"):
        ReplySelector.from_persona({"angry": "x"})


def test_echo_template_requires_marker():
    with pytest.raises(ValueError):
        ReplySelector.from_persona({"echo": "no marker here"})
