"""Scripted "mirror" replies.

The mirror does not call a model: a reply is picked from an ordered table of
rules, first match wins, falling back to echoing the input back inside a
template. Everything here is pure so the chat works (and is testable) offline.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Sequence, Tuple

PLACEHOLDER = "..."
DEPARTURE_REPLY = "Mirror: هل أنت متأكد؟ ماذا لو غيرت فقط طريقة التجربة؟"
POSITIVE_REPLY = "Mirror: هذا جميل — استمتع بكل لحظة من نجاحك."
NEGATIVE_REPLY = "Mirror: أحزنني هذا. تذكر أن الألم مؤقت وربما تجربة جديدة قادمة."
ECHO_TEMPLATE = 'Mirror: سمعتك تقول "{text}" — لكن ما الذي كنت تقصده بقلبك؟'

TEXT_MARKER = "{text}"

PERSONA_KEYS = ("placeholder", "departure", "positive", "negative", "echo")


@dataclass(frozen=True)
class ReplyRule:
    name: str
    pattern: re.Pattern[str]
    response: str

    def matches(self, text: str) -> bool:
        return self.pattern.search(text) is not None


def _rule(name: str, words: str, response: str) -> ReplyRule:
    return ReplyRule(name, re.compile(words, re.IGNORECASE), response)


# Order is precedence: departure > positive > negative.
DEFAULT_RULES: Tuple[ReplyRule, ...] = (
    _rule("departure", r"leave|quit|stop|resign", DEPARTURE_REPLY),
    _rule("positive", r"happy|love|great|good|wonderful", POSITIVE_REPLY),
    _rule("negative", r"sad|lonely|tired|depress", NEGATIVE_REPLY),
)


class ReplySelector:
    """Callable mapping an utterance to a reply string. Never raises."""

    def __init__(
        self,
        rules: Sequence[ReplyRule] = DEFAULT_RULES,
        *,
        placeholder: str = PLACEHOLDER,
        echo_template: str = ECHO_TEMPLATE,
    ) -> None:
        if TEXT_MARKER not in echo_template:
            raise ValueError(f"echo template must contain {TEXT_MARKER!r}")
        self.rules = tuple(rules)
        self.placeholder = placeholder
        self.echo_template = echo_template

    def __call__(self, text: Optional[str]) -> str:
        if text is None or not text.strip():
            return self.placeholder
        for rule in self.rules:
            if rule.matches(text):
                return rule.response
        # str.replace, not format(): the input may itself contain braces
        return self.echo_template.replace(TEXT_MARKER, text)

    def rule_for(self, text: Optional[str]) -> Optional[str]:
        """Name of the rule that would answer ``text`` (``None`` for placeholder/echo)."""
        if text is None or not text.strip():
            return None
        for rule in self.rules:
            if rule.matches(text):
                return rule.name
        return None

    @classmethod
    def from_persona(cls, persona: Optional[Mapping[str, Any]]) -> "ReplySelector":
        """Build a selector whose response texts come from a ``persona`` mapping.

        Only the texts change; the lexical classes and their order are fixed.
        """
        persona = dict(persona or {})
        unknown = sorted(set(persona) - set(PERSONA_KEYS))
        if unknown:
            raise ValueError(f"unknown persona keys: {', '.join(unknown)}")

        rules = tuple(
            ReplyRule(r.name, r.pattern, str(persona.get(r.name, r.response)))
            for r in DEFAULT_RULES
        )
        return cls(
            rules,
            placeholder=str(persona.get("placeholder", PLACEHOLDER)),
            echo_template=str(persona.get("echo", ECHO_TEMPLATE)),
        )


_DEFAULT_SELECTOR = ReplySelector()


def select_reply(text: Optional[str]) -> str:
    """Reply of the default mirror persona."""
    return _DEFAULT_SELECTOR(text)
