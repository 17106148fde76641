from __future__ import annotations

import asyncio

from companion_engine.core.actions import FAST_FORWARD_COMMAND, UIAction, encode_ui_action
from companion_engine.core.config import EngineConfig
from companion_engine.core.suggestions import SuggestionGenerator
from companion_engine.core.types import SENDER_PERSONA, SENDER_USER, ChatMessage
from conftest import BASE_TIME
from fakes import StubNarrative


def _history(count):
    return [
        ChatMessage(
            id=f"m{i}",
            sender=SENDER_USER if i % 2 == 0 else SENDER_PERSONA,
            text=f"line {i}",
            timestamp=BASE_TIME,
        )
        for i in range(count)
    ]


def test_request_uses_only_recent_lines(make_state):
    generator = SuggestionGenerator(StubNarrative(), config=EngineConfig(suggestion_history_lines=3))
    request = generator.build_request(make_state(chat_history=_history(6)), "custom plot")

    assert request.recent_lines == ["persona: line 3", "user: line 4", "persona: line 5"]
    assert request.context == "custom plot"
    assert request.user_name == "Alex"


def test_failure_falls_back_to_defaults(make_state):
    narrative = StubNarrative(suggestions=RuntimeError("timeout"))
    suggestions = asyncio.run(SuggestionGenerator(narrative).generate(make_state()))
    assert suggestions == list(EngineConfig().default_suggestions)


def test_results_are_trimmed_to_three(make_state):
    narrative = StubNarrative(suggestions=["a", "", "b", "c", "d"])
    suggestions = asyncio.run(SuggestionGenerator(narrative).generate(make_state()))
    assert suggestions == ["a", "b", "c"]


def test_separated_session_always_offers_fast_forward(make_state):
    full = StubNarrative(suggestions=["a", "b", "c"])
    short = StubNarrative(suggestions=["a"])

    replaced = asyncio.run(SuggestionGenerator(full).generate(make_state(is_separated=True)))
    appended = asyncio.run(SuggestionGenerator(short).generate(make_state(is_separated=True)))

    assert replaced == ["a", "b", FAST_FORWARD_COMMAND]
    assert appended == ["a", FAST_FORWARD_COMMAND]


def test_ui_actions_encode_to_user_messages():
    assert encode_ui_action(UIAction.FAST_FORWARD) == FAST_FORWARD_COMMAND
    assert encode_ui_action("move").endswith("(switch scene)")
    assert encode_ui_action(UIAction.LEAVE).endswith("(step away)")
