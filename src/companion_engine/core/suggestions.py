from __future__ import annotations

import logging
from typing import Optional, Sequence

from .actions import FAST_FORWARD_COMMAND
from .config import EngineConfig
from .normalize import coerce_str_list
from .ports import NarrativePort
from .types import ChatMessage, SessionState, SuggestionRequest

MAX_SUGGESTIONS = 3


def recent_lines(messages: Sequence[ChatMessage], limit: int) -> list[str]:
    return [f"{m.sender}: {m.text}" for m in messages[-limit:]] if limit > 0 else []


class SuggestionGenerator:
    """Asks the narrative service for the user's next reply options.

    Purely additive: failures fall back to a fixed set and never touch
    anything but ``suggested_replies``.
    """

    def __init__(
        self,
        narrative: NarrativePort,
        *,
        config: EngineConfig | None = None,
        logger: logging.Logger | None = None,
    ):
        self._narrative = narrative
        self._config = config or EngineConfig()
        self._logger = logger or logging.getLogger(__name__)

    def build_request(self, state: SessionState, context: Optional[str] = None) -> SuggestionRequest:
        return SuggestionRequest(
            recent_lines=recent_lines(state.chat_history, self._config.suggestion_history_lines),
            persona=state.persona,
            affection=state.affection,
            is_separated=state.is_separated,
            user_name=state.user_name,
            context=context,
        )

    async def generate(self, state: SessionState, context: Optional[str] = None) -> list[str]:
        request = self.build_request(state, context)
        try:
            raw = await self._narrative.suggest_replies(request)
        except Exception as exc:
            self._logger.warning("Suggestion generation failed: %s", exc)
            raw = None
        suggestions = coerce_str_list(raw)[:MAX_SUGGESTIONS]
        if not suggestions:
            suggestions = list(self._config.default_suggestions)
        if state.is_separated and FAST_FORWARD_COMMAND not in suggestions:
            if len(suggestions) >= MAX_SUGGESTIONS:
                suggestions[MAX_SUGGESTIONS - 1] = FAST_FORWARD_COMMAND
            else:
                suggestions.append(FAST_FORWARD_COMMAND)
        return suggestions
