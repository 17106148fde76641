from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional, Sequence

from .config import EngineConfig
from .normalize import coerce_str, new_id
from .ports import NarrativePort
from .tokens import count_tokens
from .types import SENDER_PERSONA, SENDER_USER, ChatMessage, SessionState, StoryMemory

SummaryCallback = Callable[[StoryMemory, int], Awaitable[None] | None]


class ContextResetScheduler:
    """Compacts the model context after a scene change.

    The span since the last reset is summarized into a story memory in a
    detached task; ``on_complete`` receives the memory and the history index
    the next span starts at, and is responsible for rebuilding the
    conversation. The user-visible chat log is never trimmed.
    """

    def __init__(
        self,
        narrative: NarrativePort,
        *,
        config: EngineConfig | None = None,
        token_count: Callable[[str], int] | None = None,
        clock: Callable[[], datetime] | None = None,
        logger: logging.Logger | None = None,
    ):
        self._narrative = narrative
        self._config = config or EngineConfig()
        self._token_count = token_count or (
            lambda text: count_tokens(text, self._config.tokenizer_model_id)
        )
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._logger = logger or logging.getLogger(__name__)
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return sum(1 for task in self._tasks if not task.done())

    @staticmethod
    def span_since_reset(state: SessionState) -> list[ChatMessage]:
        return list(state.chat_history[state.context_reset_index:])

    @staticmethod
    def pick_memory_image(
        messages: Sequence[ChatMessage],
        fallback: Optional[str],
        skip_message_id: Optional[str] = None,
    ) -> Optional[str]:
        for message in reversed(messages):
            if message.image and message.id != skip_message_id:
                return message.image
        return fallback

    def build_transcript(self, messages: Sequence[ChatMessage], persona_name: str, user_name: str) -> str:
        lines: list[str] = []
        for message in messages:
            if message.sender == SENDER_USER:
                speaker = user_name
            elif message.sender == SENDER_PERSONA:
                speaker = persona_name
            else:
                speaker = "System"
            lines.append(f"{speaker}: {message.text}")

        # Oldest lines go first when the span exceeds the budget.
        budget = self._config.summary_max_transcript_tokens
        while len(lines) > 1 and self._token_count("\n".join(lines)) > budget:
            lines.pop(0)
        return "\n".join(lines)

    async def summarize(
        self,
        state: SessionState,
        *,
        fallback_image: Optional[str],
        skip_image_of: Optional[str] = None,
    ) -> StoryMemory:
        """Summarize the span since the last reset.

        ``skip_image_of`` names the reply that triggered the reset; its
        illustration belongs to the new scene, not the summarized one.
        """
        cfg = self._config
        span = self.span_since_reset(state)
        transcript = self.build_transcript(span, state.persona.name, state.user_name)
        title = cfg.default_summary_title
        content = cfg.default_summary_content
        try:
            data = await self._narrative.summarize(
                transcript,
                persona_name=state.persona.name,
                user_name=state.user_name,
            )
        except Exception as exc:
            self._logger.warning("Summarization failed for session %s: %s", state.session_id, exc)
            data = None
        if isinstance(data, dict):
            title = coerce_str(data.get("title")) or title
            content = coerce_str(data.get("content")) or content
        return StoryMemory(
            id=new_id("memory-summary"),
            title=title,
            description=content,
            image=self.pick_memory_image(span, fallback_image, skip_image_of),
            timestamp=self._clock(),
        )

    def schedule(
        self,
        state: SessionState,
        *,
        fallback_image: Optional[str],
        on_complete: SummaryCallback,
        skip_image_of: Optional[str] = None,
    ) -> asyncio.Task:
        reset_index = len(state.chat_history)
        task = asyncio.create_task(self._run(state, fallback_image, skip_image_of, reset_index, on_complete))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(
        self,
        state: SessionState,
        fallback_image: Optional[str],
        skip_image_of: Optional[str],
        reset_index: int,
        on_complete: SummaryCallback,
    ) -> None:
        try:
            memory = await self.summarize(state, fallback_image=fallback_image, skip_image_of=skip_image_of)
            maybe = on_complete(memory, reset_index)
            if asyncio.iscoroutine(maybe):
                await maybe
        except Exception:
            self._logger.exception("Context reset failed: session=%s", state.session_id)

    async def drain(self) -> None:
        while True:
            pending = [task for task in self._tasks if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)
