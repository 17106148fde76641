from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import AsyncIterator, Awaitable, Callable

from .config import EngineConfig
from .errors import NarrativeStreamError, SessionEndedError, TurnBusyError
from .normalize import new_id
from .ports import NarrativeConversation
from .reducer import apply_ending, apply_turn_result, begin_turn, patch_message
from .tools import ToolDispatcher, TurnDraft
from .types import (
    SENDER_PERSONA,
    SENDER_USER,
    ChatMessage,
    SessionState,
    StreamChunk,
    ToolCall,
    TurnOutcome,
    TurnResult,
)

PatchCallback = Callable[[str, str], Awaitable[None] | None]
StateCallback = Callable[[SessionState], Awaitable[None] | None]


async def _maybe_await(value) -> None:
    if asyncio.iscoroutine(value):
        await value


class TurnEngine:
    """Runs one user message through the bounded stream/act/resubmit loop.

    A round is one streamed exchange. Tool calls collected in a round are
    dispatched in order, their results go back to the model as one message,
    and the next round starts. The loop ends when a round produces no tool
    calls, an ending fires, the stream fails, or ``max_rounds`` is reached.
    """

    def __init__(
        self,
        dispatcher: ToolDispatcher,
        *,
        config: EngineConfig | None = None,
        clock: Callable[[], datetime] | None = None,
        logger: logging.Logger | None = None,
    ):
        self._dispatcher = dispatcher
        self._config = config or EngineConfig()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._logger = logger or logging.getLogger(__name__)
        self._locks: dict[str, asyncio.Lock] = {}

    def is_busy(self, session_id: str) -> bool:
        lock = self._locks.get(session_id)
        return lock is not None and lock.locked()

    async def resolve_turn(
        self,
        state: SessionState,
        conversation: NarrativeConversation,
        text: str,
        *,
        on_begin: StateCallback | None = None,
        on_patch: PatchCallback | None = None,
    ) -> TurnOutcome:
        try:
            self._check_ready(state)
        except TurnBusyError:
            return TurnOutcome(status="busy", state=state, reason="turn_inflight")
        except SessionEndedError:
            return TurnOutcome(status="ended", state=state, reason="session_ended")

        lock = self._get_lock(state.session_id)
        async with lock:
            return await self._run_turn(state, conversation, text, on_begin, on_patch)

    def _check_ready(self, state: SessionState) -> None:
        if state.is_ended:
            raise SessionEndedError(state.session_id)
        if self.is_busy(state.session_id):
            raise TurnBusyError(state.session_id)

    def _get_lock(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        return lock

    async def _run_turn(
        self,
        state: SessionState,
        conversation: NarrativeConversation,
        text: str,
        on_begin: StateCallback | None,
        on_patch: PatchCallback | None,
    ) -> TurnOutcome:
        cfg = self._config
        now = self._clock()
        user_message = ChatMessage(id=new_id("msg-user"), sender=SENDER_USER, text=text, timestamp=now)
        placeholder = ChatMessage(
            id=new_id("msg-persona"),
            sender=SENDER_PERSONA,
            text=cfg.placeholder_text,
            timestamp=now,
        )
        working = begin_turn(state, user_message, placeholder)
        await self._notify(on_begin, working)

        draft = TurnDraft.from_state(state)
        fragments: list[str] = []
        rounds = 0
        hit_ceiling = False
        failed = False

        try:
            stream = self._open(lambda: conversation.stream_message(text))
            while True:
                rounds += 1
                calls: list[ToolCall] = []
                async for chunk in self._consume(stream):
                    if chunk.text:
                        fragments.append(chunk.text)
                        reply = "".join(fragments)
                        working = patch_message(working, placeholder.id, reply)
                        await self._notify(on_patch, placeholder.id, reply)
                    # Only the dedicated tool-call field counts.
                    if chunk.tool_calls:
                        calls.extend(chunk.tool_calls)

                if not calls:
                    break

                self._logger.debug(
                    "Round %s tool calls: %s",
                    rounds,
                    ", ".join(str(c.name) for c in calls),
                )
                results = await self._dispatcher.dispatch_round(calls, draft, working)
                if draft.ending is not None:
                    break
                if rounds >= cfg.max_rounds:
                    hit_ceiling = True
                    self._logger.warning(
                        "Turn for session %s hit the round ceiling (%s); committing",
                        state.session_id,
                        cfg.max_rounds,
                    )
                    break
                stream = self._open(lambda: conversation.stream_tool_results(results))
        except NarrativeStreamError as exc:
            failed = True
            self._logger.warning("Narrative stream failed for session %s: %s", state.session_id, exc)

        for name, description in draft.events:
            self._logger.info("Story event %r: %s", name, description)

        result = TurnResult(
            user_message_id=user_message.id,
            assistant_message_id=placeholder.id,
            assistant_text=cfg.error_marker if failed else "".join(fragments),
            assistant_image=draft.turn_image,
            affection=draft.affection,
            visual_state=draft.visual_state,
            new_items=list(draft.new_items),
            new_memories=list(draft.new_memories),
            injected_messages=list(draft.injected_messages),
            unlocked_secrets=list(draft.unlocked_secrets),
            separation=draft.separation,
            separation_summary=draft.separation_summary,
            contact_granted=draft.contact_granted,
            scene_change=draft.scene_change,
            events=list(draft.events),
            ending=draft.ending,
            context_reset=draft.context_reset and draft.ending is None,
            rounds=rounds,
            hit_ceiling=hit_ceiling,
            failed=failed,
        )
        commit_time = self._clock()

        if result.ending is not None:
            self._logger.info(
                "Session %s reached ending %r (%s)",
                state.session_id,
                result.ending.title,
                result.ending.kind.value,
            )
            return TurnOutcome(
                status="ending",
                state=apply_ending(working, result, now=commit_time),
                rounds=rounds,
                result=result,
            )

        if failed:
            await self._notify(on_patch, placeholder.id, cfg.error_marker)
            return TurnOutcome(
                status="error",
                state=apply_turn_result(working, result, now=commit_time),
                rounds=rounds,
                context_reset=result.context_reset,
                reason="narrative_stream_failed",
                result=result,
            )

        return TurnOutcome(
            status="ok",
            state=apply_turn_result(working, result, now=commit_time),
            rounds=rounds,
            hit_ceiling=hit_ceiling,
            context_reset=result.context_reset,
            result=result,
        )

    async def _notify(self, callback, *args) -> None:
        # Presentation callbacks must not abort the turn.
        if callback is None:
            return
        try:
            await _maybe_await(callback(*args))
        except Exception:
            self._logger.warning("Turn callback %r failed", callback, exc_info=True)

    def _open(self, factory: Callable[[], AsyncIterator[StreamChunk]]) -> AsyncIterator[StreamChunk]:
        try:
            return factory()
        except Exception as exc:
            raise NarrativeStreamError(str(exc)) from exc

    async def _consume(self, stream: AsyncIterator[StreamChunk]) -> AsyncIterator[StreamChunk]:
        try:
            async for chunk in stream:
                yield chunk
        except Exception as exc:
            raise NarrativeStreamError(str(exc)) from exc
