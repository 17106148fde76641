"""Pure state transitions for a roleplay session.

Every function takes a ``SessionState`` and returns a new one; the input is
never mutated. The turn engine produces one ``TurnResult`` per commit and the
runtime folds it in with ``apply_turn_result``.
"""
from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from typing import Optional, Sequence

from .normalize import clamp, new_id
from .types import (
    SENDER_SYSTEM,
    ChatMessage,
    SessionState,
    StoryMemory,
    TurnResult,
)
from .visual import merge_visual_state

AFFECTION_MIN = 0
AFFECTION_MAX = 1000


def begin_turn(
    state: SessionState,
    user_message: ChatMessage,
    placeholder: ChatMessage,
) -> SessionState:
    return replace(
        state,
        chat_history=[*state.chat_history, user_message, placeholder],
        suggested_replies=[],
    )


def patch_message(
    state: SessionState,
    message_id: str,
    text: str,
    image: Optional[str] = None,
) -> SessionState:
    history = []
    for message in state.chat_history:
        if message.id == message_id:
            message = replace(message, text=text, image=image if image is not None else message.image)
        history.append(message)
    return replace(state, chat_history=history)


def apply_turn_result(state: SessionState, result: TurnResult, *, now: datetime) -> SessionState:
    """Fold a finished (or failed) turn into the session.

    The placeholder message is replaced by the final assistant message, placed
    after any system messages injected by tools during the turn.
    """
    history = [m for m in state.chat_history if m.id != result.assistant_message_id]
    placeholder = next(
        (m for m in state.chat_history if m.id == result.assistant_message_id),
        None,
    )
    history.extend(result.injected_messages)
    if result.separation_summary:
        history.append(
            ChatMessage(
                id=new_id("msg-narration"),
                sender=SENDER_SYSTEM,
                text=result.separation_summary,
                timestamp=now,
            )
        )
    if placeholder is not None:
        history.append(
            replace(
                placeholder,
                text=result.assistant_text,
                image=result.assistant_image,
            )
        )

    persona = state.persona
    scene_image = state.scene_image
    scene_visual = state.current_scene_visual
    if result.scene_change is not None:
        persona = replace(persona, initial_scenario=result.scene_change.description)
        scene_visual = result.scene_change.visual_prompt
        if result.scene_change.image:
            scene_image = result.scene_change.image

    return replace(
        state,
        persona=persona,
        scene_image=scene_image,
        current_scene_visual=scene_visual,
        affection=clamp(int(result.affection), AFFECTION_MIN, AFFECTION_MAX),
        visual_state=merge_visual_state(state.visual_state, result.visual_state),
        chat_history=history,
        inventory=[*state.inventory, *result.new_items],
        memories=[*state.memories, *result.new_memories],
        unlocked_secrets=[*state.unlocked_secrets, *result.unlocked_secrets],
        is_separated=state.is_separated if result.separation is None else result.separation,
        has_contact_info=state.has_contact_info or result.contact_granted,
        suggested_replies=[],
        last_updated=now,
    )


def apply_ending(state: SessionState, result: TurnResult, *, now: datetime) -> SessionState:
    """Freeze the session on its ending; the in-progress reply is dropped."""
    history = [m for m in state.chat_history if m.id != result.assistant_message_id]
    return replace(
        state,
        chat_history=history,
        ending=result.ending,
        suggested_replies=[],
        last_updated=now,
    )


def apply_summary(
    state: SessionState,
    memory: StoryMemory,
    *,
    reset_index: int,
    now: datetime,
) -> SessionState:
    return replace(
        state,
        memories=[*state.memories, memory],
        context_reset_index=max(0, min(reset_index, len(state.chat_history))),
        last_updated=now,
    )


def set_suggestions(state: SessionState, suggestions: Sequence[str]) -> SessionState:
    return replace(state, suggested_replies=list(suggestions))


def memories_text(memories: Sequence[StoryMemory]) -> str:
    return "\n".join(f"[{m.title}]: {m.description}" for m in memories)
