from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from .core.actions import UIAction, encode_ui_action
from .core.config import EngineConfig, SaveConfig
from .core.engine import PatchCallback, StateCallback, TurnEngine
from .core.errors import CompanionEngineError, SessionNotFoundError
from .core.normalize import new_id
from .core.ports import ImageSynthesisPort, NarrativeConversation, NarrativePort
from .core.prompts import history_turns
from .core.reducer import apply_summary, memories_text, set_suggestions
from .core.suggestions import SuggestionGenerator
from .core.summarizer import ContextResetScheduler
from .core.tools import ToolDispatcher
from .core.types import (
    SENDER_PERSONA,
    SENDER_SYSTEM,
    ChatMessage,
    ImageKind,
    ImageRequest,
    PersonaContext,
    PersonaProfile,
    SessionState,
    StoryMemory,
    TurnOutcome,
    VisualState,
)
from .persistence.codec import persona_from_dict
from .persistence.store import DebouncedSaver, SessionStore

INITIAL_VISUAL_STATE = VisualState(
    pose="Standing",
    clothing="Default outfit",
    user_action="Standing nearby",
    atmosphere="Initial meeting",
)
DEFAULT_PROLOGUE_TITLE = "First meeting"


class CompanionRuntime:
    """Drives one active companion session at a time.

    Wires the turn engine to the rest of the system: summaries after scene
    changes, reply suggestions, and debounced saves all run as detached tasks
    and never block the next turn. Work that finishes after the active
    session changed is dropped.
    """

    def __init__(
        self,
        narrative: NarrativePort,
        images: ImageSynthesisPort,
        store: SessionStore,
        *,
        config: EngineConfig | None = None,
        save_config: SaveConfig | None = None,
        token_count: Callable[[str], int] | None = None,
        clock: Callable[[], datetime] | None = None,
        logger: logging.Logger | None = None,
    ):
        self._narrative = narrative
        self._images = images
        self._store = store
        self._config = config or EngineConfig()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._logger = logger or logging.getLogger(__name__)

        self.dispatcher = ToolDispatcher(images, config=self._config, clock=self._clock, logger=self._logger)
        self.engine = TurnEngine(self.dispatcher, config=self._config, clock=self._clock, logger=self._logger)
        self.scheduler = ContextResetScheduler(
            narrative,
            config=self._config,
            token_count=token_count,
            clock=self._clock,
            logger=self._logger,
        )
        self.suggestions = SuggestionGenerator(narrative, config=self._config, logger=self._logger)
        self._save_config = save_config or SaveConfig()
        self.saver = DebouncedSaver(store, config=self._save_config, logger=self._logger)

        self._state: Optional[SessionState] = None
        self._conversation: Optional[NarrativeConversation] = None
        self._story_context: Optional[str] = None
        # Bumped whenever the active session changes; detached work compares it.
        self._generation = 0
        self._turn_serial = 0
        self._pending_summaries: list[tuple[StoryMemory, int]] = []
        self._tasks: set[asyncio.Task] = set()

    @property
    def state(self) -> Optional[SessionState]:
        return self._state

    @property
    def conversation(self) -> Optional[NarrativeConversation]:
        return self._conversation

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    async def generate_persona(self, preferences: dict[str, Any]) -> PersonaProfile:
        attempts = max(1, self._config.max_profile_attempts)
        for attempt in range(1, attempts + 1):
            try:
                data = await self._narrative.generate_profile(preferences)
            except Exception as exc:
                self._logger.warning("Persona generation attempt %s/%s failed: %s", attempt, attempts, exc)
                continue
            if isinstance(data, dict):
                profile = persona_from_dict(data, default_affection=self._config.default_affection)
                if profile.name:
                    return profile
            self._logger.warning("Persona generation attempt %s/%s returned no profile", attempt, attempts)
        raise CompanionEngineError("persona generation failed")

    async def start_session(
        self,
        profile: PersonaProfile,
        user_name: str,
        *,
        art_style: str = "Anime",
        player_persona: str = "",
        is_custom_character: bool = False,
        story_context: Optional[str] = None,
    ) -> SessionState:
        """Render the opening images and begin a new session.

        Image failures propagate as ``ImageSynthesisError``; nothing is saved
        in that case.
        """
        await self._leave_current()

        portrait = await self._images.synthesize(
            ImageRequest(
                kind=ImageKind.PORTRAIT,
                subject=", ".join(p for p in (profile.appearance, profile.race, profile.job) if p),
                style=art_style,
            )
        )
        scene_visual = f"{profile.initial_scenario}, high quality detailed background art"
        scene = await self._images.synthesize(
            ImageRequest(
                kind=ImageKind.SCENE,
                subject=profile.appearance,
                event=scene_visual,
                visual_state=replace(INITIAL_VISUAL_STATE, pose="Standing naturally", user_action="Approaching"),
                style=art_style,
                reference_image=portrait,
            )
        )

        now = self._clock()
        title = profile.initial_memory_title or DEFAULT_PROLOGUE_TITLE
        prologue = ChatMessage(
            id=new_id("msg-prologue"),
            sender=SENDER_SYSTEM,
            text=f"[Prologue: {title}]\n{profile.initial_scenario}",
            timestamp=now,
            image=scene,
        )
        opening = ChatMessage(
            id=new_id("msg-persona"),
            sender=SENDER_PERSONA,
            text=profile.opening_message,
            timestamp=now,
        )
        state = SessionState(
            session_id=new_id("session"),
            persona=profile,
            user_name=user_name,
            created_at=now,
            last_updated=now,
            affection=profile.initial_affection,
            persona_image=portrait,
            scene_image=scene,
            current_scene_visual=scene_visual,
            visual_state=replace(INITIAL_VISUAL_STATE),
            chat_history=[prologue, opening],
            memories=[
                StoryMemory(
                    id=new_id("memory-init"),
                    title=title,
                    description=profile.initial_scenario,
                    image=scene,
                    timestamp=now,
                )
            ],
            art_style=art_style,
            player_persona=player_persona,
            is_custom_character=is_custom_character,
            # The opening exchange is already covered by the first memory.
            context_reset_index=2,
        )
        self._story_context = story_context
        self._conversation = self._narrative.open_conversation(self._persona_context(state, with_memories=False))
        state = set_suggestions(state, await self.suggestions.generate(state, story_context))
        self._state = state
        self.saver.save_now(state)
        self._logger.info("Started session %s with %s", state.session_id, profile.name)
        return state

    async def load_session(self, session_id: str) -> SessionState:
        state = self._store.get(session_id)
        if state is None:
            raise SessionNotFoundError(session_id)
        await self._leave_current()
        self._state = state
        self._story_context = None
        history = history_turns(state.chat_history[state.context_reset_index:])
        self._conversation = self._narrative.open_conversation(
            self._persona_context(state, with_memories=True),
            history=history,
        )
        self._logger.info("Loaded session %s (%s messages)", session_id, len(state.chat_history))
        return state

    async def return_to_menu(self) -> None:
        await self._leave_current()

    def list_sessions(self) -> list[SessionState]:
        return self._store.list()

    async def delete_session(self, session_id: str) -> bool:
        if self._state is not None and self._state.session_id == session_id:
            self.saver.cancel()
            self._drop_active()
        return self._store.delete(session_id)

    async def migrate_legacy(self, path: Optional[str] = None) -> int:
        path = path or self._save_config.legacy_history_path
        if not path:
            return 0
        return await asyncio.to_thread(self._store.load_legacy_and_migrate, path)

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    async def send(
        self,
        text: str,
        *,
        on_begin: StateCallback | None = None,
        on_patch: PatchCallback | None = None,
    ) -> TurnOutcome:
        state = self._state
        conversation = self._conversation
        if state is None or conversation is None:
            return TurnOutcome(status="error", reason="no_active_session")

        generation = self._generation

        async def _begin(working: SessionState) -> None:
            if generation == self._generation:
                self._state = working
            if on_begin is not None:
                maybe = on_begin(working)
                if asyncio.iscoroutine(maybe):
                    await maybe

        outcome = await self.engine.resolve_turn(
            state,
            conversation,
            text,
            on_begin=_begin,
            on_patch=on_patch,
        )
        if outcome.status in ("busy", "ended") or generation != self._generation:
            return outcome

        self._turn_serial += 1
        committed = outcome.state
        for memory, reset_index in self._pending_summaries:
            committed = apply_summary(committed, memory, reset_index=reset_index, now=self._clock())
        self._pending_summaries.clear()
        self._state = committed
        outcome.state = committed

        if outcome.context_reset:
            self.scheduler.schedule(
                committed,
                fallback_image=state.scene_image,
                on_complete=self._summary_applier(generation),
                skip_image_of=outcome.result.assistant_message_id if outcome.result else None,
            )
        if outcome.status == "ok":
            self._spawn(self._refresh_suggestions(generation, self._turn_serial))
        self.saver.schedule(committed)
        return outcome

    async def send_action(
        self,
        action: UIAction | str,
        *,
        on_begin: StateCallback | None = None,
        on_patch: PatchCallback | None = None,
    ) -> TurnOutcome:
        return await self.send(encode_ui_action(action), on_begin=on_begin, on_patch=on_patch)

    async def drain(self) -> None:
        """Wait for detached summaries and suggestions, then flush any pending save."""
        while True:
            await self.scheduler.drain()
            pending = [task for task in self._tasks if not task.done()]
            if not pending:
                break
            await asyncio.gather(*pending, return_exceptions=True)
        await self.saver.flush()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _persona_context(self, state: SessionState, *, with_memories: bool) -> PersonaContext:
        return PersonaContext(
            persona=state.persona,
            user_name=state.user_name,
            affection=state.affection,
            memories_text=memories_text(state.memories) if with_memories else "",
            player_persona=state.player_persona,
        )

    def _summary_applier(self, generation: int):
        async def _apply(memory: StoryMemory, reset_index: int) -> None:
            if generation != self._generation or self._state is None:
                self._logger.debug("Dropping summary for an inactive session")
                return
            if self.engine.is_busy(self._state.session_id):
                # Folded in when the running turn commits.
                self._pending_summaries.append((memory, reset_index))
            else:
                self._state = apply_summary(self._state, memory, reset_index=reset_index, now=self._clock())
                self.saver.schedule(self._state)
            # Later turns read the rebuilt conversation; the newest rebuild wins.
            memories = [*self._state.memories]
            if memory not in memories:
                memories.append(memory)
            self._conversation = self._narrative.open_conversation(
                PersonaContext(
                    persona=self._state.persona,
                    user_name=self._state.user_name,
                    affection=self._state.affection,
                    memories_text=memories_text(memories),
                    player_persona=self._state.player_persona,
                )
            )
            self._logger.info("Context reset for session %s: %s", self._state.session_id, memory.title)

        return _apply

    async def _refresh_suggestions(self, generation: int, turn_serial: int) -> None:
        state = self._state
        if state is None:
            return
        suggestions = await self.suggestions.generate(state, self._story_context)
        if generation != self._generation or turn_serial != self._turn_serial or self._state is None:
            return
        if self.engine.is_busy(self._state.session_id):
            return
        self._state = set_suggestions(self._state, suggestions)
        self.saver.schedule(self._state)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._logger.error("Background task failed", exc_info=exc)

    async def _leave_current(self) -> None:
        if self._state is not None:
            self.saver.save_now(self._state)
        self._drop_active()

    def _drop_active(self) -> None:
        self._generation += 1
        self._state = None
        self._conversation = None
        self._story_context = None
        self._pending_summaries.clear()
