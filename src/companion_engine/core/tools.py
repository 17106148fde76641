from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Mapping, Optional, Sequence

from .config import EngineConfig
from .endings import resolve_ending
from .errors import ToolArgumentError
from .normalize import clamp, coerce_bool, coerce_int, coerce_str, new_id
from .ports import ImageSynthesisPort
from .types import (
    SENDER_SYSTEM,
    ChatMessage,
    Ending,
    ImageKind,
    ImageRequest,
    InventoryItem,
    SceneChange,
    SessionState,
    StoryMemory,
    ToolCall,
    ToolResult,
    VisualState,
)
from .visual import merge_visual_state, partial_from_args, scene_reset_visual_state

BASE_INSTRUCTION = (
    "Action completed. Now you must generate a natural verbal response "
    "to the user's last message or this action."
)


class ToolName(str, Enum):
    ADJUST_AFFECTION = "updateAffection"
    UPDATE_VISUAL_STATE = "updateVisualState"
    GENERATE_SCENE = "generateScene"
    GENERATE_ITEM = "generateItem"
    SAVE_MEMORY = "saveMemory"
    SWITCH_SCENE = "switchScene"
    UPDATE_SEPARATION = "updateSeparationStatus"
    GRANT_CONTACT = "grantContactInfo"
    TRIGGER_EVENT = "triggerEvent"
    TRIGGER_ENDING = "triggerEnding"
    UNLOCK_SECRET = "unlockSecret"

    @classmethod
    def parse(cls, raw: object) -> Optional["ToolName"]:
        text = coerce_str(raw)
        try:
            return cls(text)
        except ValueError:
            return None


@dataclass
class TurnDraft:
    """In-flight copy of everything a turn's tool handlers may change.

    Handlers of one round share a draft, so writes from an earlier call are
    visible to later calls. The draft is folded into a ``TurnResult`` on commit.
    """

    affection: int
    visual_state: VisualState
    turn_image: Optional[str] = None
    new_items: list[InventoryItem] = field(default_factory=list)
    new_memories: list[StoryMemory] = field(default_factory=list)
    injected_messages: list[ChatMessage] = field(default_factory=list)
    unlocked_secrets: list[str] = field(default_factory=list)
    separation: Optional[bool] = None
    separation_summary: Optional[str] = None
    contact_granted: bool = False
    scene_change: Optional[SceneChange] = None
    events: list[tuple[str, str]] = field(default_factory=list)
    ending: Optional[Ending] = None
    context_reset: bool = False

    @classmethod
    def from_state(cls, state: SessionState) -> "TurnDraft":
        return cls(affection=state.affection, visual_state=merge_visual_state(state.visual_state, None))


Handler = Callable[[Mapping[str, Any], TurnDraft, SessionState], Awaitable[ToolResult]]


class ToolDispatcher:
    """Executes model-issued tool calls against a ``TurnDraft``.

    Every entry in ``ToolName`` has exactly one handler. Handlers never raise:
    synthesis failures and malformed arguments come back as ``failed`` results
    so the model can keep narrating in text-only mode.
    """

    def __init__(
        self,
        images: ImageSynthesisPort,
        *,
        config: EngineConfig | None = None,
        clock: Callable[[], datetime] | None = None,
        logger: logging.Logger | None = None,
    ):
        self._images = images
        self._config = config or EngineConfig()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._logger = logger or logging.getLogger(__name__)
        self._handlers: dict[ToolName, Handler] = {
            ToolName.ADJUST_AFFECTION: self._adjust_affection,
            ToolName.UPDATE_VISUAL_STATE: self._update_visual_state,
            ToolName.GENERATE_SCENE: self._generate_scene,
            ToolName.GENERATE_ITEM: self._generate_item,
            ToolName.SAVE_MEMORY: self._save_memory,
            ToolName.SWITCH_SCENE: self._switch_scene,
            ToolName.UPDATE_SEPARATION: self._update_separation,
            ToolName.GRANT_CONTACT: self._grant_contact,
            ToolName.TRIGGER_EVENT: self._trigger_event,
            ToolName.TRIGGER_ENDING: self._trigger_ending,
            ToolName.UNLOCK_SECRET: self._unlock_secret,
        }

    async def dispatch_round(
        self,
        calls: Sequence[ToolCall],
        draft: TurnDraft,
        state: SessionState,
    ) -> list[ToolResult]:
        results: list[ToolResult] = []
        for index, call in enumerate(calls):
            results.append(await self.dispatch(call, draft, state))
            if draft.ending is not None:
                skipped = len(calls) - index - 1
                if skipped:
                    self._logger.info("Ending reached; discarding %s queued tool call(s)", skipped)
                break
        return results

    async def dispatch(self, call: ToolCall, draft: TurnDraft, state: SessionState) -> ToolResult:
        name = ToolName.parse(call.name)
        if name is None:
            self._logger.warning("Unknown tool requested: %r", call.name)
            return ToolResult(
                name=str(call.name),
                status="failed",
                result=f"Unknown tool '{call.name}'.",
                call_id=call.call_id,
            )
        args = call.args if isinstance(call.args, Mapping) else {}
        try:
            result = await self._handlers[name](args, draft, state)
        except ToolArgumentError as exc:
            self._logger.info("Tool %s rejected arguments: %s", name.value, exc)
            result = ToolResult(name=name.value, status="failed", result=str(exc))
        except Exception as exc:
            self._logger.warning("Tool %s failed: %s", name.value, exc, exc_info=True)
            result = ToolResult(name=name.value, status="failed", result=f"Tool {name.value} failed.")
        result.call_id = call.call_id
        return result

    async def _synthesize(self, request: ImageRequest) -> Optional[str]:
        try:
            image = await self._images.synthesize(request)
        except Exception as exc:
            self._logger.warning("Image synthesis failed (%s): %s", request.kind.value, exc)
            return None
        if not image:
            self._logger.warning("Image synthesis returned no payload (%s)", request.kind.value)
            return None
        return image

    def _scene_request(self, state: SessionState, draft: TurnDraft, event: str) -> ImageRequest:
        return ImageRequest(
            kind=ImageKind.SCENE,
            subject=state.persona.appearance,
            event=event,
            visual_state=draft.visual_state,
            style=state.art_style,
            reference_image=state.persona_image,
        )

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _adjust_affection(self, args, draft: TurnDraft, state: SessionState) -> ToolResult:
        delta = coerce_int(args.get("change"))
        draft.affection = clamp(
            draft.affection + delta,
            self._config.affection_min,
            self._config.affection_max,
        )
        return ToolResult(
            name=ToolName.ADJUST_AFFECTION.value,
            status="ok",
            result=f"Affection updated. Current: {draft.affection}",
            instruction=BASE_INSTRUCTION,
        )

    async def _update_visual_state(self, args, draft: TurnDraft, state: SessionState) -> ToolResult:
        draft.visual_state = merge_visual_state(draft.visual_state, partial_from_args(args))
        return ToolResult(
            name=ToolName.UPDATE_VISUAL_STATE.value,
            status="ok",
            result="Visual state tracked.",
            instruction="State updated. Describe the new view.",
        )

    async def _generate_scene(self, args, draft: TurnDraft, state: SessionState) -> ToolResult:
        description = coerce_str(args.get("description"))
        image = await self._synthesize(self._scene_request(state, draft, description))
        if image is None:
            return ToolResult(
                name=ToolName.GENERATE_SCENE.value,
                status="failed",
                result="Failed to generate scene.",
            )
        draft.turn_image = image
        draft.new_memories.append(
            StoryMemory(
                id=new_id("memory"),
                title=self._config.scene_memory_title,
                description=description,
                image=image,
                timestamp=self._clock(),
            )
        )
        return ToolResult(
            name=ToolName.GENERATE_SCENE.value,
            status="ok",
            result="Scene image generated.",
            instruction="Scene updated. Describe the new view.",
        )

    async def _generate_item(self, args, draft: TurnDraft, state: SessionState) -> ToolResult:
        name = coerce_str(args.get("name"))
        description = coerce_str(args.get("description"))
        visual_prompt = coerce_str(args.get("visualPrompt")) or description or name
        image = await self._synthesize(
            ImageRequest(kind=ImageKind.ITEM, subject=visual_prompt, style=state.art_style)
        )
        if image is None:
            return ToolResult(
                name=ToolName.GENERATE_ITEM.value,
                status="failed",
                result="Failed to generate item.",
            )
        now = self._clock()
        draft.new_items.append(
            InventoryItem(
                id=new_id("item"),
                name=name,
                description=description,
                image=image,
                obtained_at=now,
            )
        )
        draft.injected_messages.append(
            ChatMessage(
                id=new_id("msg-item"),
                sender=SENDER_SYSTEM,
                text=f"{self._config.item_message_prefix} {name}\n{description}",
                timestamp=now,
                image=image,
            )
        )
        return ToolResult(
            name=ToolName.GENERATE_ITEM.value,
            status="ok",
            result=f"Item '{name}' generated.",
            instruction=f"Item {name} given.",
        )

    async def _save_memory(self, args, draft: TurnDraft, state: SessionState) -> ToolResult:
        title = coerce_str(args.get("title"))
        description = coerce_str(args.get("description"))
        visual_prompt = coerce_str(args.get("visualPrompt")) or description
        image = await self._synthesize(self._scene_request(state, draft, visual_prompt))
        draft.new_memories.append(
            StoryMemory(
                id=new_id("memory"),
                title=title,
                description=description,
                image=image,
                timestamp=self._clock(),
            )
        )
        return ToolResult(
            name=ToolName.SAVE_MEMORY.value,
            status="ok",
            result="Memory saved." if image else "Memory saved without illustration.",
            instruction="Memory recorded.",
        )

    async def _switch_scene(self, args, draft: TurnDraft, state: SessionState) -> ToolResult:
        location = coerce_str(args.get("locationName"))
        description = coerce_str(args.get("description"))
        visual_prompt = coerce_str(args.get("visualPrompt")) or description
        draft.visual_state = scene_reset_visual_state(draft.visual_state, visual_prompt)
        # The reset is owed even when the background fails to render.
        draft.context_reset = True
        image = await self._synthesize(self._scene_request(state, draft, description))
        draft.scene_change = SceneChange(
            location=location,
            description=description,
            visual_prompt=visual_prompt,
            image=image,
        )
        if image is not None:
            draft.turn_image = image
        draft.new_memories.append(
            StoryMemory(
                id=new_id("memory"),
                title=location,
                description=description,
                image=image,
                timestamp=self._clock(),
            )
        )
        return ToolResult(
            name=ToolName.SWITCH_SCENE.value,
            status="ok",
            result=f"Scene switched to {location}.",
            instruction="Scene switched. Narrate arrival.",
        )

    async def _update_separation(self, args, draft: TurnDraft, state: SessionState) -> ToolResult:
        separated = coerce_bool(args.get("isSeparated"))
        draft.separation = separated
        draft.separation_summary = coerce_str(args.get("narrativeSummary")) or None
        return ToolResult(
            name=ToolName.UPDATE_SEPARATION.value,
            status="ok",
            result="Separation updated.",
            instruction="Separation confirmed." if separated else "Reunion confirmed.",
        )

    async def _grant_contact(self, args, draft: TurnDraft, state: SessionState) -> ToolResult:
        draft.contact_granted = True
        return ToolResult(
            name=ToolName.GRANT_CONTACT.value,
            status="ok",
            result="Contact info granted.",
            instruction="Contact info given.",
        )

    async def _trigger_event(self, args, draft: TurnDraft, state: SessionState) -> ToolResult:
        draft.events.append((coerce_str(args.get("eventName")), coerce_str(args.get("description"))))
        return ToolResult(
            name=ToolName.TRIGGER_EVENT.value,
            status="ok",
            result="Event triggered.",
            instruction="Event started.",
        )

    async def _trigger_ending(self, args, draft: TurnDraft, state: SessionState) -> ToolResult:
        visual_prompt = coerce_str(args.get("visualPrompt")) or coerce_str(args.get("description"))
        image = await self._synthesize(self._scene_request(state, draft, visual_prompt))
        draft.ending = resolve_ending(
            args,
            image=image,
            fallback_image=self._config.fallback_ending_image,
        )
        return ToolResult(
            name=ToolName.TRIGGER_ENDING.value,
            status="ok",
            result="Ending triggered.",
            instruction="Story ended.",
        )

    async def _unlock_secret(self, args, draft: TurnDraft, state: SessionState) -> ToolResult:
        secret = coerce_str(args.get("secretContent"))
        if not secret:
            raise ToolArgumentError("No secret content provided.")
        draft.unlocked_secrets.append(secret)
        return ToolResult(
            name=ToolName.UNLOCK_SECRET.value,
            status="ok",
            result="Secret unlocked.",
            instruction="Secret revealed.",
        )
