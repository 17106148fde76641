from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional


SENDER_USER = "user"
SENDER_PERSONA = "persona"
SENDER_SYSTEM = "system"


class ImageKind(str, Enum):
    PORTRAIT = "portrait"
    SCENE = "scene"
    ITEM = "item"


class EndingKind(str, Enum):
    FAVORABLE = "favorable"
    UNFAVORABLE = "unfavorable"


@dataclass
class VisualState:
    pose: str = ""
    clothing: str = ""
    user_action: str = ""
    atmosphere: str = ""


@dataclass
class PersonaProfile:
    name: str
    race: str = ""
    age: str = ""
    job: str = ""
    personality: str = ""
    appearance: str = ""
    backstory: str = ""
    secret: str = ""
    hidden_secrets: list[str] = field(default_factory=list)
    initial_scenario: str = ""
    initial_memory_title: str = ""
    initial_affection: int = 40
    opening_message: str = ""


@dataclass
class ChatMessage:
    id: str
    sender: str
    text: str
    timestamp: datetime
    image: Optional[str] = None


@dataclass
class InventoryItem:
    id: str
    name: str
    description: str
    image: str
    obtained_at: datetime


@dataclass
class StoryMemory:
    id: str
    title: str
    description: str
    timestamp: datetime
    image: Optional[str] = None


@dataclass
class Ending:
    kind: EndingKind
    title: str
    description: str
    image: str


@dataclass
class SessionState:
    session_id: str
    persona: PersonaProfile
    user_name: str
    created_at: datetime
    last_updated: datetime
    affection: int = 40
    persona_image: Optional[str] = None
    scene_image: Optional[str] = None
    current_scene_visual: str = ""
    visual_state: VisualState = field(default_factory=VisualState)
    chat_history: list[ChatMessage] = field(default_factory=list)
    suggested_replies: list[str] = field(default_factory=list)
    inventory: list[InventoryItem] = field(default_factory=list)
    memories: list[StoryMemory] = field(default_factory=list)
    unlocked_secrets: list[str] = field(default_factory=list)
    is_separated: bool = False
    has_contact_info: bool = False
    ending: Optional[Ending] = None
    art_style: str = "Anime"
    player_persona: str = ""
    is_custom_character: bool = False
    context_reset_index: int = 0

    @property
    def is_ended(self) -> bool:
        return self.ending is not None


@dataclass
class ToolCall:
    name: str
    args: dict[str, Any] = field(default_factory=dict)
    call_id: Optional[str] = None


@dataclass
class ToolResult:
    name: str
    status: str
    result: str
    instruction: Optional[str] = None
    call_id: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == "ok"

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"result": self.result}
        if self.instruction:
            payload["system_instruction"] = self.instruction
        return payload


@dataclass
class StreamChunk:
    text: Optional[str] = None
    tool_calls: list[ToolCall] = field(default_factory=list)


@dataclass
class ImageRequest:
    kind: ImageKind
    subject: str
    event: str = ""
    visual_state: Optional[VisualState] = None
    style: str = "Anime"
    reference_image: Optional[str] = None


@dataclass
class PersonaContext:
    persona: PersonaProfile
    user_name: str
    affection: int
    memories_text: str = ""
    player_persona: str = ""


@dataclass
class HistoryTurn:
    role: str
    text: str


@dataclass
class SuggestionRequest:
    recent_lines: list[str]
    persona: PersonaProfile
    affection: int
    is_separated: bool
    user_name: str
    context: Optional[str] = None


@dataclass
class SceneChange:
    location: str
    description: str
    visual_prompt: str
    image: Optional[str] = None


@dataclass
class TurnResult:
    user_message_id: str
    assistant_message_id: str
    assistant_text: str
    assistant_image: Optional[str] = None
    affection: int = 0
    visual_state: VisualState = field(default_factory=VisualState)
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
    rounds: int = 0
    hit_ceiling: bool = False
    failed: bool = False


@dataclass
class TurnOutcome:
    status: str
    state: Optional[SessionState] = None
    rounds: int = 0
    hit_ceiling: bool = False
    context_reset: bool = False
    reason: Optional[str] = None
    result: Optional[TurnResult] = None
