from .actions import FAST_FORWARD_COMMAND, UIAction, encode_ui_action
from .config import EngineConfig, GradioImageConfig, ImageSizes, SaveConfig
from .engine import TurnEngine
from .errors import (
    CompanionEngineError,
    ImageSynthesisError,
    NarrativeStreamError,
    SessionEndedError,
    SessionNotFoundError,
    ToolArgumentError,
    TurnBusyError,
)
from .ports import ImageSynthesisPort, NarrativeConversation, NarrativePort
from .suggestions import SuggestionGenerator
from .summarizer import ContextResetScheduler
from .tokens import count_tokens
from .tools import ToolDispatcher, ToolName, TurnDraft
from .types import (
    ChatMessage,
    Ending,
    EndingKind,
    ImageKind,
    ImageRequest,
    InventoryItem,
    PersonaContext,
    PersonaProfile,
    SessionState,
    StoryMemory,
    StreamChunk,
    ToolCall,
    ToolResult,
    TurnOutcome,
    TurnResult,
    VisualState,
)

__all__ = [
    "FAST_FORWARD_COMMAND",
    "UIAction",
    "encode_ui_action",
    "EngineConfig",
    "GradioImageConfig",
    "ImageSizes",
    "SaveConfig",
    "TurnEngine",
    "CompanionEngineError",
    "ImageSynthesisError",
    "NarrativeStreamError",
    "SessionEndedError",
    "SessionNotFoundError",
    "ToolArgumentError",
    "TurnBusyError",
    "ImageSynthesisPort",
    "NarrativeConversation",
    "NarrativePort",
    "SuggestionGenerator",
    "ContextResetScheduler",
    "count_tokens",
    "ToolDispatcher",
    "ToolName",
    "TurnDraft",
    "ChatMessage",
    "Ending",
    "EndingKind",
    "ImageKind",
    "ImageRequest",
    "InventoryItem",
    "PersonaContext",
    "PersonaProfile",
    "SessionState",
    "StoryMemory",
    "StreamChunk",
    "ToolCall",
    "ToolResult",
    "TurnOutcome",
    "TurnResult",
    "VisualState",
]
