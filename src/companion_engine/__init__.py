from .adapters.gradio_images import GradioImageService
from .core.actions import UIAction, encode_ui_action
from .core.config import EngineConfig, GradioImageConfig, SaveConfig
from .core.engine import TurnEngine
from .core.types import PersonaProfile, SessionState, TurnOutcome
from .persistence.store import DebouncedSaver, SessionStore
from .runtime import CompanionRuntime

__all__ = [
    "CompanionRuntime",
    "DebouncedSaver",
    "EngineConfig",
    "GradioImageConfig",
    "GradioImageService",
    "PersonaProfile",
    "SaveConfig",
    "SessionState",
    "SessionStore",
    "TurnEngine",
    "TurnOutcome",
    "UIAction",
    "encode_ui_action",
]
