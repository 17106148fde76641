from .codec import persona_from_dict, persona_to_dict, state_from_dict, state_to_dict
from .store import DebouncedSaver, SessionStore

__all__ = [
    "DebouncedSaver",
    "SessionStore",
    "persona_from_dict",
    "persona_to_dict",
    "state_from_dict",
    "state_to_dict",
]
