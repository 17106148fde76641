from __future__ import annotations

from enum import Enum

FAST_FORWARD_COMMAND = "[SYSTEM COMMAND: fast-forward to the next meeting]"


class UIAction(str, Enum):
    MOVE = "move"
    LEAVE = "leave"
    FAST_FORWARD = "fast_forward"


_ACTION_MESSAGES = {
    UIAction.MOVE: "I'd like to go somewhere else. (switch scene)",
    UIAction.LEAVE: "I have something to take care of, I'll head out. Talk later. (step away)",
    UIAction.FAST_FORWARD: FAST_FORWARD_COMMAND,
}


def encode_ui_action(action: UIAction | str) -> str:
    """Turn a discrete UI action into the user message the narrative service understands."""
    return _ACTION_MESSAGES[UIAction(action)]
