from __future__ import annotations

from dataclasses import replace
from typing import Any, Mapping

from .normalize import coerce_str
from .types import VisualState

DEFAULT_POSE = "Standing"
DEFAULT_USER_ACTION = "Standing nearby"

# Wire names used by the narrative service, mapped to VisualState fields.
WIRE_FIELDS = {
    "waifuPose": "pose",
    "waifuClothing": "clothing",
    "userAction": "user_action",
    "envAtmosphere": "atmosphere",
}
FIELD_NAMES = ("pose", "clothing", "user_action", "atmosphere")


def partial_from_args(args: Mapping[str, Any]) -> dict[str, str]:
    """Pick visual-state fields out of raw tool arguments.

    Accepts both wire names and field names; blank values are dropped so they
    never erase tracked state.
    """
    partial: dict[str, str] = {}
    for key, value in args.items():
        field_name = WIRE_FIELDS.get(key, key)
        if field_name not in FIELD_NAMES:
            continue
        text = coerce_str(value)
        if text:
            partial[field_name] = text
    return partial


def merge_visual_state(current: VisualState, partial: Mapping[str, Any] | VisualState | None) -> VisualState:
    if partial is None:
        return replace(current)
    if isinstance(partial, VisualState):
        partial = {name: getattr(partial, name) for name in FIELD_NAMES if getattr(partial, name)}
    updates = {name: str(partial[name]) for name in FIELD_NAMES if name in partial and partial[name] is not None}
    return replace(current, **updates)


def scene_reset_visual_state(current: VisualState, atmosphere: str) -> VisualState:
    return VisualState(
        pose=DEFAULT_POSE,
        clothing=current.clothing,
        user_action=DEFAULT_USER_ACTION,
        atmosphere=atmosphere,
    )


def describe_visual_state(state: VisualState) -> str:
    return (
        f"Persona: {state.pose}, {state.clothing}. "
        f"User action: {state.user_action}. "
        f"Environment: {state.atmosphere}."
    )
