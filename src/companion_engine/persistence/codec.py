"""JSON codec for ``SessionState``.

Current saves use snake_case keys and ISO timestamps. Saves exported by the
older browser client use camelCase keys, epoch-millisecond timestamps and the
``waifu`` sender/profile names; ``state_from_dict`` reads both, and fills
anything missing with defaults.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Mapping

from ..core.endings import ending_wire_value, parse_ending_kind
from ..core.normalize import coerce_bool, coerce_int, coerce_str, coerce_str_list
from ..core.types import (
    SENDER_PERSONA,
    SENDER_SYSTEM,
    SENDER_USER,
    ChatMessage,
    Ending,
    InventoryItem,
    PersonaProfile,
    SessionState,
    StoryMemory,
    VisualState,
)
from ..core.visual import WIRE_FIELDS

_LEGACY_SENDERS = {"waifu": SENDER_PERSONA}
_SENDERS = {SENDER_USER, SENDER_PERSONA, SENDER_SYSTEM}


def _pick(data: Mapping[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default


def _time_to_wire(value: datetime) -> str:
    return value.isoformat()


def _time_from_wire(value: object, default: datetime | None = None) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
    if isinstance(value, str) and value.strip():
        try:
            parsed = datetime.fromisoformat(value.strip())
        except ValueError:
            parsed = None
        if parsed is not None:
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return default or datetime.fromtimestamp(0, tz=timezone.utc)


def _optional_str(value: object) -> str | None:
    text = coerce_str(value)
    return text or None


def _text(value: object, exact: bool) -> str:
    if exact and isinstance(value, str):
        return value
    return coerce_str(value)


def _text_list(value: object, exact: bool) -> list[str]:
    if exact and isinstance(value, (list, tuple)):
        return [entry if isinstance(entry, str) else coerce_str(entry) for entry in value]
    return coerce_str_list(value)


def _as_dict(value: object) -> Mapping[str, Any]:
    return value if isinstance(value, Mapping) else {}


def _as_list(value: object) -> list:
    return list(value) if isinstance(value, (list, tuple)) else []


# -- persona -------------------------------------------------------------


def persona_to_dict(persona: PersonaProfile) -> dict[str, Any]:
    return {
        "name": persona.name,
        "race": persona.race,
        "age": persona.age,
        "job": persona.job,
        "personality": persona.personality,
        "appearance": persona.appearance,
        "backstory": persona.backstory,
        "secret": persona.secret,
        "hidden_secrets": list(persona.hidden_secrets),
        "initial_scenario": persona.initial_scenario,
        "initial_memory_title": persona.initial_memory_title,
        "initial_affection": persona.initial_affection,
        "opening_message": persona.opening_message,
    }


def persona_from_dict(
    data: Mapping[str, Any],
    *,
    default_affection: int = 40,
    exact: bool = False,
) -> PersonaProfile:
    """Build a profile from model output or a save.

    Model output and legacy saves are trimmed and have empty secrets
    dropped; ``exact`` keeps strings from a current save as written.
    """
    return PersonaProfile(
        name=_text(data.get("name"), exact),
        race=_text(data.get("race"), exact),
        age=_text(data.get("age"), exact),
        job=_text(data.get("job"), exact),
        personality=_text(data.get("personality"), exact),
        appearance=_text(data.get("appearance"), exact),
        backstory=_text(data.get("backstory"), exact),
        secret=_text(data.get("secret"), exact),
        hidden_secrets=_text_list(_pick(data, "hidden_secrets", "hiddenSecrets"), exact),
        initial_scenario=_text(_pick(data, "initial_scenario", "initialScenario"), exact),
        initial_memory_title=_text(_pick(data, "initial_memory_title", "initialMemoryTitle"), exact),
        initial_affection=coerce_int(
            _pick(data, "initial_affection", "initialAffection"),
            default_affection,
        ),
        opening_message=_text(_pick(data, "opening_message", "openingMessage"), exact),
    )


# -- records -------------------------------------------------------------


def _message_to_dict(message: ChatMessage) -> dict[str, Any]:
    return {
        "id": message.id,
        "sender": message.sender,
        "text": message.text,
        "timestamp": _time_to_wire(message.timestamp),
        "image": message.image,
    }


def _message_from_dict(data: Mapping[str, Any]) -> ChatMessage:
    sender = coerce_str(data.get("sender")).lower()
    sender = _LEGACY_SENDERS.get(sender, sender)
    if sender not in _SENDERS:
        sender = SENDER_SYSTEM
    text = data.get("text")
    return ChatMessage(
        id=coerce_str(data.get("id")),
        sender=sender,
        text=text if isinstance(text, str) else coerce_str(text),
        timestamp=_time_from_wire(data.get("timestamp")),
        image=_optional_str(_pick(data, "image", "imageUrl")),
    )


def _item_to_dict(item: InventoryItem) -> dict[str, Any]:
    return {
        "id": item.id,
        "name": item.name,
        "description": item.description,
        "image": item.image,
        "obtained_at": _time_to_wire(item.obtained_at),
    }


def _item_from_dict(data: Mapping[str, Any], exact: bool) -> InventoryItem:
    return InventoryItem(
        id=coerce_str(data.get("id")),
        name=_text(data.get("name"), exact),
        description=_text(data.get("description"), exact),
        image=coerce_str(_pick(data, "image", "imageUrl")),
        obtained_at=_time_from_wire(_pick(data, "obtained_at", "obtainedAt")),
    )


def _memory_to_dict(memory: StoryMemory) -> dict[str, Any]:
    return {
        "id": memory.id,
        "title": memory.title,
        "description": memory.description,
        "timestamp": _time_to_wire(memory.timestamp),
        "image": memory.image,
    }


def _memory_from_dict(data: Mapping[str, Any], exact: bool) -> StoryMemory:
    return StoryMemory(
        id=coerce_str(data.get("id")),
        title=_text(data.get("title"), exact),
        description=_text(data.get("description"), exact),
        timestamp=_time_from_wire(data.get("timestamp")),
        image=_optional_str(_pick(data, "image", "imageUrl")),
    )


def _ending_to_dict(ending: Ending | None) -> dict[str, Any] | None:
    if ending is None:
        return None
    return {
        "type": ending_wire_value(ending.kind),
        "title": ending.title,
        "description": ending.description,
        "image": ending.image,
    }


def _ending_from_dict(data: object, exact: bool) -> Ending | None:
    if not isinstance(data, Mapping):
        return None
    return Ending(
        kind=parse_ending_kind(_pick(data, "kind", "type")),
        title=_text(data.get("title"), exact),
        description=_text(data.get("description"), exact),
        image=coerce_str(_pick(data, "image", "imageUrl")),
    )


def _visual_to_dict(state: VisualState) -> dict[str, str]:
    return {
        "pose": state.pose,
        "clothing": state.clothing,
        "user_action": state.user_action,
        "atmosphere": state.atmosphere,
    }


def _visual_from_dict(data: Mapping[str, Any], exact: bool) -> VisualState:
    values: dict[str, str] = {}
    for key, value in data.items():
        field_name = WIRE_FIELDS.get(key, key)
        if field_name in ("pose", "clothing", "user_action", "atmosphere"):
            values[field_name] = _text(value, exact)
    return VisualState(**values)


# -- session -------------------------------------------------------------


def state_to_dict(state: SessionState) -> dict[str, Any]:
    return {
        "session_id": state.session_id,
        "created_at": _time_to_wire(state.created_at),
        "last_updated": _time_to_wire(state.last_updated),
        "user_name": state.user_name,
        "persona": persona_to_dict(state.persona),
        "persona_image": state.persona_image,
        "scene_image": state.scene_image,
        "current_scene_visual": state.current_scene_visual,
        "visual_state": _visual_to_dict(state.visual_state),
        "affection": state.affection,
        "chat_history": [_message_to_dict(m) for m in state.chat_history],
        "suggested_replies": list(state.suggested_replies),
        "inventory": [_item_to_dict(i) for i in state.inventory],
        "memories": [_memory_to_dict(m) for m in state.memories],
        "unlocked_secrets": list(state.unlocked_secrets),
        "is_separated": state.is_separated,
        "has_contact_info": state.has_contact_info,
        "ending": _ending_to_dict(state.ending),
        "art_style": state.art_style,
        "player_persona": state.player_persona,
        "is_custom_character": state.is_custom_character,
        "context_reset_index": state.context_reset_index,
    }


def state_from_dict(data: Mapping[str, Any]) -> SessionState:
    # Current saves are read back verbatim; legacy saves get the tolerant path.
    exact = "session_id" in data
    last_updated = _time_from_wire(_pick(data, "last_updated", "lastUpdated"))
    history = [
        _message_from_dict(m)
        for m in _as_list(_pick(data, "chat_history", "chatHistory"))
        if isinstance(m, Mapping)
    ]
    return SessionState(
        session_id=coerce_str(_pick(data, "session_id", "sessionId")),
        persona=persona_from_dict(_as_dict(_pick(data, "persona", "waifu")), exact=exact),
        user_name=_text(_pick(data, "user_name", "userName"), exact),
        created_at=_time_from_wire(_pick(data, "created_at", "createdAt"), last_updated),
        last_updated=last_updated,
        affection=coerce_int(_pick(data, "affection", "affectionScore"), 40),
        persona_image=_optional_str(_pick(data, "persona_image", "waifuImage")),
        scene_image=_optional_str(_pick(data, "scene_image", "initialSceneImage")),
        current_scene_visual=_text(_pick(data, "current_scene_visual", "currentSceneVisual"), exact),
        visual_state=_visual_from_dict(_as_dict(_pick(data, "visual_state", "visualState")), exact),
        chat_history=history,
        suggested_replies=_text_list(_pick(data, "suggested_replies", "suggestedReplies"), exact),
        inventory=[_item_from_dict(i, exact) for i in _as_list(data.get("inventory")) if isinstance(i, Mapping)],
        memories=[_memory_from_dict(m, exact) for m in _as_list(data.get("memories")) if isinstance(m, Mapping)],
        unlocked_secrets=_text_list(_pick(data, "unlocked_secrets", "unlockedSecrets"), exact),
        is_separated=coerce_bool(_pick(data, "is_separated", "isSeparated")),
        has_contact_info=coerce_bool(_pick(data, "has_contact_info", "hasContactInfo")),
        ending=_ending_from_dict(data.get("ending"), exact),
        art_style=coerce_str(_pick(data, "art_style", "artStyle")) or "Anime",
        player_persona=_text(_pick(data, "player_persona", "playerPersona"), exact),
        is_custom_character=coerce_bool(_pick(data, "is_custom_character", "isCustomCharacter")),
        context_reset_index=max(
            0,
            min(coerce_int(data.get("context_reset_index")), len(history)),
        ),
    )
