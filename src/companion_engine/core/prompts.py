from __future__ import annotations

from typing import Sequence

from .types import SENDER_PERSONA, ChatMessage, HistoryTurn, ImageKind, ImageRequest
from .visual import describe_visual_state

_STYLE_PROMPTS = {
    "Manga": "Japanese manga style, black and white, detailed screentones, high quality ink drawing, sharp lines.",
    "Male": "Otome game CG, handsome male character focus, detailed, sparkling, shoujo manga style.",
}
_DEFAULT_STYLE_PROMPT = (
    "Visual novel event CG, masterpiece anime art style, high quality, detailed, soft lighting, "
    "vibrant colors, 2d anime style, cell shading, sharp lines."
)
_TEXTLESS = "textless, no speech bubbles, no ui, no words."


def style_prompt(style: str) -> str:
    return _STYLE_PROMPTS.get(style, _DEFAULT_STYLE_PROMPT)


def build_image_prompt(request: ImageRequest) -> str:
    style = style_prompt(request.style)
    if request.kind == ImageKind.PORTRAIT:
        return (
            f"{style} {_TEXTLESS} Portrait of a character. Visual: [{request.subject}]. "
            "solo, looking at viewer, detailed eyes, emotive expression, clean background."
        )
    if request.kind == ImageKind.ITEM:
        return (
            f"{style} High quality item concept art illustration. Object: [{request.subject}]. "
            "Cinematic lighting, detailed texture, centered composition, close-up shot of the object. "
            "No text, no numbers, no ui overlays."
        )
    parts = [style, _TEXTLESS, f"Character appearance: {request.subject}."]
    if request.visual_state is not None:
        parts.append(describe_visual_state(request.visual_state))
    if request.event:
        parts.append(f"Specific event: {request.event}")
    return " ".join(parts)


def history_turns(messages: Sequence[ChatMessage]) -> list[HistoryTurn]:
    """Role-tag chat history for seeding a fresh conversation.

    Persona lines become ``model`` turns; user and system lines are sent as
    ``user`` turns. Empty texts are sent as a single space.
    """
    return [
        HistoryTurn(
            role="model" if message.sender == SENDER_PERSONA else "user",
            text=message.text or " ",
        )
        for message in messages
    ]
