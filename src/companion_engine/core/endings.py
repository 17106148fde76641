from __future__ import annotations

from typing import Any, Mapping, Optional

from .normalize import coerce_str
from .types import Ending, EndingKind

_FAVORABLE_ALIASES = {"he", "happy", "good", "favorable", "favourable"}


def parse_ending_kind(raw: object) -> EndingKind:
    """Map the wire value (``HE``/``BE``) to an ``EndingKind``.

    Unrecognized values resolve to an unfavorable ending.
    """
    text = coerce_str(raw).lower()
    if text in _FAVORABLE_ALIASES:
        return EndingKind.FAVORABLE
    return EndingKind.UNFAVORABLE


def ending_wire_value(kind: EndingKind) -> str:
    return "HE" if kind == EndingKind.FAVORABLE else "BE"


def resolve_ending(
    args: Mapping[str, Any],
    *,
    image: Optional[str],
    fallback_image: str,
) -> Ending:
    return Ending(
        kind=parse_ending_kind(args.get("type")),
        title=coerce_str(args.get("title")),
        description=coerce_str(args.get("description")),
        image=image or fallback_image,
    )
