from __future__ import annotations

import json
import math
import uuid
from typing import Any


def parse_json_dict(text: str | None) -> dict[str, Any]:
    if not text:
        return {}
    try:
        data = json.loads(text)
    except Exception:
        return {}
    return data if isinstance(data, dict) else {}


def dump_json(data: Any) -> str:
    return json.dumps(data, ensure_ascii=False, separators=(",", ":"))


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


def clamp(value: int, lower: int, upper: int) -> int:
    return max(lower, min(upper, value))


def coerce_int(value: object, default: int = 0) -> int:
    """Numeric tool arguments arrive as ints, floats or strings; anything else is ``default``."""
    if isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        raw = value.strip()
        if not raw:
            return default
        try:
            value = float(raw)
        except ValueError:
            return default
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            return default
        return int(value)
    return default


def coerce_str(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value.strip()
    return str(value).strip()


def coerce_bool(value: object, default: bool = False) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        raw = value.strip().lower()
        if raw in ("true", "yes", "1", "y"):
            return True
        if raw in ("false", "no", "0", "n", ""):
            return False
    return default


def coerce_str_list(value: object) -> list[str]:
    if not isinstance(value, (list, tuple)):
        return []
    out: list[str] = []
    for entry in value:
        text = coerce_str(entry)
        if text:
            out.append(text)
    return out
