from __future__ import annotations

from dataclasses import dataclass, field

from .tokens import DEFAULT_TOKENIZER_MODEL_ID


@dataclass(frozen=True)
class EngineConfig:
    max_rounds: int = 5
    affection_min: int = 0
    affection_max: int = 1000
    default_affection: int = 40
    placeholder_text: str = ""
    error_marker: str = "(Connection Error...)"
    fallback_ending_image: str = "https://placehold.co/1024x576/png?text=Ending"
    scene_memory_title: str = "Highlight"
    item_message_prefix: str = "[Item received]"
    default_summary_title: str = "Memory fragment"
    default_summary_content: str = "A blurred memory..."
    summary_max_transcript_tokens: int = 12_000
    tokenizer_model_id: str = DEFAULT_TOKENIZER_MODEL_ID
    suggestion_history_lines: int = 5
    default_suggestions: tuple[str, ...] = (
        "(smiles)",
        "Let's go somewhere else.",
        "What should we do next?",
    )
    max_profile_attempts: int = 2


@dataclass(frozen=True)
class SaveConfig:
    debounce_seconds: float = 1.0
    legacy_history_path: str | None = None


@dataclass(frozen=True)
class ImageSizes:
    portrait: tuple[int, int] = (768, 1024)
    scene: tuple[int, int] = (1024, 576)
    item: tuple[int, int] = (1024, 1024)


@dataclass(frozen=True)
class GradioImageConfig:
    endpoint: str = ""
    timeout_seconds: float = 120.0
    sizes: ImageSizes = field(default_factory=ImageSizes)
