from __future__ import annotations

from typing import Any, AsyncIterator, Protocol, Sequence

from .types import (
    HistoryTurn,
    ImageRequest,
    PersonaContext,
    StreamChunk,
    SuggestionRequest,
    ToolResult,
)


class NarrativeConversation(Protocol):
    """One live exchange with the narrative service.

    Both stream methods yield text fragments interleaved with tool calls; tool
    results are sent back as a continuation of the same exchange.
    """

    def stream_message(self, text: str) -> AsyncIterator[StreamChunk]:
        ...

    def stream_tool_results(self, results: Sequence[ToolResult]) -> AsyncIterator[StreamChunk]:
        ...


class NarrativePort(Protocol):
    def open_conversation(
        self,
        context: PersonaContext,
        history: Sequence[HistoryTurn] | None = None,
    ) -> NarrativeConversation:
        ...

    async def summarize(
        self,
        transcript: str,
        *,
        persona_name: str,
        user_name: str,
    ) -> dict[str, Any] | None:
        ...

    async def suggest_replies(self, request: SuggestionRequest) -> list[str] | None:
        ...

    async def generate_profile(self, preferences: dict[str, Any]) -> dict[str, Any] | None:
        ...


class ImageSynthesisPort(Protocol):
    async def synthesize(self, request: ImageRequest) -> str:
        """Return an image payload (data URL or URL); raise on failure."""
        ...
