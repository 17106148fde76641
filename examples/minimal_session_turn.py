from __future__ import annotations

import asyncio
import logging

from companion_engine import CompanionRuntime, SessionStore
from companion_engine.core.types import PersonaProfile, StreamChunk, ToolCall
from companion_engine.persistence.sqlalchemy import (
    SQLAlchemyUnitOfWork,
    build_engine,
    build_session_factory,
    create_schema,
    drop_schema,
)


class DemoConversation:
    def __init__(self):
        self._rounds = [
            [
                StreamChunk(text="Oh! You came back. "),
                StreamChunk(tool_calls=[ToolCall(name="updateAffection", args={"change": 15})]),
                StreamChunk(
                    tool_calls=[
                        ToolCall(
                            name="switchScene",
                            args={
                                "locationName": "Reading Room",
                                "description": "A quiet corner of the library's reading room.",
                                "visualPrompt": "reading room, warm lamps, rain on windows",
                            },
                        )
                    ]
                ),
            ],
            [StreamChunk(text="Let's sit over here, it's quieter.")],
        ]

    def stream_message(self, text):
        return self._replay()

    def stream_tool_results(self, results):
        for result in results:
            print(f"  tool {result.name}: {result.status} ({result.result})")
        return self._replay()

    async def _replay(self):
        chunks = self._rounds.pop(0) if self._rounds else []
        for chunk in chunks:
            yield chunk


class DemoNarrative:
    def open_conversation(self, context, history=None):
        print(f"  conversation opened (memories: {len(context.memories_text.splitlines())})")
        return DemoConversation()

    async def summarize(self, transcript, *, persona_name, user_name):
        return {"title": "Reading Room", "content": f"{persona_name} led {user_name} somewhere quieter."}

    async def suggest_replies(self, request):
        return ["Lead the way.", "Is something wrong?", "(follow quietly)"]

    async def generate_profile(self, preferences):
        return {"name": "Mira", "appearance": "long silver hair", "initialScenario": "A rainy library."}


class DemoImages:
    async def synthesize(self, request):
        return f"https://images.example/{request.kind.value}.png"


def make_store(engine) -> SessionStore:
    create_schema(engine)
    session_factory = build_session_factory(engine)
    return SessionStore(lambda: SQLAlchemyUnitOfWork(session_factory))


async def main() -> None:
    logging.basicConfig(level=logging.INFO)
    engine = build_engine("sqlite+pysqlite:///:memory:")
    store = make_store(engine)
    runtime = CompanionRuntime(DemoNarrative(), DemoImages(), store, token_count=lambda text: len(text) // 4)

    profile: PersonaProfile = await runtime.generate_persona({"setting": "library"})
    await runtime.start_session(profile, "Alex")

    outcome = await runtime.send("Hi again!", on_patch=lambda message_id, reply: print("  ...", reply))
    print("send status:", outcome.status, "rounds:", outcome.rounds)
    print("affection:", outcome.state.affection)

    await runtime.drain()
    state = runtime.state
    print("memories:", [m.title for m in state.memories])
    print("suggestions:", state.suggested_replies)
    print("saved sessions:", [s.session_id for s in store.list()])

    drop_schema(engine)
    engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
