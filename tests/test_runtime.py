from __future__ import annotations

import asyncio

import pytest

from companion_engine.core.actions import FAST_FORWARD_COMMAND, UIAction
from companion_engine.core.config import SaveConfig
from companion_engine.core.errors import CompanionEngineError, ImageSynthesisError, SessionNotFoundError
from companion_engine.core.types import (
    SENDER_PERSONA,
    SENDER_SYSTEM,
    SENDER_USER,
    ChatMessage,
    ImageKind,
    StoryMemory,
    StreamChunk,
)
from companion_engine.runtime import CompanionRuntime
from conftest import BASE_TIME
from fakes import ScriptedConversation, StubImages, StubNarrative, call, text


def _runtime(narrative, images, store, clock):
    return CompanionRuntime(
        narrative,
        images,
        store,
        save_config=SaveConfig(debounce_seconds=0.01),
        token_count=lambda value: len(value.split()),
        clock=clock,
    )


def _switch_scene():
    return call(
        "switchScene",
        locationName="Rooftop",
        description="The rooftop garden at dusk.",
        visualPrompt="rooftop garden, dusk",
    )


def test_start_session_builds_opening_state_and_saves(store, clock, persona):
    async def run_test():
        narrative = StubNarrative(suggestions=["Hi!", "Nice weather.", "Books?"])
        images = StubImages()
        runtime = _runtime(narrative, images, store, clock)

        state = await runtime.start_session(persona, "Alex", art_style="Manga")

        portrait, scene = images.requests
        assert portrait.kind == ImageKind.PORTRAIT
        assert scene.kind == ImageKind.SCENE
        assert scene.reference_image == "img://portrait/1"
        assert state.persona_image == "img://portrait/1"
        assert state.scene_image == "img://scene/2"
        assert state.art_style == "Manga"
        assert state.affection == persona.initial_affection
        assert [m.sender for m in state.chat_history] == [SENDER_SYSTEM, SENDER_PERSONA]
        assert state.chat_history[0].text == "[Prologue: Rainy Library]\nA rainy afternoon in the city library."
        assert state.chat_history[0].image == "img://scene/2"
        assert state.chat_history[1].text == persona.opening_message
        assert state.memories[0].title == "Rainy Library"
        assert state.visual_state.clothing == "Default outfit"
        assert state.suggested_replies == ["Hi!", "Nice weather.", "Books?"]
        assert state.context_reset_index == 2
        assert store.get(state.session_id) == state
        context, history = narrative.opened[0]
        assert history is None
        assert context.persona is persona

    asyncio.run(run_test())


def test_start_session_image_failure_saves_nothing(store, clock, persona):
    async def run_test():
        runtime = _runtime(StubNarrative(), StubImages(fail_kinds=[ImageKind.PORTRAIT]), store, clock)

        with pytest.raises(ImageSynthesisError):
            await runtime.start_session(persona, "Alex")

        assert runtime.state is None
        assert store.list() == []

    asyncio.run(run_test())


def test_generate_persona_retries_once():
    async def run_test():
        narrative = StubNarrative(
            profiles=[RuntimeError("overloaded"), {"name": "Rin", "initialAffection": "55", "hiddenSecrets": ["x"]}]
        )
        runtime = _runtime(narrative, StubImages(), None, None)

        profile = await runtime.generate_persona({"gender": "female"})

        assert profile.name == "Rin"
        assert profile.initial_affection == 55
        assert profile.hidden_secrets == ["x"]

        failing = _runtime(StubNarrative(profiles=[None, {"name": ""}]), StubImages(), None, None)
        with pytest.raises(CompanionEngineError):
            await failing.generate_persona({})

    asyncio.run(run_test())


def test_switch_scene_schedules_exactly_one_summary(store, clock, persona):
    async def run_test():
        first = ScriptedConversation([[_switch_scene(), _switch_scene()], [text("Here we are.")]])
        after_reset = ScriptedConversation([[text("Fresh start.")]])
        narrative = StubNarrative([first, after_reset], suggestions=["a", "b", "c"])
        images = StubImages()
        runtime = _runtime(narrative, images, store, clock)
        await runtime.start_session(persona, "Alex")

        outcome = await runtime.send("Let's go to the rooftop")

        assert outcome.status == "ok"
        assert outcome.context_reset is True
        assert runtime.scheduler.pending == 1

        await runtime.drain()

        assert len(narrative.transcripts) == 1
        assert narrative.transcripts[0] == "Alex: Let's go to the rooftop\nMira: Here we are."
        state = runtime.state
        summary = state.memories[-1]
        assert summary.title == "Chapter"
        # The new rooftop background belongs to the next chapter.
        assert summary.image == "img://scene/2"
        assert state.memories[-2].image == "img://scene/4"
        assert state.context_reset_index == len(state.chat_history)
        assert state.suggested_replies == ["a", "b", "c"]

        context, history = narrative.opened[-1]
        assert history is None
        assert "[Chapter]: Things happened." in context.memories_text
        assert context.persona.initial_scenario == "The rooftop garden at dusk."
        assert runtime.conversation is after_reset

        second = await runtime.send("hello again")
        assert second.state.chat_history[-1].text == "Fresh start."
        assert after_reset.messages == ["hello again"]

        saved = store.get(state.session_id)
        assert saved.memories[-1].title == "Chapter"

    asyncio.run(run_test())


def test_summary_image_falls_back_to_prior_background(store, clock, persona):
    async def run_test():
        conversation = ScriptedConversation([[_switch_scene()], [text("Hm, it's dark.")]])
        images = StubImages()
        runtime = _runtime(StubNarrative([conversation]), images, store, clock)
        state = await runtime.start_session(persona, "Alex")
        images.fail_kinds.add(ImageKind.SCENE)

        await runtime.send("Let's go")
        await runtime.drain()

        assert runtime.state.scene_image == state.scene_image
        assert runtime.state.memories[-1].image == state.scene_image

    asyncio.run(run_test())


def test_summary_finishing_mid_turn_is_folded_into_commit(store, clock, persona):
    async def run_test():
        narrative = StubNarrative()
        narrative.summary_gate = asyncio.Event()
        runtime = None

        class HandoffConversation(ScriptedConversation):
            def stream_message(self, value):
                self.messages.append(value)
                if len(self.messages) == 2:
                    return self._handoff()
                return self._next_round()

            async def _handoff(self):
                narrative.summary_gate.set()
                await runtime.scheduler.drain()
                yield StreamChunk(text="Still here.")

        conversation = HandoffConversation([[_switch_scene()], [text("Arrived.")]])
        narrative.conversations = [conversation]
        runtime = _runtime(narrative, StubImages(), store, clock)
        await runtime.start_session(persona, "Alex")

        first = await runtime.send("go")
        reset_index = len(first.state.chat_history)
        second = await runtime.send("and now?")

        assert second.state.chat_history[-1].text == "Still here."
        assert second.state.memories[-1].title == "Chapter"
        assert second.state.context_reset_index == reset_index
        assert runtime.state is second.state
        await runtime.drain()

    asyncio.run(run_test())


def test_send_commits_when_on_patch_raises(store, clock, persona):
    async def run_test():
        conversation = ScriptedConversation([[text("Hello again.")]])
        runtime = _runtime(StubNarrative([conversation]), StubImages(), store, clock)
        await runtime.start_session(persona, "Alex")

        async def boom(message_id, reply):
            raise RuntimeError("ui gone")

        outcome = await runtime.send("hello", on_patch=boom)
        await runtime.drain()

        assert outcome.status == "ok"
        assert runtime.state.chat_history[-1].sender == SENDER_PERSONA
        assert runtime.state.chat_history[-1].text == "Hello again."
        assert store.get(runtime.state.session_id).chat_history[-1].text == "Hello again."

    asyncio.run(run_test())


def test_load_session_seeds_history_and_memories(store, clock, make_state):
    async def run_test():
        saved = make_state(
            "saved-1",
            chat_history=[
                ChatMessage(id="1", sender=SENDER_SYSTEM, text="Prologue", timestamp=BASE_TIME),
                ChatMessage(id="2", sender=SENDER_PERSONA, text="Hello.", timestamp=BASE_TIME),
                ChatMessage(id="3", sender=SENDER_USER, text="", timestamp=BASE_TIME),
            ],
            memories=[StoryMemory(id="m", title="Rain", description="We met.", timestamp=BASE_TIME)],
        )
        store.save(saved)
        narrative = StubNarrative()
        runtime = _runtime(narrative, StubImages(), store, clock)

        state = await runtime.load_session("saved-1")

        assert state == saved
        context, history = narrative.opened[-1]
        assert [(t.role, t.text) for t in history] == [("user", "Prologue"), ("model", "Hello."), ("user", " ")]
        assert context.memories_text == "[Rain]: We met."

        with pytest.raises(SessionNotFoundError):
            await runtime.load_session("missing")

    asyncio.run(run_test())


def test_send_without_session_reports_error(store, clock):
    async def run_test():
        runtime = _runtime(StubNarrative(), StubImages(), store, clock)
        outcome = await runtime.send("hello?")
        assert outcome.status == "error"
        assert outcome.reason == "no_active_session"

    asyncio.run(run_test())


def test_send_action_and_separation_suggestions(store, clock, persona):
    async def run_test():
        conversation = ScriptedConversation(
            [
                [call("updateSeparationStatus", isSeparated=True, narrativeSummary="You head home.")],
                [text("See you.")],
            ]
        )
        narrative = StubNarrative([conversation], suggestions=["a", "b", "c"])
        runtime = _runtime(narrative, StubImages(), store, clock)
        await runtime.start_session(persona, "Alex")

        outcome = await runtime.send_action(UIAction.LEAVE)
        await runtime.drain()

        assert conversation.messages[0].endswith("(step away)")
        assert outcome.state.is_separated is True
        assert outcome.state.chat_history[-2].text == "You head home."
        assert runtime.state.suggested_replies == ["a", "b", FAST_FORWARD_COMMAND]

    asyncio.run(run_test())


def test_return_to_menu_saves_and_clears(store, clock, persona):
    async def run_test():
        conversation = ScriptedConversation([[call("updateAffection", change=25)], [text(":)")]])
        runtime = _runtime(StubNarrative([conversation]), StubImages(), store, clock)
        state = await runtime.start_session(persona, "Alex")
        await runtime.send("you look nice")

        await runtime.return_to_menu()

        assert runtime.state is None
        assert runtime.conversation is None
        assert store.get(state.session_id).affection == 65
        assert [s.session_id for s in runtime.list_sessions()] == [state.session_id]

    asyncio.run(run_test())


def test_delete_active_session(store, clock, persona):
    async def run_test():
        runtime = _runtime(StubNarrative(), StubImages(), store, clock)
        state = await runtime.start_session(persona, "Alex")

        assert await runtime.delete_session(state.session_id) is True
        assert runtime.state is None
        assert store.get(state.session_id) is None

    asyncio.run(run_test())


def test_ending_freezes_session(store, clock, persona):
    async def run_test():
        conversation = ScriptedConversation(
            [[call("triggerEnding", type="HE", title="Spring", description="Together.")]]
        )
        runtime = _runtime(StubNarrative([conversation]), StubImages(), store, clock)
        await runtime.start_session(persona, "Alex")

        ending = await runtime.send("I love you")
        again = await runtime.send("hello?")
        await runtime.drain()

        assert ending.status == "ending"
        assert again.status == "ended"
        assert runtime.scheduler.pending == 0
        assert store.get(runtime.state.session_id).ending.title == "Spring"

    asyncio.run(run_test())


def test_migrate_legacy_uses_configured_path(store, clock, tmp_path):
    path = tmp_path / "legacy.json"
    path.write_text('[{"sessionId": "old-1", "lastUpdated": 1700000000000, "waifu": {"name": "Aki"}}]', encoding="utf-8")

    async def run_test():
        runtime = CompanionRuntime(
            StubNarrative(),
            StubImages(),
            store,
            save_config=SaveConfig(legacy_history_path=str(path)),
            clock=clock,
        )
        assert await runtime.migrate_legacy() == 1
        assert await runtime.migrate_legacy() == 0

    asyncio.run(run_test())
    assert [s.persona.name for s in store.list()] == ["Aki"]
