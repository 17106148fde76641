from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from companion_engine.core.types import PersonaProfile, SessionState, VisualState
from companion_engine.persistence.sqlalchemy.db import build_engine, build_session_factory, create_schema, drop_schema
from companion_engine.persistence.sqlalchemy.uow import SQLAlchemyUnitOfWork
from companion_engine.persistence.store import SessionStore

BASE_TIME = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


class StepClock:
    """Advances one second per call so saves order deterministically."""

    def __init__(self, start: datetime = BASE_TIME):
        self.now = start

    def __call__(self) -> datetime:
        current = self.now
        self.now = self.now + timedelta(seconds=1)
        return current


@pytest.fixture()
def session_factory():
    engine = build_engine("sqlite+pysqlite:///:memory:")
    create_schema(engine)
    yield build_session_factory(engine)
    drop_schema(engine)
    engine.dispose()


@pytest.fixture()
def uow_factory(session_factory):
    def _factory():
        return SQLAlchemyUnitOfWork(session_factory)

    return _factory


@pytest.fixture()
def store(uow_factory):
    return SessionStore(uow_factory)


@pytest.fixture()
def clock():
    return StepClock()


@pytest.fixture()
def persona():
    return PersonaProfile(
        name="Mira",
        race="Human",
        age="24",
        job="Librarian",
        personality="Quiet, curious",
        appearance="long silver hair, green eyes, cardigan",
        backstory="Grew up above a bookshop.",
        secret="Writes anonymous poetry.",
        hidden_secrets=["Lost a sister", "Afraid of thunder"],
        initial_scenario="A rainy afternoon in the city library.",
        initial_memory_title="Rainy Library",
        initial_affection=40,
        opening_message="Oh, are you looking for something?",
    )


@pytest.fixture()
def make_state(persona):
    def _make(session_id: str = "session-1", **overrides) -> SessionState:
        values = dict(
            session_id=session_id,
            persona=persona,
            user_name="Alex",
            created_at=BASE_TIME,
            last_updated=BASE_TIME,
            affection=40,
            persona_image="img://portrait",
            scene_image="img://library",
            current_scene_visual="library interior",
            visual_state=VisualState(
                pose="Standing",
                clothing="Default outfit",
                user_action="Standing nearby",
                atmosphere="Initial meeting",
            ),
        )
        values.update(overrides)
        return SessionState(**values)

    return _make
