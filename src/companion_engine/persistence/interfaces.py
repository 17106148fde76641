from __future__ import annotations

from datetime import datetime
from typing import Protocol


class SessionRepo(Protocol):
    def get(self, session_id: str): ...
    def upsert(
        self,
        session_id: str,
        *,
        persona_name: str,
        user_name: str,
        affection: int,
        is_ended: bool,
        state_json: str,
        created_at: datetime,
        updated_at: datetime,
    ): ...
    def list_recent(self, limit: int | None = None): ...
    def delete(self, session_id: str) -> bool: ...


class UnitOfWork(Protocol):
    sessions: SessionRepo

    def __enter__(self) -> "UnitOfWork": ...
    def __exit__(self, exc_type, exc, tb) -> None: ...
    def commit(self) -> None: ...
    def rollback(self) -> None: ...
