from __future__ import annotations

from datetime import datetime

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from .models import SessionRow


class SessionRepo:
    def __init__(self, session: Session):
        self.session = session

    def get(self, session_id: str) -> SessionRow | None:
        return self.session.get(SessionRow, session_id)

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
    ) -> SessionRow:
        row = self.get(session_id)
        if row is None:
            row = SessionRow(id=session_id, created_at=created_at)
            self.session.add(row)
        row.persona_name = persona_name
        row.user_name = user_name
        row.affection = affection
        row.is_ended = is_ended
        row.state_json = state_json
        row.updated_at = updated_at
        self.session.flush()
        return row

    def list_recent(self, limit: int | None = None) -> list[SessionRow]:
        stmt = select(SessionRow).order_by(SessionRow.updated_at.desc(), SessionRow.id.asc())
        if limit is not None:
            stmt = stmt.limit(limit)
        return list(self.session.execute(stmt).scalars().all())

    def delete(self, session_id: str) -> bool:
        result = self.session.execute(delete(SessionRow).where(SessionRow.id == session_id))
        return result.rowcount == 1
