from __future__ import annotations

import asyncio
import json
import logging
import os
from datetime import datetime, timezone
from typing import Callable, Optional

from ..core.config import SaveConfig
from ..core.normalize import dump_json, parse_json_dict
from ..core.types import SessionState
from .codec import state_from_dict, state_to_dict
from .interfaces import UnitOfWork


def _db_time(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class SessionStore:
    """Save slots for sessions, one row per session id.

    ``save`` is an upsert, so saving the same state twice leaves one row.
    """

    def __init__(
        self,
        uow_factory: Callable[[], UnitOfWork],
        *,
        logger: logging.Logger | None = None,
    ):
        self._uow_factory = uow_factory
        self._logger = logger or logging.getLogger(__name__)

    def save(self, state: SessionState) -> None:
        payload = dump_json(state_to_dict(state))
        with self._uow_factory() as uow:
            uow.sessions.upsert(
                state.session_id,
                persona_name=state.persona.name,
                user_name=state.user_name,
                affection=state.affection,
                is_ended=state.is_ended,
                state_json=payload,
                created_at=_db_time(state.created_at),
                updated_at=_db_time(state.last_updated),
            )
            uow.commit()

    def get(self, session_id: str) -> Optional[SessionState]:
        with self._uow_factory() as uow:
            row = uow.sessions.get(session_id)
            if row is None:
                return None
            return self._decode(row.id, row.state_json)

    def list(self, limit: int | None = None) -> list[SessionState]:
        """Return saved sessions, most recently updated first."""
        with self._uow_factory() as uow:
            rows = uow.sessions.list_recent(limit)
            return [self._decode(row.id, row.state_json) for row in rows]

    def delete(self, session_id: str) -> bool:
        with self._uow_factory() as uow:
            deleted = uow.sessions.delete(session_id)
            uow.commit()
        return deleted

    def load_legacy_and_migrate(self, path: str) -> int:
        """Import a legacy JSON export (a list of sessions) and remove the file.

        Returns the number of sessions imported. A missing file imports
        nothing; unreadable files are logged and left in place.
        """
        if not os.path.exists(path):
            return 0
        try:
            with open(path, "r", encoding="utf-8") as handle:
                data = json.load(handle)
        except (OSError, ValueError) as exc:
            self._logger.warning("Legacy history at %s could not be read: %s", path, exc)
            return 0

        migrated = 0
        if isinstance(data, list):
            for entry in data:
                if not isinstance(entry, dict):
                    continue
                state = state_from_dict(entry)
                if not state.session_id:
                    self._logger.warning("Skipping legacy session without an id")
                    continue
                try:
                    self.save(state)
                except Exception:
                    self._logger.warning("Legacy session %s failed to migrate", state.session_id, exc_info=True)
                    continue
                migrated += 1

        try:
            os.remove(path)
        except OSError as exc:
            self._logger.warning("Legacy history at %s could not be removed: %s", path, exc)
        self._logger.info("Migrated %s legacy session(s) from %s", migrated, path)
        return migrated

    def _decode(self, session_id: str, state_json: str) -> SessionState:
        state = state_from_dict(parse_json_dict(state_json))
        if not state.session_id:
            state.session_id = session_id
        return state


class DebouncedSaver:
    """Coalesces bursts of saves into one write after a quiet period.

    Each ``schedule`` cancels the pending write and starts a new timer with
    the latest state. Write failures are logged; the in-memory state is
    untouched.
    """

    def __init__(
        self,
        store: SessionStore,
        *,
        config: SaveConfig | None = None,
        logger: logging.Logger | None = None,
    ):
        self._store = store
        self._config = config or SaveConfig()
        self._logger = logger or logging.getLogger(__name__)
        self._task: asyncio.Task | None = None
        self._latest: SessionState | None = None

    @property
    def pending(self) -> bool:
        return self._task is not None and not self._task.done()

    def schedule(self, state: SessionState) -> None:
        self._cancel()
        self._latest = state
        self._task = asyncio.create_task(self._delayed_write(state, self._config.debounce_seconds))

    def save_now(self, state: SessionState) -> bool:
        self._cancel()
        self._latest = None
        return self._write(state)

    async def flush(self) -> None:
        if not self.pending or self._latest is None:
            return
        state = self._latest
        self._cancel()
        self._latest = None
        self._write(state)

    def cancel(self) -> None:
        self._cancel()
        self._latest = None

    def _cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    async def _delayed_write(self, state: SessionState, delay_seconds: float) -> None:
        await asyncio.sleep(max(0.0, delay_seconds))
        self._latest = None
        self._write(state)

    def _write(self, state: SessionState) -> bool:
        try:
            self._store.save(state)
        except Exception as exc:
            self._logger.warning("Saving session %s failed: %s", state.session_id, exc)
            return False
        self._logger.debug("Saved session %s", state.session_id)
        return True
