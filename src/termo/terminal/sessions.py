"""Durable non-interactive shell sessions (name, owner, working directory)."""

from __future__ import annotations

import logging
from pathlib import Path

from termo.storage import database
from termo.storage.models import Session
from termo.terminal.sanitizer import validate_session_name

logger = logging.getLogger(__name__)

DEFAULT_SESSION = "default"


class SessionManager:
    """Keeps live Session objects in memory and mirrors them to SQLite."""

    def __init__(self, default_cwd: str = "~", persist: bool = True) -> None:
        self.default_cwd = str(Path(default_cwd).expanduser())
        self.persist = persist
        self._sessions: dict[tuple[int, str], Session] = {}

    async def create(self, owner_id: int, name: str, cwd: str | None = None) -> Session:
        """Create a session. Raises InputRejected for bad names, ValueError for duplicates."""
        validate_session_name(name)
        key = (owner_id, name)
        if key in self._sessions:
            raise ValueError(f"Session '{name}' already exists")
        session = Session(name=name, owner_id=owner_id, working_directory=cwd or self.default_cwd)
        self._sessions[key] = session
        if self.persist:
            await database.save_session(session)
        return session

    async def get(self, owner_id: int, name: str) -> Session | None:
        """Return the live session, restoring it from the store if needed."""
        session = self._sessions.get((owner_id, name))
        if session is None and self.persist:
            session = await database.load_session(owner_id, name)
            if session is not None:
                self._sessions[(owner_id, name)] = session
        return session

    async def get_or_create(self, owner_id: int, name: str = DEFAULT_SESSION) -> Session:
        session = await self.get(owner_id, name)
        if session is None:
            session = await self.create(owner_id, name)
        return session

    async def list(self, owner_id: int) -> list[Session]:
        """Live sessions plus stored ones not yet restored, sorted by name."""
        if self.persist:
            for stored in await database.list_sessions(owner_id):
                self._sessions.setdefault((owner_id, stored.name), stored)
        return [s for (owner, _), s in sorted(self._sessions.items()) if owner == owner_id]

    async def update_cwd(self, session: Session, cwd: str) -> None:
        session.working_directory = cwd
        if self.persist:
            await database.save_session(session)

    async def close(self, owner_id: int, name: str) -> bool:
        removed = self._sessions.pop((owner_id, name), None) is not None
        if self.persist:
            removed = await database.delete_session(owner_id, name) or removed
        return removed
