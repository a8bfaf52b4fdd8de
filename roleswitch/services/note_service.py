"""Free-text notes attached to derived sessions.

Notes live in the blob as ``session_id -> [Note]``; the session itself is
never stored, so adding a note checks the id against a fresh derivation.
"""

import uuid

import structlog

from roleswitch.core.clock import Clock
from roleswitch.core.exceptions import NotFoundError
from roleswitch.db.store import RoleSwitchStore
from roleswitch.schemas.models import Note, PersistedData

logger = structlog.get_logger(__name__)


class NoteService:
    def __init__(self, store: RoleSwitchStore, clock: Clock):
        self.store = store
        self.clock = clock

    async def add_note(self, session_id: str, text: str) -> Note:
        async with self.store.transaction() as data:
            if not any(s.id == session_id for s in self.store.derive_sessions()):
                raise NotFoundError("Session", session_id)
            note = Note(id=str(uuid.uuid4()), text=text, created_at=self.clock.now())
            data.notes.setdefault(session_id, []).append(note)
        logger.info("note_added", session_id=session_id, note_id=note.id)
        return note

    async def update_note(self, note_id: str, text: str) -> Note:
        async with self.store.transaction() as data:
            session_id, index = self._locate(data, note_id)
            note = data.notes[session_id][index].model_copy(update={"text": text})
            data.notes[session_id][index] = note
        logger.info("note_updated", session_id=session_id, note_id=note_id)
        return note

    async def delete_note(self, note_id: str) -> None:
        async with self.store.transaction() as data:
            session_id, index = self._locate(data, note_id)
            del data.notes[session_id][index]
            if not data.notes[session_id]:
                del data.notes[session_id]
        logger.info("note_deleted", session_id=session_id, note_id=note_id)

    @staticmethod
    def _locate(data: PersistedData, note_id: str) -> tuple[str, int]:
        for session_id, notes in data.notes.items():
            for index, note in enumerate(notes):
                if note.id == note_id:
                    return session_id, index
        raise NotFoundError("Note", note_id)
