from fastapi import APIRouter, Depends

from roleswitch.api.deps import get_notes, require_permission
from roleswitch.api.responses import ok
from roleswitch.schemas.api import AddNoteRequest, UpdateNoteRequest
from roleswitch.schemas.models import Permission
from roleswitch.services.note_service import NoteService

router = APIRouter(dependencies=[Depends(require_permission(Permission.WRITE))])


@router.post("", status_code=201)
async def add_note(request: AddNoteRequest, notes: NoteService = Depends(get_notes)):
    note = await notes.add_note(request.session_id, request.text)
    return ok(note, message="Note added", status_code=201)


@router.put("/{note_id}")
async def update_note(note_id: str, request: UpdateNoteRequest, notes: NoteService = Depends(get_notes)):
    note = await notes.update_note(note_id, request.text)
    return ok(note, message="Note updated")


@router.delete("/{note_id}")
async def delete_note(note_id: str, notes: NoteService = Depends(get_notes)):
    await notes.delete_note(note_id)
    return ok(message="Note deleted")
