"""Session derivation from the event log.

Pure functions with no external dependencies. Sessions are never stored;
every read folds the event log again.
"""

import math
from collections.abc import Iterable, Mapping
from datetime import datetime

from roleswitch.schemas.models import Event, EventType, Note, RoleSwitchState, Session


def _open(event: Event) -> Session:
    # Fall back to the opening event id so repeated derivations agree on ids.
    return Session(
        id=event.meta.session_id or event.id,
        role_id=event.role_id,
        start_at=event.at,
    )


def derive_sessions(
    events: Iterable[Event],
    start: datetime | None = None,
    end: datetime | None = None,
    notes: Mapping[str, list[Note]] | None = None,
) -> list[Session]:
    """Fold an event sequence into session intervals.

    Args:
        events: Event log in any order; sorted by ``at`` here, ties keep log order
        start: Skip events strictly before this instant
        end: Skip events strictly after this instant
        notes: Optional ``session_id -> notes`` map attached to the output

    Returns:
        Closed sessions in fold order, followed by the open one (``end_at``
        None) if the log ends inside a session.

    The window applies to individual events before the fold, not to the
    resulting intervals: a session that starts before ``start`` is dropped
    even if it ends inside the window, and one that starts inside but closes
    after ``end`` comes back open.

    A ``start`` while a session is open replaces it without recording an end
    for the old one. An ``end`` for a different role than the open session
    is ignored. ``cancelTransition`` never opens or closes anything.
    """
    ordered = sorted(events, key=lambda e: e.at)
    sessions: list[Session] = []
    current: Session | None = None

    for event in ordered:
        if start is not None and event.at < start:
            continue
        if end is not None and event.at > end:
            continue

        if event.type == EventType.START:
            current = _open(event)
        elif event.type == EventType.SWITCH:
            if current is not None:
                sessions.append(current.model_copy(update={"end_at": event.at}))
            current = _open(event)
        elif event.type == EventType.END:
            if current is not None and current.role_id == event.role_id:
                sessions.append(current.model_copy(update={"end_at": event.at}))
                current = None

    if current is not None:
        sessions.append(current)

    if notes:
        sessions = [
            s.model_copy(update={"notes": [n.model_copy() for n in notes.get(s.id, [])]})
            for s in sessions
        ]

    return sessions


def filter_events(
    events: Iterable[Event],
    start: datetime | None = None,
    end: datetime | None = None,
    role_id: str | None = None,
    event_type: EventType | None = None,
) -> list[Event]:
    """Filter the log for listing. Date bounds are inclusive."""
    result = []
    for event in events:
        if start is not None and event.at < start:
            continue
        if end is not None and event.at > end:
            continue
        if role_id is not None and event.role_id != role_id:
            continue
        if event_type is not None and event.type != event_type:
            continue
        result.append(event)
    return result


def is_locked(state: RoleSwitchState, now: datetime) -> bool:
    return state.lock_until is not None and now < state.lock_until


def remaining_lock_seconds(state: RoleSwitchState, now: datetime) -> int:
    """Whole seconds left in the lock window, rounded up.

    Rounding up means a caller never reads 0 while the lock still holds.
    """
    if state.lock_until is None:
        return 0
    remaining = max(0.0, (state.lock_until - now).total_seconds())
    return math.ceil(remaining)


def elapsed_seconds(since: datetime, now: datetime) -> float:
    """Raw elapsed seconds as a float; callers floor it for display."""
    return (now - since).total_seconds()
