"""Role session state machine: Idle -> Active -> Transitioning -> Active -> Idle.

Every transition appends to the event log and rewrites the state record in
one store transaction. The switch countdown runs on the injected scheduler,
so tests drive it with ``ManualScheduler.advance()``.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta

import structlog

from roleswitch.core.clock import Clock
from roleswitch.core.exceptions import LockViolationError, ValidationFailureError
from roleswitch.core.scheduler import ScheduledTask, Scheduler
from roleswitch.db.store import RoleSwitchStore
from roleswitch.domain.analytics import resolve_role
from roleswitch.domain.sessions import elapsed_seconds, is_locked, remaining_lock_seconds
from roleswitch.schemas.api import CurrentSession, StatusData, TransitionData
from roleswitch.schemas.models import (
    Event,
    EventMeta,
    EventType,
    PersistedData,
    RoleSwitchState,
)

logger = structlog.get_logger(__name__)


@dataclass
class PendingTransition:
    """A switch waiting for its countdown. Lives in memory only."""

    session_id: str
    from_role_id: str
    to_role_id: str
    transition_seconds: int
    commits_at: datetime
    handle: ScheduledTask | None = None

    def as_data(self) -> TransitionData:
        return TransitionData(
            from_role_id=self.from_role_id,
            to_role_id=self.to_role_id,
            transition_seconds=self.transition_seconds,
            commits_at=self.commits_at,
        )


def _new_id() -> str:
    return str(uuid.uuid4())


class RoleSessionStateMachine:
    """Owns the active session and the pending switch for one device."""

    def __init__(self, store: RoleSwitchStore, clock: Clock, scheduler: Scheduler):
        self.store = store
        self.clock = clock
        self.scheduler = scheduler
        self._pending: PendingTransition | None = None

    @property
    def pending(self) -> PendingTransition | None:
        return self._pending

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def status(self) -> StatusData:
        state = self.store.state
        now = self.clock.now()
        locked = is_locked(state, now)

        current_role = None
        current_session = None
        if state.active_session_id and state.active_role_id and state.active_start_at:
            current_role = resolve_role(self.store.data.roles, state.active_role_id)
            current_session = CurrentSession(
                id=state.active_session_id,
                role_id=state.active_role_id,
                start_at=state.active_start_at,
                duration=int(max(0.0, elapsed_seconds(state.active_start_at, now))),
            )

        return StatusData(
            is_active=current_session is not None,
            current_role=current_role,
            current_session=current_session,
            is_locked=locked,
            lock_time_remaining=remaining_lock_seconds(state, now) if locked else None,
            in_transition=self._pending is not None,
            transition_target_role_id=self._pending.to_role_id if self._pending else None,
        )

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def start(self, role_id: str) -> RoleSwitchState:
        """Begin a session for ``role_id``.

        An open session is force-ended first regardless of the lock, and a
        pending switch is cancelled.
        """
        async with self.store.transaction() as data:
            role = self.store.get_role(role_id)
            now = self.clock.now()
            self.force_end(data, now, reason="restarted")

            session_id = _new_id()
            self.store.append_event(
                Event(
                    id=_new_id(),
                    type=EventType.START,
                    role_id=role.id,
                    at=now,
                    meta=EventMeta(session_id=session_id),
                )
            )
            data.state = RoleSwitchState(
                active_role_id=role.id,
                active_session_id=session_id,
                active_start_at=now,
                lock_until=now + timedelta(seconds=data.settings.min_session_seconds),
            )

        logger.info("session_started", role_id=role.id, session_id=session_id)
        return data.state

    async def request_switch(self, role_id: str) -> TransitionData:
        """Ask to move the active session to another role.

        Raises LockViolationError inside the lock window. With a zero
        transition delay the switch commits immediately; otherwise the state
        enters Transitioning and the countdown is scheduled.
        """
        async with self.store.transaction() as data:
            target = self.store.get_role(role_id)
            state = data.state
            if state.active_session_id is None or state.active_role_id is None:
                raise ValidationFailureError("No active session to switch from")
            if self._pending is not None:
                raise ValidationFailureError("A role switch is already in progress")
            if state.active_role_id == target.id:
                raise ValidationFailureError("Role is already active")

            now = self.clock.now()
            if is_locked(state, now):
                raise LockViolationError(remaining_lock_seconds(state, now))

            seconds = data.settings.transition_seconds
            pending = PendingTransition(
                session_id=state.active_session_id,
                from_role_id=state.active_role_id,
                to_role_id=target.id,
                transition_seconds=seconds,
                commits_at=now + timedelta(seconds=max(seconds, 0)),
            )

            if seconds <= 0:
                self._commit_switch(data, pending, now)
                return pending.as_data()

            data.state = state.model_copy(update={"in_transition": True})
            pending.handle = self.scheduler.call_later(
                seconds, self._on_countdown_elapsed, name=f"transition:{target.id}"
            )
            self._pending = pending

        logger.info(
            "switch_requested",
            from_role_id=pending.from_role_id,
            to_role_id=pending.to_role_id,
            transition_seconds=seconds,
        )
        return pending.as_data()

    async def cancel_transition(self) -> RoleSwitchState:
        """Abort the pending switch; the original session carries on."""
        async with self.store.transaction() as data:
            if self._pending is None:
                raise ValidationFailureError("No role switch in progress")
            self._cancel_pending(data, self.clock.now(), reason=None)
        return data.state

    async def end(self) -> Event:
        """Close the active session. Rejected while the lock holds."""
        async with self.store.transaction() as data:
            state = data.state
            if state.active_session_id is None:
                raise ValidationFailureError("No active session to end")
            now = self.clock.now()
            if is_locked(state, now):
                raise LockViolationError(remaining_lock_seconds(state, now))
            event = self.force_end(data, now, reason=None)
        return event

    def force_end(self, data: PersistedData, now: datetime, reason: str | None) -> Event | None:
        """Close whatever is open, ignoring the lock.

        Caller must hold ``store.transaction()``. Returns the ``end`` event,
        or None when the device was already idle.
        """
        if self._pending is not None:
            self._cancel_pending(data, now, reason=reason or "session_ended")

        state = data.state
        if state.active_session_id is None or state.active_role_id is None:
            data.state = RoleSwitchState()
            return None

        duration = None
        if state.active_start_at is not None:
            duration = round(elapsed_seconds(state.active_start_at, now), 3)

        event = self.store.append_event(
            Event(
                id=_new_id(),
                type=EventType.END,
                role_id=state.active_role_id,
                at=now,
                meta=EventMeta(session_id=state.active_session_id, duration=duration, reason=reason),
            )
        )
        data.state = RoleSwitchState()
        logger.info(
            "session_ended",
            role_id=event.role_id,
            session_id=event.meta.session_id,
            duration=duration,
            reason=reason,
        )
        return event

    def on_state_replaced(self, data: PersistedData, now: datetime) -> None:
        """Drop a pending switch whose session a sync merge just replaced.

        Caller must hold ``store.transaction()``.
        """
        if self._pending is not None and self._pending.session_id != data.state.active_session_id:
            self._cancel_pending(data, now, reason="state_replaced")

    async def recover(self) -> None:
        """Clear an ``inTransition`` flag left behind by a previous process.

        Countdowns do not survive a restart, so the session stays with the
        role it had before the interrupted switch.
        """
        if self._pending is not None or not self.store.state.in_transition:
            return
        async with self.store.transaction() as data:
            data.state = data.state.model_copy(update={"in_transition": False})
        logger.warning("stale_transition_cleared", session_id=data.state.active_session_id)

    def shutdown(self) -> None:
        """Drop the countdown timer without recording anything."""
        if self._pending is not None and self._pending.handle is not None:
            self._pending.handle.cancel()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _on_countdown_elapsed(self) -> None:
        pending = self._pending
        if pending is None:
            return
        async with self.store.transaction() as data:
            if self._pending is not pending:
                return
            # The timer has fired; cancelling it now would cancel this task.
            pending.handle = None
            now = self.clock.now()
            if data.state.active_session_id != pending.session_id:
                # A sync merge replaced the session this switch belonged to.
                self._cancel_pending(data, now, reason="state_replaced")
                return
            if self.store.find_role(pending.to_role_id) is None:
                self._cancel_pending(data, now, reason="role_deleted")
                return
            self._commit_switch(data, pending, now)

    def _commit_switch(self, data: PersistedData, pending: PendingTransition, now: datetime) -> None:
        session_id = _new_id()
        self.store.append_event(
            Event(
                id=_new_id(),
                type=EventType.SWITCH,
                role_id=pending.to_role_id,
                at=now,
                meta=EventMeta(
                    session_id=session_id,
                    from_role_id=pending.from_role_id,
                    to_role_id=pending.to_role_id,
                    transition_seconds=pending.transition_seconds,
                ),
            )
        )
        data.state = RoleSwitchState(
            active_role_id=pending.to_role_id,
            active_session_id=session_id,
            active_start_at=now,
            lock_until=now + timedelta(seconds=data.settings.min_session_seconds),
        )
        self._pending = None
        logger.info(
            "switch_committed",
            from_role_id=pending.from_role_id,
            to_role_id=pending.to_role_id,
            session_id=session_id,
        )

    def _cancel_pending(self, data: PersistedData, now: datetime, reason: str | None) -> None:
        pending = self._pending
        if pending is None:
            return
        if pending.handle is not None:
            pending.handle.cancel()
        self._pending = None
        self.store.append_event(
            Event(
                id=_new_id(),
                type=EventType.CANCEL_TRANSITION,
                role_id=pending.to_role_id,
                at=now,
                meta=EventMeta(
                    session_id=pending.session_id,
                    from_role_id=pending.from_role_id,
                    transition_seconds=pending.transition_seconds,
                    reason=reason,
                ),
            )
        )
        data.state = data.state.model_copy(update={"in_transition": False})
        logger.info(
            "transition_cancelled",
            from_role_id=pending.from_role_id,
            to_role_id=pending.to_role_id,
            reason=reason,
        )
