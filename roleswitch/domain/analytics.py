"""Deterministic analytics over derived sessions.

Pure functions; the caller passes ``now`` for sessions that are still open.
"""

from collections.abc import Sequence
from datetime import datetime

from roleswitch.schemas.api import AnalyticsData, DailyBreakdown, RoleBreakdown
from roleswitch.schemas.models import Role, Session, deleted_role


def resolve_role(roles: Sequence[Role], role_id: str) -> Role:
    """Look up a role, returning the deleted-role placeholder for dangling ids."""
    for role in roles:
        if role.id == role_id:
            return role
    return deleted_role(role_id)


def compute_analytics(
    sessions: Sequence[Session],
    roles: Sequence[Role],
    now: datetime,
) -> AnalyticsData:
    """Aggregate totals, per-role and per-day breakdowns.

    Every known role appears in the role breakdown, even with zero sessions.
    Sessions of deleted roles are reported under a placeholder entry.
    Days are the UTC calendar date of each session's start, sorted ascending.
    Times are seconds.
    """
    by_role: dict[str, RoleBreakdown] = {
        role.id: RoleBreakdown(role_id=role.id, role_name=role.name) for role in roles
    }
    by_day: dict[str, DailyBreakdown] = {}
    total_time = 0.0

    for session in sessions:
        duration = session.duration_seconds(now)
        total_time += duration

        stats = by_role.get(session.role_id)
        if stats is None:
            placeholder = resolve_role(roles, session.role_id)
            stats = RoleBreakdown(role_id=placeholder.id, role_name=placeholder.name)
            by_role[session.role_id] = stats
        stats.session_count += 1
        stats.total_time += duration

        day = session.start_at.date().isoformat()
        daily = by_day.setdefault(day, DailyBreakdown(date=day))
        daily.session_count += 1
        daily.total_time += duration

    if total_time > 0:
        for stats in by_role.values():
            stats.percentage = stats.total_time / total_time * 100

    return AnalyticsData(
        total_sessions=len(sessions),
        total_time=total_time,
        role_breakdown=list(by_role.values()),
        daily_breakdown=sorted(by_day.values(), key=lambda d: d.date),
    )
