"""Tests for analytics aggregation over derived sessions."""

import pytest

from factories import at, default_roles, make_event
from roleswitch.domain.analytics import compute_analytics, resolve_role
from roleswitch.domain.sessions import derive_sessions
from roleswitch.schemas.models import DELETED_ROLE_NAME, EventType

pytestmark = pytest.mark.unit


def _sessions():
    return derive_sessions([
        make_event("e1", EventType.START, "writer", 0, session_id="s1"),
        make_event("e2", EventType.SWITCH, "coder", 1800, session_id="s2"),
        make_event("e3", EventType.END, "coder", 3600, session_id="s2"),
        # Next day, a role that has since been deleted.
        make_event("e4", EventType.START, "ghost", 86400, session_id="s3"),
        make_event("e5", EventType.END, "ghost", 86400 + 1200, session_id="s3"),
    ])


def test_totals_and_role_breakdown():
    result = compute_analytics(_sessions(), default_roles(), now=at(100000))

    assert result.total_sessions == 3
    assert result.total_time == 1800 + 1800 + 1200

    by_role = {r.role_id: r for r in result.role_breakdown}
    assert by_role["writer"].total_time == 1800
    assert by_role["writer"].session_count == 1
    assert by_role["reviewer"].session_count == 0
    assert by_role["reviewer"].percentage == 0
    assert by_role["ghost"].role_name == DELETED_ROLE_NAME
    assert round(sum(r.percentage for r in result.role_breakdown), 6) == 100


def test_daily_breakdown_sorted_by_utc_date():
    result = compute_analytics(_sessions(), default_roles(), now=at(100000))

    assert [(d.date, d.session_count, d.total_time) for d in result.daily_breakdown] == [
        ("2025-01-01", 2, 3600),
        ("2025-01-02", 1, 1200),
    ]


def test_open_session_counts_until_now():
    sessions = derive_sessions([make_event("e1", EventType.START, "writer", 0, session_id="s1")])

    result = compute_analytics(sessions, default_roles(), now=at(450))

    assert result.total_time == 450
    assert {r.role_id: r.percentage for r in result.role_breakdown}["writer"] == 100


def test_no_sessions_gives_zeroes():
    result = compute_analytics([], default_roles(), now=at(0))

    assert result.total_sessions == 0
    assert result.total_time == 0
    assert len(result.role_breakdown) == 3
    assert result.daily_breakdown == []


def test_resolve_role_placeholder():
    role = resolve_role(default_roles(), "missing")
    assert role.id == "missing"
    assert role.name == DELETED_ROLE_NAME
    assert resolve_role(default_roles(), "coder").name == "Coder"
