# app/services/attendance_calculator.py
from __future__ import annotations

import math
from datetime import datetime
from typing import Iterable, Sequence

from app.schemas.attendance import (
    AttendanceStatistics,
    AttendanceStatus,
    AttendanceView,
)
from app.schemas.session import LifecycleState, SessionRead

DEFAULT_MEETING_DURATION_MINUTES = 60


def round_half_up(value: float) -> int:
    """
    Round to the nearest integer with halves going up (2.5 -> 3).

    Python's round() is banker's rounding, which would classify 84.5% as 84.
    """
    return int(math.floor(value + 0.5))


def elapsed_minutes(join_time: datetime, end_time: datetime) -> int:
    """
    Whole minutes between join and end, never negative.
    """
    seconds = (end_time - join_time).total_seconds()
    return max(0, round_half_up(seconds / 60.0))


def session_minutes(session: SessionRead, now: datetime) -> int:
    """
    Duration of a single session: up to leave_time when closed, up to `now`
    while active.
    """
    end = session.leave_time if session.leave_time is not None else now
    return elapsed_minutes(session.join_time, end)


def effective_scheduled_minutes(
    scheduled_duration_minutes: int | None,
    default: int = DEFAULT_MEETING_DURATION_MINUTES,
) -> int:
    if not scheduled_duration_minutes or scheduled_duration_minutes <= 0:
        return default
    return scheduled_duration_minutes


def classify(
    duration_minutes: int,
    scheduled_duration_minutes: int | None,
    threshold: int,
    *,
    is_active: bool,
    default_duration: int = DEFAULT_MEETING_DURATION_MINUTES,
) -> AttendanceView:
    """
    Compute percentage, threshold minutes and status for a duration.

    Rules
    -----
    - percentage = round(duration / scheduled * 100)
    - threshold_minutes = round(scheduled * threshold / 100)
    - active => InProgress; percentage >= threshold => Present; else Absent
    """
    scheduled = effective_scheduled_minutes(scheduled_duration_minutes, default_duration)
    duration = max(0, duration_minutes)

    percentage = round_half_up(duration / scheduled * 100)
    threshold_minutes = round_half_up(scheduled * threshold / 100)
    meets_threshold = percentage >= threshold

    if is_active:
        status = AttendanceStatus.IN_PROGRESS
    elif meets_threshold:
        status = AttendanceStatus.PRESENT
    else:
        status = AttendanceStatus.ABSENT

    return AttendanceView(
        duration_minutes=duration,
        percentage=percentage,
        status=status,
        threshold=threshold,
        threshold_minutes=threshold_minutes,
        meets_threshold=meets_threshold,
    )


def compute_view(
    session: SessionRead,
    scheduled_duration_minutes: int | None,
    threshold: int,
    now: datetime,
    *,
    default_duration: int = DEFAULT_MEETING_DURATION_MINUTES,
) -> AttendanceView:
    """
    Attendance view of one session.
    """
    return classify(
        session_minutes(session, now),
        scheduled_duration_minutes,
        threshold,
        is_active=session.lifecycle_state == LifecycleState.ACTIVE,
        default_duration=default_duration,
    )


def compute_combined_view(
    sessions: Sequence[SessionRead],
    scheduled_duration_minutes: int | None,
    threshold: int,
    now: datetime,
    *,
    default_duration: int = DEFAULT_MEETING_DURATION_MINUTES,
) -> AttendanceView:
    """
    Attendance view summing every presence interval of one identity
    (the 'accumulate' rejoin policy).
    """
    total = sum(session_minutes(s, now) for s in sessions)
    is_active = any(s.lifecycle_state == LifecycleState.ACTIVE for s in sessions)
    return classify(
        total,
        scheduled_duration_minutes,
        threshold,
        is_active=is_active,
        default_duration=default_duration,
    )


def summarize(views: Iterable[AttendanceView]) -> AttendanceStatistics:
    """
    Aggregate counts per status for a meeting.
    """
    views = list(views)
    if not views:
        return AttendanceStatistics()

    present = sum(1 for v in views if v.status == AttendanceStatus.PRESENT)
    absent = sum(1 for v in views if v.status == AttendanceStatus.ABSENT)
    in_progress = sum(1 for v in views if v.status == AttendanceStatus.IN_PROGRESS)

    return AttendanceStatistics(
        total=len(views),
        present=present,
        absent=absent,
        in_progress=in_progress,
        active=in_progress,
        average_percentage=round(sum(v.percentage for v in views) / len(views), 1),
    )
