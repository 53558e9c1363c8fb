"""
Server-side clock for attempts.

Remaining time is always computed from the stored start_time and the
effective duration; the client's own timer is advisory only.
"""
import math
from dataclasses import dataclass
from datetime import timedelta

from django.conf import settings
from django.utils import timezone

from .models import AssessmentReset, Attempt


@dataclass(frozen=True)
class TimeStatus:
    status: str
    # None for untimed attempts
    remaining_seconds: int = None

    @property
    def is_timed(self):
        return self.remaining_seconds is not None

    @property
    def needs_auto_submit(self):
        """The one condition that forces an attempt to expire."""
        return (
            self.status == Attempt.STATUS_IN_PROGRESS
            and self.is_timed
            and self.remaining_seconds == 0
        )


def latest_reset(assessment, student_id):
    return AssessmentReset.objects.filter(
        assessment=assessment,
        student_id=student_id
    ).order_by('-reset_time', '-id').first()


def effective_duration(assessment, reset=None):
    """
    A partial reset replaces the nominal duration with a short fixed window.
    Returns a timedelta, or None when the attempt is untimed.
    """
    if reset is not None and reset.reset_type == AssessmentReset.TYPE_PARTIAL:
        return timedelta(minutes=settings.PARTIAL_RESET_MINUTES)
    if not assessment.duration_minutes:
        return None
    return timedelta(minutes=assessment.duration_minutes)


def partial_reset_pending(attempt, reset):
    """
    True while a partial reset waits for the student to come back. The
    short window only starts counting at that re-entry.
    """
    return (
        reset is not None
        and reset.reset_type == AssessmentReset.TYPE_PARTIAL
        and reset.reset_time > attempt.start_time
    )


def attempt_deadline(attempt, reset=None):
    duration = effective_duration(attempt.assessment, reset)
    if duration is None:
        return None
    return attempt.start_time + duration


def remaining_time(attempt, now=None):
    """TimeStatus for an attempt as seen by the server clock."""
    if attempt.is_terminal:
        return TimeStatus(status=attempt.status, remaining_seconds=0)

    reset = latest_reset(attempt.assessment, attempt.student_id)
    if partial_reset_pending(attempt, reset):
        window = effective_duration(attempt.assessment, reset)
        return TimeStatus(
            status=attempt.status,
            remaining_seconds=int(window.total_seconds())
        )

    deadline = attempt_deadline(attempt, reset)
    if deadline is None:
        return TimeStatus(status=attempt.status)

    now = now or timezone.now()
    # Round up so a fraction of a second left never reads as expired
    remaining = max(0, math.ceil((deadline - now).total_seconds()))
    return TimeStatus(status=attempt.status, remaining_seconds=remaining)


def sync_clock(client_timestamp, now=None):
    """
    Echo for client-side clock correction. Never used for authorization.
    Timestamps are Unix seconds.
    """
    now = now or timezone.now()
    server_timestamp = int(now.timestamp())
    return {
        'server_time': server_timestamp,
        'client_time': client_timestamp,
        'offset': server_timestamp - client_timestamp,
        'server_datetime': now.isoformat(),
    }
