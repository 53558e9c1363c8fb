import logging
from datetime import timedelta

from django.utils import timezone
from rest_framework import permissions

from .exceptions import AssessmentUnavailable, AttemptAlreadyCompleted
from .models import Assessment, Classroom, Result

logger = logging.getLogger(__name__)


class IsAttemptOwner(permissions.BasePermission):
    """
    Only allow students to touch their own attempts and results.

    This enforces data isolation at the permission layer,
    preventing horizontal privilege escalation attacks.
    """

    def has_object_permission(self, request, view, obj):
        return obj.student_id == request.user.pk


def is_within_date_window(assessment, today=None):
    today = today or timezone.localdate()
    if assessment.date == today:
        return True
    if not assessment.allow_late_submission:
        return False
    earliest = today - timedelta(days=assessment.late_submission_days)
    return earliest <= assessment.date <= today


def verify_assessment_access(assessment, student, today=None):
    """
    Access guard run before every answer write and attempt transition.

    Raises AssessmentUnavailable or AttemptAlreadyCompleted; nothing is
    written by the caller when either is raised.
    """
    enrolled = Classroom.objects.filter(
        assessments=assessment,
        students=student
    ).exists()
    if not enrolled or assessment.status not in Assessment.AVAILABLE_STATUSES:
        logger.warning(
            "Access denied: assessment_id=%s student_id=%s enrolled=%s status=%s",
            assessment.pk, student.pk, enrolled, assessment.status
        )
        raise AssessmentUnavailable()

    if not is_within_date_window(assessment, today):
        logger.warning(
            "Access denied outside date window: assessment_id=%s student_id=%s date=%s",
            assessment.pk, student.pk, assessment.date
        )
        raise AssessmentUnavailable('Assessment is not available today.')

    if Result.objects.filter(
        assessment=assessment,
        student=student,
        status=Result.STATUS_COMPLETED
    ).exists():
        logger.info(
            "Rejected write on completed result: assessment_id=%s student_id=%s",
            assessment.pk, student.pk
        )
        raise AttemptAlreadyCompleted()
