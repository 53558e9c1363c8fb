"""
Attempt lifecycle: in_progress -> completed | expired.

This is the only place that moves an attempt to a terminal status and the
only caller of grading. Every transition runs as one transaction covering
final answer upserts, the status change, grading and the result upsert, so
either all of it lands or the attempt stays in_progress and can be retried.
"""
import logging

from django.conf import settings
from django.db import DatabaseError, transaction
from django.utils import timezone
from rest_framework.exceptions import ValidationError

from .answer_ledger import answer_text_for, upsert_answer
from .exceptions import (
    AttemptAlreadyCompleted,
    AttemptInProgressElsewhere,
    AttemptNotFinished,
    AttemptNotFound,
    InsufficientQuestions,
    NoTimeLimit,
    SubmissionFailed,
)
from .grading_service import GradingService
from .models import Answer, Attempt, Result
from .permissions import verify_assessment_access
from .question_selector import (
    draw_option_orders,
    draw_question_pool,
    draw_question_shuffle,
    select_question_ids,
)
from .time_authority import latest_reset, partial_reset_pending, remaining_time
from .values import QuestionOrder

logger = logging.getLogger(__name__)


def get_attempt(attempt_id, assessment_id, student):
    """Attempt owned by `student` on `assessment_id`, or AttemptNotFound."""
    try:
        return Attempt.objects.select_related('assessment').get(
            pk=attempt_id,
            assessment_id=assessment_id,
            student=student
        )
    except Attempt.DoesNotExist:
        logger.warning(
            "Attempt lookup failed: attempt_id=%s assessment_id=%s student_id=%s",
            attempt_id, assessment_id, student.pk
        )
        raise AttemptNotFound()


class AttemptStateMachine:

    def __init__(self, grading_service=None):
        self.grading_service = grading_service or GradingService()

    def start(self, assessment, student, now=None, today=None, rng=None):
        """
        Returns the student's open attempt, creating it on first entry.

        Pooled assessments get their question subset drawn here, once, as do
        shuffled question and option orders. The first re-entry after a
        partial reset restarts the clock.
        """
        now = now or timezone.now()
        verify_assessment_access(assessment, student, today)

        elsewhere = Attempt.objects.filter(
            student=student,
            status=Attempt.STATUS_IN_PROGRESS
        ).exclude(assessment=assessment).first()
        if elsewhere is not None:
            logger.info(
                "Start blocked by open attempt_id=%s: assessment_id=%s student_id=%s",
                elsewhere.pk, assessment.pk, student.pk
            )
            raise AttemptInProgressElsewhere()

        with transaction.atomic():
            attempt, created = Attempt.objects.select_for_update().get_or_create(
                assessment=assessment,
                student=student,
                defaults={'start_time': now}
            )
            if attempt.is_terminal:
                raise AttemptAlreadyCompleted()

            changed = []
            if assessment.uses_pooling:
                if not QuestionOrder.parse(attempt.question_order):
                    pool = draw_question_pool(assessment, rng)
                    if pool is None:
                        raise InsufficientQuestions()
                    attempt.question_order = pool.serialize()
                    changed.append('question_order')
            elif assessment.shuffle_questions and not attempt.question_order:
                attempt.question_order = draw_question_shuffle(assessment, rng).serialize()
                changed.append('question_order')

            if assessment.shuffle_options and not attempt.option_orders:
                attempt.option_orders = draw_option_orders(
                    select_question_ids(assessment, attempt), rng
                ).serialize()
                changed.append('option_orders')

            if not created and partial_reset_pending(attempt, latest_reset(assessment, student.pk)):
                attempt.start_time = now
                changed.append('start_time')
                logger.info(
                    "Timer restarted after partial reset: assessment_id=%s attempt_id=%s student_id=%s",
                    assessment.pk, attempt.pk, student.pk
                )

            if changed:
                attempt.save(update_fields=changed)

        if created:
            logger.info(
                "Attempt started: assessment_id=%s attempt_id=%s student_id=%s",
                assessment.pk, attempt.pk, student.pk
            )
        attempt.assessment = assessment
        return attempt

    def submit(self, attempt, answers=None, now=None, today=None):
        """
        Student-driven submission, optionally carrying final answers as
        {question_id: value}. Returns the Result.
        """
        assessment = attempt.assessment
        verify_assessment_access(assessment, attempt.student, today)
        final_answers = self._resolve_answers(assessment, answers or {})

        result = self._commit(
            attempt,
            Attempt.STATUS_COMPLETED,
            final_answers=final_answers,
            now=now
        )
        logger.info(
            "Assessment submitted: assessment_id=%s attempt_id=%s student_id=%s score=%s",
            assessment.pk, attempt.pk, attempt.student_id, result.score
        )
        return result

    def force_expire(self, attempt, now=None, today=None):
        """Time-out submission. Accepts no new answers. Returns the Result."""
        verify_assessment_access(attempt.assessment, attempt.student, today)
        result = self._commit(
            attempt,
            Attempt.STATUS_EXPIRED,
            now=now,
            require_timer=True
        )
        logger.info(
            "Assessment auto-submitted due to time expiration: assessment_id=%s attempt_id=%s student_id=%s score=%s",
            attempt.assessment_id, attempt.pk, attempt.student_id, result.score
        )
        return result

    def check_time(self, attempt, now=None, today=None):
        """
        Poll handler. Reports remaining time and expires the attempt when the
        server clock says time is up.
        """
        time_status = remaining_time(attempt, now)
        payload = {
            'remaining_seconds': time_status.remaining_seconds,
            'status': attempt.status,
            'answers_count': Answer.objects.filter(
                assessment_id=attempt.assessment_id,
                student_id=attempt.student_id
            ).count(),
            'warning': False,
            'auto_submitted': False,
        }

        if attempt.is_terminal:
            payload['score'] = self._stored_score(attempt)
            return payload

        if not time_status.needs_auto_submit:
            payload['warning'] = (
                time_status.is_timed
                and time_status.remaining_seconds <= settings.TIME_WARNING_SECONDS
            )
            return payload

        try:
            result = self.force_expire(attempt, now=now, today=today)
        except AttemptAlreadyCompleted:
            # A concurrent poll or submit got there first
            attempt.refresh_from_db(fields=['status', 'end_time'])
            payload.update(
                remaining_seconds=0,
                status=attempt.status,
                score=self._stored_score(attempt)
            )
            return payload
        except SubmissionFailed as exc:
            payload.update(
                remaining_seconds=0,
                auto_submit_failed=True,
                error_message=str(exc.detail)
            )
            return payload

        payload.update(
            remaining_seconds=0,
            status=attempt.status,
            auto_submitted=True,
            score=result.score
        )
        return payload

    def regrade(self, attempt):
        """Recomputes the Result of a terminal attempt; overwrites, never appends."""
        with transaction.atomic():
            locked = self._lock(attempt)
            if not locked.is_terminal:
                raise AttemptNotFinished()
            outcome = self.grading_service.grade_attempt(locked)
            result = self._record_result(locked, outcome.total)

        logger.info(
            "Re-graded assessment_id=%s attempt_id=%s student_id=%s score=%s",
            attempt.assessment_id, attempt.pk, attempt.student_id, result.score
        )
        return result

    def expire_overdue(self, now=None):
        """
        Sweep for attempts nobody polled after their deadline. Runs without
        the access guard since no student request is involved.

        Returns (expired_count, failed_count).
        """
        now = now or timezone.now()
        expired = failed = 0
        open_attempts = list(Attempt.objects.filter(
            status=Attempt.STATUS_IN_PROGRESS
        ).select_related('assessment'))

        for attempt in open_attempts:
            if not remaining_time(attempt, now).needs_auto_submit:
                continue
            try:
                self._commit(attempt, Attempt.STATUS_EXPIRED, now=now, require_timer=True)
            except AttemptAlreadyCompleted:
                continue
            except SubmissionFailed:
                failed += 1
                continue
            expired += 1
            logger.info(
                "Sweep expired assessment_id=%s attempt_id=%s student_id=%s",
                attempt.assessment_id, attempt.pk, attempt.student_id
            )
        return expired, failed

    def _commit(self, attempt, target_status, final_answers=(), now=None, require_timer=False):
        now = now or timezone.now()
        try:
            with transaction.atomic():
                locked = self._lock(attempt)
                if locked.is_terminal:
                    logger.info(
                        "Rejected %s on terminal attempt: assessment_id=%s attempt_id=%s student_id=%s status=%s",
                        target_status, attempt.assessment_id, attempt.pk,
                        attempt.student_id, locked.status
                    )
                    raise AttemptAlreadyCompleted()

                time_status = remaining_time(locked, now)
                if require_timer and not time_status.is_timed:
                    raise NoTimeLimit()
                if target_status == Attempt.STATUS_EXPIRED and time_status.remaining_seconds:
                    # Client and server clocks disagree; accept but leave a trail
                    logger.warning(
                        "Early auto-submit detected: assessment_id=%s attempt_id=%s student_id=%s remaining=%ss",
                        attempt.assessment_id, attempt.pk, attempt.student_id,
                        time_status.remaining_seconds
                    )

                for question, value in final_answers:
                    upsert_answer(
                        locked.assessment,
                        locked.student,
                        question,
                        answer_text_for(question, value)
                    )

                locked.status = target_status
                locked.end_time = now
                locked.save(update_fields=['status', 'end_time'])

                outcome = self.grading_service.grade_attempt(locked)
                result = self._record_result(locked, outcome.total)
        except DatabaseError:
            logger.exception(
                "Submission transaction rolled back: assessment_id=%s attempt_id=%s student_id=%s",
                attempt.assessment_id, attempt.pk, attempt.student_id
            )
            raise SubmissionFailed()

        attempt.status = locked.status
        attempt.end_time = locked.end_time
        return result

    @staticmethod
    def _lock(attempt):
        locked = Attempt.objects.select_for_update().get(pk=attempt.pk)
        locked.assessment = attempt.assessment
        return locked

    @staticmethod
    def _record_result(attempt, total):
        result, _ = Result.objects.update_or_create(
            assessment=attempt.assessment,
            student_id=attempt.student_id,
            defaults={'score': total, 'status': Result.STATUS_COMPLETED},
        )
        return result

    @staticmethod
    def _resolve_answers(assessment, answers):
        """[(Question, value)] for the submitted answers, validated up front."""
        if not answers:
            return []
        questions = {
            q.pk: q for q in assessment.questions.filter(pk__in=list(answers))
        }
        unknown = [qid for qid in answers if qid not in questions]
        if unknown:
            logger.warning(
                "Submission referenced foreign questions %s on assessment_id=%s",
                unknown, assessment.pk
            )
            raise ValidationError({'answers': 'Invalid question for this assessment.'})
        return [(questions[qid], value) for qid, value in answers.items()]

    @staticmethod
    def _stored_score(attempt):
        return Result.objects.filter(
            assessment_id=attempt.assessment_id,
            student_id=attempt.student_id
        ).values_list('score', flat=True).first()
