"""
Unit tests covering the attempt engine and its API.

Tests On:
- Grading accuracy (MCQ, exact, any_match partial credit)
- Question pooling, shuffling and selection
- Server-side time authority and auto-submit
- Attempt state machine transitions and rollback
- Access guard and answer autosave
- API security (ownership, CSRF, no answer leakage)
"""
import json
import random
from datetime import timedelta
from decimal import Decimal
from io import StringIO

from django.contrib.auth import get_user_model
from django.core.management import call_command
from django.db import DatabaseError
from django.test import TestCase
from django.utils import timezone
from rest_framework import status
from rest_framework.exceptions import ValidationError
from rest_framework.test import APIClient, APITestCase

from .answer_ledger import save_answer
from .attempt_service import AttemptStateMachine
from .exceptions import (
    AssessmentUnavailable,
    AttemptAlreadyCompleted,
    AttemptInProgressElsewhere,
    AttemptNotFinished,
    InsufficientQuestions,
    NoTimeLimit,
    SubmissionFailed,
)
from .grading_service import GradingService, RuleBasedGrader
from .models import (
    Answer,
    Assessment,
    AssessmentReset,
    Attempt,
    Classroom,
    MCQOption,
    Question,
    Result,
)
from .question_selector import draw_question_pool, presentation_order, select_question_ids
from .time_authority import remaining_time, sync_clock
from .values import AcceptableAnswers, OptionOrders, QuestionOrder

User = get_user_model()


class AssessmentFixtureMixin:
    """Builds the enrolled-student / assessment graph the engine expects."""

    def make_student(self, username='student1', classroom=None):
        student = User.objects.create_user(
            username=username,
            email=f'{username}@test.com',
            password='pass12345'
        )
        if classroom is not None:
            classroom.students.add(student)
        return student

    def make_assessment(self, classroom, **kwargs):
        kwargs.setdefault('title', 'Geography Quiz')
        kwargs.setdefault('duration_minutes', 30)
        assessment = Assessment.objects.create(**kwargs)
        assessment.classes.add(classroom)
        return assessment

    def make_mcq(self, assessment, max_score=10):
        question = Question.objects.create(
            assessment=assessment,
            question_text='Which city is the capital of Ghana?',
            question_type=Question.TYPE_MCQ,
            max_score=max_score
        )
        MCQOption.objects.create(question=question, option_text='Kumasi')
        correct = MCQOption.objects.create(question=question, option_text='Accra', is_correct=True)
        return question, correct

    def make_short_answer(self, assessment, correct='Accra', max_score=10, **kwargs):
        return Question.objects.create(
            assessment=assessment,
            question_text='Name the capital.',
            question_type=Question.TYPE_SHORT_ANSWER,
            correct_answer=correct,
            max_score=max_score,
            **kwargs
        )


class GradingServiceTestCase(AssessmentFixtureMixin, TestCase):
    """Test grading algorithms."""

    def setUp(self):
        self.grader = RuleBasedGrader()
        self.classroom = Classroom.objects.create(name='Form 2A')
        self.assessment = self.make_assessment(self.classroom)

    def test_multiple_choice_grading(self):
        """Only the flagged option scores, and it scores exactly max_score."""
        question, correct = self.make_mcq(self.assessment)
        wrong = question.options.exclude(pk=correct.pk).get()

        result = self.grader.grade_answer(question, str(correct.pk))
        self.assertTrue(result['is_correct'])
        self.assertEqual(result['score'], Decimal('10'))

        result = self.grader.grade_answer(question, str(wrong.pk))
        self.assertFalse(result['is_correct'])
        self.assertEqual(result['score'], Decimal('0'))

        # An option id that does not exist on this question
        result = self.grader.grade_answer(question, '999999')
        self.assertEqual(result['score'], Decimal('0'))

    def test_exact_short_answer_ignores_case_and_whitespace(self):
        question = self.make_short_answer(self.assessment, correct='Paris')

        self.assertEqual(self.grader.grade_answer(question, 'paris')['score'], Decimal('10'))
        self.assertEqual(self.grader.grade_answer(question, '  PARIS \n')['score'], Decimal('10'))
        self.assertEqual(self.grader.grade_answer(question, 'Pari')['score'], Decimal('0'))

    def test_any_match_counts_repeated_answer_once(self):
        """'Paris' twice only consumes one acceptable answer."""
        question = self.make_short_answer(
            self.assessment,
            correct=json.dumps(['paris', 'london', 'rome']),
            answer_mode=Question.MODE_ANY_MATCH,
            answer_count=3
        )

        result = self.grader.grade_answer(question, 'Paris\nParis\nLondon')
        self.assertFalse(result['is_correct'])
        # (10 / 3) * 2
        self.assertEqual(result['score'], Decimal('6.67'))

    def test_any_match_caps_credit_at_required_count(self):
        question = self.make_short_answer(
            self.assessment,
            correct=json.dumps(['Paris', 'London', 'Rome']),
            answer_mode=Question.MODE_ANY_MATCH,
            answer_count=2
        )

        result = self.grader.grade_answer(question, 'rome\n\n  LONDON \nparis\nLisbon')
        self.assertTrue(result['is_correct'])
        self.assertEqual(result['score'], Decimal('10'))

    def test_any_match_with_unreadable_answer_set_scores_zero(self):
        question = self.make_short_answer(
            self.assessment,
            correct='Paris, London',
            answer_mode=Question.MODE_ANY_MATCH,
            answer_count=2
        )

        self.assertEqual(self.grader.grade_answer(question, 'Paris')['score'], Decimal('0'))

    def test_blank_answers_score_zero(self):
        question = self.make_short_answer(self.assessment)

        for answer in (None, '', '   '):
            self.assertEqual(self.grader.grade_answer(question, answer)['score'], Decimal('0'))

    def test_grade_is_deterministic(self):
        mcq, correct = self.make_mcq(self.assessment)
        short = self.make_short_answer(self.assessment)
        questions = [mcq, short]
        answers = {mcq.pk: str(correct.pk), short.pk: 'accra'}

        service = GradingService()
        first = service.grade(questions, answers)
        second = service.grade(questions, answers)

        self.assertEqual(first.total, Decimal('20'))
        self.assertEqual(first.total, second.total)
        self.assertEqual(first.scores, second.scores)
        self.assertEqual(first.max_possible, 20)


class ValueObjectTestCase(TestCase):

    def test_question_order_parses_integer_list(self):
        order = QuestionOrder.parse('[3, 1, "7"]')
        self.assertEqual(order.question_ids, (3, 1, 7))
        self.assertEqual(QuestionOrder.parse(order.serialize()), order)

    def test_question_order_fails_closed(self):
        for raw in (None, '', 'not json', '{"a": 1}', '[1, "x"]', '[true]'):
            self.assertFalse(QuestionOrder.parse(raw), raw)

    def test_acceptable_answers_are_lowercased(self):
        answers = AcceptableAnswers.parse('["Paris", " LONDON "]')
        self.assertEqual(answers.answers, ('paris', 'london'))
        self.assertEqual(len(AcceptableAnswers.parse('"Paris"')), 0)

    def test_option_orders_arrange_and_fail_closed(self):
        orders = OptionOrders.parse('{"5": [9, 7, 8]}')
        options = [MCQOption(pk=pk) for pk in (7, 8, 9, 10)]

        self.assertEqual([o.pk for o in orders.arrange(5, options)], [9, 7, 8, 10])
        # No stored order for the question keeps creation order
        self.assertEqual([o.pk for o in orders.arrange(6, options)], [7, 8, 9, 10])
        for raw in (None, 'not json', '[1, 2]', '{"5": "x"}', '{"a": [1]}'):
            self.assertFalse(OptionOrders.parse(raw), raw)


class QuestionSelectorTestCase(AssessmentFixtureMixin, TestCase):

    def setUp(self):
        self.classroom = Classroom.objects.create(name='Form 2A')
        self.student = self.make_student(classroom=self.classroom)

    def test_non_pooled_selects_all_in_creation_order(self):
        assessment = self.make_assessment(self.classroom)
        first = self.make_short_answer(assessment)
        second = self.make_short_answer(assessment)
        attempt = Attempt.objects.create(assessment=assessment, student=self.student)

        self.assertEqual(select_question_ids(assessment, attempt), [first.pk, second.pk])

    def test_pooled_uses_stored_order(self):
        assessment = self.make_assessment(
            self.classroom, use_question_limit=True, questions_to_answer=2
        )
        questions = [self.make_short_answer(assessment) for _ in range(3)]
        stored = [questions[2].pk, questions[0].pk]
        attempt = Attempt.objects.create(
            assessment=assessment,
            student=self.student,
            question_order=json.dumps(stored)
        )

        self.assertEqual(select_question_ids(assessment, attempt), stored)
        # Stable across calls
        self.assertEqual(select_question_ids(assessment, attempt), stored)

    def test_pooled_without_order_selects_nothing(self):
        assessment = self.make_assessment(
            self.classroom, use_question_limit=True, questions_to_answer=2
        )
        self.make_short_answer(assessment)
        attempt = Attempt.objects.create(
            assessment=assessment, student=self.student, question_order='garbage'
        )

        self.assertEqual(select_question_ids(assessment, attempt), [])

    def test_draw_question_pool(self):
        assessment = self.make_assessment(
            self.classroom, use_question_limit=True, questions_to_answer=3
        )
        ids = {self.make_short_answer(assessment).pk for _ in range(5)}

        pool = draw_question_pool(assessment, rng=random.Random(7))
        self.assertEqual(len(pool), 3)
        self.assertEqual(len(set(pool)), 3)
        self.assertTrue(set(pool) <= ids)

        assessment.questions_to_answer = 6
        self.assertIsNone(draw_question_pool(assessment))


class TimeAuthorityTestCase(AssessmentFixtureMixin, TestCase):

    def setUp(self):
        self.classroom = Classroom.objects.create(name='Form 2A')
        self.student = self.make_student(classroom=self.classroom)
        self.now = timezone.now()

    def _attempt(self, minutes_ago, **assessment_kwargs):
        assessment = self.make_assessment(self.classroom, **assessment_kwargs)
        return Attempt.objects.create(
            assessment=assessment,
            student=self.student,
            start_time=self.now - timedelta(minutes=minutes_ago)
        )

    def test_remaining_time_counts_down(self):
        attempt = self._attempt(10, duration_minutes=30)

        time_status = remaining_time(attempt, now=self.now)
        self.assertEqual(time_status.remaining_seconds, 20 * 60)
        self.assertFalse(time_status.needs_auto_submit)

    def test_time_up_triggers_auto_submit(self):
        attempt = self._attempt(61, duration_minutes=60)

        time_status = remaining_time(attempt, now=self.now)
        self.assertEqual(time_status.remaining_seconds, 0)
        self.assertTrue(time_status.needs_auto_submit)

    def test_untimed_attempt_never_expires(self):
        attempt = self._attempt(600, duration_minutes=None)

        time_status = remaining_time(attempt, now=self.now)
        self.assertIsNone(time_status.remaining_seconds)
        self.assertFalse(time_status.needs_auto_submit)

    def test_partial_reset_forces_five_minute_window(self):
        # Reset issued, then the student re-entered two minutes ago
        attempt = self._attempt(2, duration_minutes=60)
        AssessmentReset.objects.create(
            assessment=attempt.assessment,
            student=self.student,
            reset_type=AssessmentReset.TYPE_PARTIAL,
            reset_time=self.now - timedelta(minutes=10)
        )

        self.assertEqual(remaining_time(attempt, now=self.now).remaining_seconds, 3 * 60)

        attempt.start_time = self.now - timedelta(minutes=6)
        self.assertTrue(remaining_time(attempt, now=self.now).needs_auto_submit)

    def test_partial_reset_holds_clock_until_reentry(self):
        attempt = self._attempt(40, duration_minutes=60)
        AssessmentReset.objects.create(
            assessment=attempt.assessment,
            student=self.student,
            reset_type=AssessmentReset.TYPE_PARTIAL,
            reset_time=self.now - timedelta(minutes=1)
        )

        time_status = remaining_time(attempt, now=self.now + timedelta(hours=3))
        self.assertEqual(time_status.remaining_seconds, 5 * 60)
        self.assertFalse(time_status.needs_auto_submit)

        # The sweep leaves it alone too
        expired, failed = AttemptStateMachine().expire_overdue(now=self.now + timedelta(hours=3))
        self.assertEqual((expired, failed), (0, 0))
        attempt.refresh_from_db()
        self.assertEqual(attempt.status, Attempt.STATUS_IN_PROGRESS)

    def test_latest_reset_wins(self):
        attempt = self._attempt(2, duration_minutes=60)
        AssessmentReset.objects.create(
            assessment=attempt.assessment,
            student=self.student,
            reset_type=AssessmentReset.TYPE_PARTIAL,
            reset_time=self.now - timedelta(hours=2)
        )
        AssessmentReset.objects.create(
            assessment=attempt.assessment,
            student=self.student,
            reset_type=AssessmentReset.TYPE_FULL,
            reset_time=self.now - timedelta(hours=1)
        )

        self.assertEqual(remaining_time(attempt, now=self.now).remaining_seconds, 58 * 60)

    def test_terminal_attempt_reports_zero(self):
        attempt = self._attempt(1, duration_minutes=60)
        attempt.status = Attempt.STATUS_COMPLETED

        time_status = remaining_time(attempt, now=self.now)
        self.assertEqual(time_status.remaining_seconds, 0)
        self.assertFalse(time_status.needs_auto_submit)

    def test_sync_clock_echoes_offset(self):
        server_ts = int(self.now.timestamp())

        data = sync_clock(server_ts - 42, now=self.now)
        self.assertEqual(data['server_time'], server_ts)
        self.assertEqual(data['offset'], 42)


class AttemptStateMachineTestCase(AssessmentFixtureMixin, TestCase):
    """Scenario: 30 minute quiz, one MCQ and one exact short answer."""

    def setUp(self):
        self.classroom = Classroom.objects.create(name='Form 2A')
        self.student = self.make_student(classroom=self.classroom)
        self.assessment = self.make_assessment(self.classroom, duration_minutes=30)
        self.mcq, self.correct_option = self.make_mcq(self.assessment)
        self.short = self.make_short_answer(self.assessment, correct='Accra')
        self.attempt = Attempt.objects.create(assessment=self.assessment, student=self.student)
        self.machine = AttemptStateMachine()

    def _backdate(self, minutes):
        self.attempt.start_time = timezone.now() - timedelta(minutes=minutes)
        self.attempt.save(update_fields=['start_time'])

    def test_submit_grades_saved_answers(self):
        save_answer(self.assessment, self.student, self.mcq.pk, str(self.correct_option.pk))
        save_answer(self.assessment, self.student, self.short.pk, 'accra ')

        result = self.machine.submit(self.attempt)

        self.assertEqual(result.score, Decimal('20'))
        self.assertEqual(result.status, Result.STATUS_COMPLETED)
        self.attempt.refresh_from_db()
        self.assertEqual(self.attempt.status, Attempt.STATUS_COMPLETED)
        self.assertIsNotNone(self.attempt.end_time)
        self.assertEqual(
            sorted(Answer.objects.values_list('score', flat=True)),
            [Decimal('10'), Decimal('10')]
        )

    def test_submit_upserts_final_answers(self):
        save_answer(self.assessment, self.student, self.short.pk, 'Kumasi')

        result = self.machine.submit(self.attempt, answers={
            self.mcq.pk: self.correct_option.pk,
            self.short.pk: 'Accra',
        })

        self.assertEqual(result.score, Decimal('20'))
        self.assertEqual(Answer.objects.count(), 2)
        self.assertEqual(Answer.objects.get(question=self.short).answer_text, 'Accra')

    def test_submit_rejects_foreign_question(self):
        other = self.make_assessment(self.classroom, title='Other')
        foreign = self.make_short_answer(other)

        with self.assertRaises(ValidationError):
            self.machine.submit(self.attempt, answers={foreign.pk: 'x'})

        self.attempt.refresh_from_db()
        self.assertEqual(self.attempt.status, Attempt.STATUS_IN_PROGRESS)

    def test_second_submit_is_rejected(self):
        self.machine.submit(self.attempt)

        with self.assertRaises(AttemptAlreadyCompleted):
            self.machine.submit(self.attempt)
        self.assertEqual(Result.objects.count(), 1)

    def test_storage_failure_rolls_back_everything(self):
        class BrokenGradingService(GradingService):
            def grade_attempt(self, attempt):
                raise DatabaseError('disk full')

        machine = AttemptStateMachine(grading_service=BrokenGradingService())

        with self.assertRaises(SubmissionFailed):
            machine.submit(self.attempt, answers={self.short.pk: 'Accra'})

        self.attempt.refresh_from_db()
        self.assertEqual(self.attempt.status, Attempt.STATUS_IN_PROGRESS)
        self.assertIsNone(self.attempt.end_time)
        self.assertFalse(Answer.objects.exists())
        self.assertFalse(Result.objects.exists())

        # Retry succeeds once storage recovers
        result = self.machine.submit(self.attempt, answers={self.short.pk: 'Accra'})
        self.assertEqual(result.score, Decimal('10'))

    def test_check_time_expires_exactly_once(self):
        self._backdate(61)
        save_answer(self.assessment, self.student, self.short.pk, 'Accra')

        first = self.machine.check_time(self.attempt)
        self.assertTrue(first['auto_submitted'])
        self.assertEqual(first['status'], Attempt.STATUS_EXPIRED)
        self.assertEqual(first['remaining_seconds'], 0)
        self.assertEqual(first['score'], Decimal('10'))

        again = Attempt.objects.get(pk=self.attempt.pk)
        second = self.machine.check_time(again)
        self.assertFalse(second['auto_submitted'])
        self.assertEqual(second['status'], Attempt.STATUS_EXPIRED)
        self.assertEqual(second['remaining_seconds'], 0)
        self.assertEqual(second['score'], Decimal('10'))
        self.assertEqual(Result.objects.count(), 1)

    def test_check_time_while_running(self):
        self._backdate(10)

        payload = self.machine.check_time(self.attempt)
        self.assertEqual(payload['status'], Attempt.STATUS_IN_PROGRESS)
        self.assertGreater(payload['remaining_seconds'], 19 * 60)
        self.assertFalse(payload['warning'])
        self.assertFalse(Result.objects.exists())

        self._backdate(28)
        self.assertTrue(self.machine.check_time(self.attempt)['warning'])

    def test_resume_after_partial_reset_restarts_clock(self):
        now = timezone.now()
        self._backdate(40)
        self.assessment.duration_minutes = 60
        self.assessment.save()
        AssessmentReset.objects.create(
            assessment=self.assessment,
            student=self.student,
            reset_type=AssessmentReset.TYPE_PARTIAL,
            reset_time=now - timedelta(minutes=1)
        )

        attempt = self.machine.start(self.assessment, self.student, now=now)

        self.assertEqual(attempt.pk, self.attempt.pk)
        self.assertEqual(attempt.start_time, now)
        self.assertEqual(remaining_time(attempt, now=now).remaining_seconds, 5 * 60)

        payload = self.machine.check_time(attempt, now=now + timedelta(minutes=1))
        self.assertFalse(payload['auto_submitted'])
        self.assertEqual(payload['status'], Attempt.STATUS_IN_PROGRESS)
        self.assertEqual(payload['remaining_seconds'], 4 * 60)

        # A second re-entry does not hand out another window
        again = self.machine.start(self.assessment, self.student, now=now + timedelta(minutes=3))
        self.assertEqual(again.start_time, now)
        self.assertEqual(
            remaining_time(again, now=now + timedelta(minutes=3)).remaining_seconds,
            2 * 60
        )

    def test_overdue_poll_outside_date_window_is_left_to_sweep(self):
        self._backdate(45)
        self.assessment.date = timezone.localdate() - timedelta(days=1)
        self.assessment.save()

        with self.assertRaises(AssessmentUnavailable):
            self.machine.check_time(self.attempt)
        self.attempt.refresh_from_db()
        self.assertEqual(self.attempt.status, Attempt.STATUS_IN_PROGRESS)
        self.assertFalse(Result.objects.exists())

        expired, failed = self.machine.expire_overdue()
        self.assertEqual((expired, failed), (1, 0))
        self.attempt.refresh_from_db()
        self.assertEqual(self.attempt.status, Attempt.STATUS_EXPIRED)

    def test_check_time_reports_failed_auto_submit(self):
        class BrokenGradingService(GradingService):
            def grade_attempt(self, attempt):
                raise DatabaseError('lock timeout')

        self._backdate(45)
        payload = AttemptStateMachine(BrokenGradingService()).check_time(self.attempt)

        self.assertTrue(payload['auto_submit_failed'])
        self.assertEqual(payload['remaining_seconds'], 0)
        self.assertEqual(payload['status'], Attempt.STATUS_IN_PROGRESS)
        self.attempt.refresh_from_db()
        self.assertEqual(self.attempt.status, Attempt.STATUS_IN_PROGRESS)

    def test_early_force_expire_is_accepted_and_logged(self):
        self._backdate(5)

        with self.assertLogs('apps.assessments.attempt_service', level='WARNING') as logs:
            result = self.machine.force_expire(self.attempt)

        self.assertTrue(any('Early auto-submit' in line for line in logs.output))
        self.assertEqual(result.status, Result.STATUS_COMPLETED)
        self.attempt.refresh_from_db()
        self.assertEqual(self.attempt.status, Attempt.STATUS_EXPIRED)

    def test_force_expire_requires_time_limit(self):
        self.assessment.duration_minutes = None
        self.assessment.save()

        with self.assertRaises(NoTimeLimit):
            self.machine.force_expire(self.attempt)

    def test_regrade_overwrites_result(self):
        save_answer(self.assessment, self.student, self.short.pk, 'Kumasi')
        self.assertEqual(self.machine.submit(self.attempt).score, Decimal('0'))

        self.short.correct_answer = 'Kumasi'
        self.short.save()
        result = self.machine.regrade(self.attempt)

        self.assertEqual(result.score, Decimal('10'))
        self.assertEqual(Result.objects.count(), 1)
        self.assertEqual(Result.objects.get().score, Decimal('10'))

    def test_regrade_rejects_open_attempt(self):
        with self.assertRaises(AttemptNotFinished):
            self.machine.regrade(self.attempt)

    def test_guard_rejects_unenrolled_student(self):
        outsider = self.make_student('outsider')
        attempt = Attempt.objects.create(assessment=self.assessment, student=outsider)

        with self.assertRaises(AssessmentUnavailable):
            self.machine.submit(attempt, answers={self.short.pk: 'Accra'})
        self.assertFalse(Answer.objects.exists())
        self.assertFalse(Result.objects.exists())

    def test_guard_rejects_draft_and_out_of_window(self):
        self.assessment.status = Assessment.STATUS_DRAFT
        self.assessment.save()
        with self.assertRaises(AssessmentUnavailable):
            self.machine.submit(self.attempt)

        self.assessment.status = Assessment.STATUS_PENDING
        self.assessment.date = timezone.localdate() - timedelta(days=1)
        self.assessment.save()
        with self.assertRaises(AssessmentUnavailable):
            self.machine.submit(self.attempt)

        self.assessment.allow_late_submission = True
        self.assessment.late_submission_days = 2
        self.assessment.save()
        self.assertEqual(self.machine.submit(self.attempt).status, Result.STATUS_COMPLETED)


class PooledAttemptTestCase(AssessmentFixtureMixin, TestCase):

    def setUp(self):
        self.classroom = Classroom.objects.create(name='Form 2A')
        self.student = self.make_student(classroom=self.classroom)
        self.assessment = self.make_assessment(
            self.classroom, use_question_limit=True, questions_to_answer=2
        )
        self.questions = [
            self.make_short_answer(self.assessment, correct=text, max_score=5)
            for text in ('a', 'b', 'c')
        ]
        self.machine = AttemptStateMachine()

    def test_only_selected_questions_are_graded(self):
        first, stray, third = self.questions
        attempt = Attempt.objects.create(
            assessment=self.assessment,
            student=self.student,
            question_order=QuestionOrder.from_ids([first.pk, third.pk]).serialize()
        )
        for question in self.questions:
            save_answer(self.assessment, self.student, question.pk, question.correct_answer)

        result = self.machine.submit(attempt)

        self.assertEqual(result.score, Decimal('10'))
        self.assertIsNone(Answer.objects.get(question=stray).score)

    def test_missing_pool_grades_zero(self):
        attempt = Attempt.objects.create(assessment=self.assessment, student=self.student)
        save_answer(self.assessment, self.student, self.questions[0].pk, 'a')

        with self.assertLogs('apps.assessments.grading_service', level='ERROR'):
            result = self.machine.submit(attempt)
        self.assertEqual(result.score, Decimal('0'))

    def test_start_draws_pool_once(self):
        attempt = self.machine.start(self.assessment, self.student, rng=random.Random(1))
        order = QuestionOrder.parse(attempt.question_order)
        self.assertEqual(len(order), 2)

        again = self.machine.start(self.assessment, self.student, rng=random.Random(99))
        self.assertEqual(again.pk, attempt.pk)
        self.assertEqual(QuestionOrder.parse(again.question_order), order)

    def test_start_rejects_undersized_bank(self):
        self.assessment.questions_to_answer = 5
        self.assessment.save()

        with self.assertRaises(InsufficientQuestions):
            self.machine.start(self.assessment, self.student)
        self.assertFalse(Attempt.objects.exists())

    def test_start_blocked_by_other_open_attempt(self):
        other = self.make_assessment(self.classroom, title='History')
        Attempt.objects.create(assessment=other, student=self.student)

        with self.assertRaises(AttemptInProgressElsewhere):
            self.machine.start(self.assessment, self.student)


class ShuffledAttemptTestCase(AssessmentFixtureMixin, APITestCase):
    """Shuffled question and option order are fixed per attempt."""

    def setUp(self):
        self.classroom = Classroom.objects.create(name='Form 2A')
        self.student = self.make_student(classroom=self.classroom)
        self.assessment = self.make_assessment(
            self.classroom, shuffle_questions=True, shuffle_options=True
        )
        self.mcq, self.correct_option = self.make_mcq(self.assessment)
        for text in ('Lagos', 'Lome', 'Abuja'):
            MCQOption.objects.create(question=self.mcq, option_text=text)
        self.shorts = [
            self.make_short_answer(self.assessment, correct=text, max_score=5)
            for text in ('a', 'b', 'c', 'd')
        ]
        self.machine = AttemptStateMachine()
        self.client.force_authenticate(user=self.student)

    def test_start_stores_orders_once(self):
        attempt = self.machine.start(self.assessment, self.student, rng=random.Random(3))
        question_order = QuestionOrder.parse(attempt.question_order)
        option_orders = OptionOrders.parse(attempt.option_orders)

        creation_order = [self.mcq.pk] + [q.pk for q in self.shorts]
        self.assertEqual(sorted(question_order), sorted(creation_order))
        self.assertEqual(
            sorted(dict(option_orders.orders)[self.mcq.pk]),
            list(self.mcq.options.values_list('id', flat=True))
        )

        again = self.machine.start(self.assessment, self.student, rng=random.Random(42))
        self.assertEqual(again.question_order, attempt.question_order)
        self.assertEqual(again.option_orders, attempt.option_orders)

        # Display order only; grading still walks the bank in creation order
        self.assertEqual(select_question_ids(self.assessment, again), creation_order)
        self.assertEqual(
            presentation_order(self.assessment, again),
            list(question_order.question_ids)
        )

    def test_paper_order_is_stable_across_calls(self):
        response = self.client.post(
            '/api/attempts/start/', {'assessment_id': self.assessment.pk}, format='json'
        )
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        attempt = Attempt.objects.get(pk=response.data['attempt']['id'])

        def layout(questions):
            return [
                (q['id'], [o['id'] for o in q['options']])
                for q in questions
            ]

        started = layout(response.data['questions'])
        self.assertEqual(
            [qid for qid, _ in started],
            list(QuestionOrder.parse(attempt.question_order))
        )
        stored_options = dict(OptionOrders.parse(attempt.option_orders).orders)
        self.assertEqual(dict(started)[self.mcq.pk], list(stored_options[self.mcq.pk]))

        paper = self.client.get(f'/api/assessments/{self.assessment.pk}/attempt/')
        self.assertEqual(layout(paper.data['questions']), started)

        resumed = self.client.post(
            '/api/attempts/start/', {'assessment_id': self.assessment.pk}, format='json'
        )
        self.assertEqual(layout(resumed.data['questions']), started)

    def test_shuffled_attempt_grades_whole_bank(self):
        attempt = self.machine.start(self.assessment, self.student)
        save_answer(self.assessment, self.student, self.mcq.pk, str(self.correct_option.pk))
        for question in self.shorts:
            save_answer(self.assessment, self.student, question.pk, question.correct_answer)

        result = self.machine.submit(attempt)

        self.assertEqual(result.score, Decimal('30'))


class AnswerLedgerTestCase(AssessmentFixtureMixin, TestCase):

    def setUp(self):
        self.classroom = Classroom.objects.create(name='Form 2A')
        self.student = self.make_student(classroom=self.classroom)
        self.assessment = self.make_assessment(self.classroom)
        self.question = self.make_short_answer(
            self.assessment,
            correct=json.dumps(['Paris', 'Rome']),
            answer_mode=Question.MODE_ANY_MATCH,
            answer_count=2
        )

    def test_save_inserts_then_overwrites(self):
        first = save_answer(self.assessment, self.student, self.question.pk, 'Paris')
        second = save_answer(self.assessment, self.student, self.question.pk, 'Rome')

        self.assertEqual(first.pk, second.pk)
        self.assertEqual(Answer.objects.count(), 1)
        self.assertEqual(Answer.objects.get().answer_text, 'Rome')
        self.assertIsNone(Answer.objects.get().score)
        self.assertGreaterEqual(second.updated_at, first.updated_at)

    def test_list_payload_is_joined_per_line(self):
        answer = save_answer(self.assessment, self.student, self.question.pk, ['Paris', ' Rome ', ''])
        self.assertEqual(answer.answer_text, 'Paris\nRome')

    def test_rejects_question_from_another_assessment(self):
        other = self.make_assessment(self.classroom, title='Other')
        foreign = self.make_short_answer(other)

        with self.assertRaises(ValidationError):
            save_answer(self.assessment, self.student, foreign.pk, 'x')

    def test_rejected_once_result_is_completed(self):
        Result.objects.create(
            assessment=self.assessment,
            student=self.student,
            score=0,
            status=Result.STATUS_COMPLETED
        )

        with self.assertRaises(AttemptAlreadyCompleted):
            save_answer(self.assessment, self.student, self.question.pk, 'Paris')
        self.assertFalse(Answer.objects.exists())


class AttemptAPITestCase(AssessmentFixtureMixin, APITestCase):
    """Test the HTTP surface, security and permissions."""

    def setUp(self):
        self.classroom = Classroom.objects.create(name='Form 2A')
        self.student = self.make_student(classroom=self.classroom)
        self.other_student = self.make_student('student2', classroom=self.classroom)
        self.assessment = self.make_assessment(self.classroom, duration_minutes=30)
        self.mcq, self.correct_option = self.make_mcq(self.assessment)
        self.short = self.make_short_answer(self.assessment, correct='Accra')
        self.client.force_authenticate(user=self.student)

    def _start(self):
        response = self.client.post(
            '/api/attempts/start/', {'assessment_id': self.assessment.pk}, format='json'
        )
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        return response.data['attempt']['id']

    def test_start_never_exposes_correct_answers(self):
        response = self.client.post(
            '/api/attempts/start/', {'assessment_id': self.assessment.pk}, format='json'
        )

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['remaining_seconds'], 30 * 60)
        self.assertEqual(len(response.data['questions']), 2)
        for question in response.data['questions']:
            self.assertNotIn('correct_answer', question)
            for option in question['options']:
                self.assertNotIn('is_correct', option)

    def test_autosave_and_submit_scenario(self):
        attempt_id = self._start()

        response = self.client.post('/api/answers/save/', {
            'assessment_id': self.assessment.pk,
            'question_id': self.mcq.pk,
            'answer_text': str(self.correct_option.pk),
        }, format='json')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['question_id'], self.mcq.pk)

        response = self.client.post('/api/attempts/submit/', {
            'assessment_id': self.assessment.pk,
            'attempt_id': attempt_id,
            'answers': [{'question_id': self.short.pk, 'answer': 'accra '}],
        }, format='json')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['score'], Decimal('20'))
        self.assertIn(f'/api/results/{self.assessment.pk}/', response.data['redirect_url'])

        result = self.client.get(f'/api/results/{self.assessment.pk}/')
        self.assertEqual(result.status_code, status.HTTP_200_OK)
        self.assertEqual(result.data['score'], '20.00')
        self.assertEqual(result.data['status'], Result.STATUS_COMPLETED)
        self.assertEqual(result.data['max_score'], 20)

    def test_duplicate_submission_prevented(self):
        attempt_id = self._start()
        payload = {'assessment_id': self.assessment.pk, 'attempt_id': attempt_id}

        first = self.client.post('/api/attempts/submit/', payload, format='json')
        self.assertEqual(first.status_code, status.HTTP_200_OK)

        second = self.client.post('/api/attempts/submit/', payload, format='json')
        self.assertEqual(second.status_code, status.HTTP_409_CONFLICT)
        self.assertIn('already completed', str(second.data).lower())

    def test_duplicate_question_in_payload_rejected(self):
        attempt_id = self._start()

        response = self.client.post('/api/attempts/submit/', {
            'assessment_id': self.assessment.pk,
            'attempt_id': attempt_id,
            'answers': [
                {'question_id': self.short.pk, 'answer': 'Accra'},
                {'question_id': self.short.pk, 'answer': 'Tema'},
            ],
        }, format='json')

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(Attempt.objects.get(pk=attempt_id).status, Attempt.STATUS_IN_PROGRESS)

    def test_check_time_auto_submits_expired_attempt(self):
        attempt_id = self._start()
        Attempt.objects.filter(pk=attempt_id).update(
            start_time=timezone.now() - timedelta(minutes=31)
        )
        payload = {'assessment_id': self.assessment.pk, 'attempt_id': attempt_id}

        first = self.client.post('/api/attempts/check-time/', payload, format='json')
        self.assertEqual(first.status_code, status.HTTP_200_OK)
        self.assertTrue(first.data['auto_submitted'])
        self.assertEqual(first.data['status'], Attempt.STATUS_EXPIRED)
        self.assertIn('redirect_url', first.data)

        second = self.client.get('/api/attempts/check-time/', payload)
        self.assertEqual(second.status_code, status.HTTP_200_OK)
        self.assertFalse(second.data['auto_submitted'])
        self.assertEqual(second.data['remaining_seconds'], 0)
        self.assertEqual(second.data['score'], first.data['score'])

    def test_auto_submit_endpoint(self):
        attempt_id = self._start()

        response = self.client.post('/api/attempts/auto-submit/', {
            'assessment_id': self.assessment.pk,
            'attempt_id': attempt_id,
        }, format='json')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['status'], Attempt.STATUS_EXPIRED)

    def test_cannot_touch_other_student_attempt(self):
        attempt = Attempt.objects.create(assessment=self.assessment, student=self.other_student)
        payload = {'assessment_id': self.assessment.pk, 'attempt_id': attempt.pk}

        response = self.client.post('/api/attempts/check-time/', payload, format='json')
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

        response = self.client.post('/api/attempts/submit/', payload, format='json')
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)
        self.assertEqual(Attempt.objects.get(pk=attempt.pk).status, Attempt.STATUS_IN_PROGRESS)

    def test_resume_paper_returns_saved_answers(self):
        self._start()
        save_answer(self.assessment, self.student, self.short.pk, 'Accra')

        response = self.client.get(f'/api/assessments/{self.assessment.pk}/attempt/')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['answers'], {str(self.short.pk): 'Accra'})

    def test_sync_clock(self):
        client_time = int(timezone.now().timestamp()) - 100

        response = self.client.get('/api/attempts/sync-clock/', {'client_time': client_time})

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertGreaterEqual(response.data['offset'], 100)

    def test_malformed_payload_rejected(self):
        response = self.client.post('/api/answers/save/', {'question_id': 'abc'}, format='json')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertFalse(Answer.objects.exists())

    def test_requires_authentication(self):
        self.client.force_authenticate(user=None)

        response = self.client.post('/api/attempts/start/', {'assessment_id': self.assessment.pk})
        self.assertIn(response.status_code, (status.HTTP_401_UNAUTHORIZED, status.HTTP_403_FORBIDDEN))

    def test_session_writes_require_csrf_token(self):
        client = APIClient(enforce_csrf_checks=True)
        client.login(username='student1', password='pass12345')

        response = client.post('/api/answers/save/', {
            'assessment_id': self.assessment.pk,
            'question_id': self.short.pk,
            'answer_text': 'Accra',
        }, format='json')

        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)
        self.assertFalse(Answer.objects.exists())


class ManagementCommandTestCase(AssessmentFixtureMixin, TestCase):

    def setUp(self):
        self.classroom = Classroom.objects.create(name='Form 2A')
        self.assessment = self.make_assessment(self.classroom, duration_minutes=20)
        self.short = self.make_short_answer(self.assessment, correct='Accra')

    def test_expire_overdue_attempts(self):
        late = self.make_student('late', classroom=self.classroom)
        on_time = self.make_student('on_time', classroom=self.classroom)
        overdue = Attempt.objects.create(
            assessment=self.assessment,
            student=late,
            start_time=timezone.now() - timedelta(minutes=25)
        )
        running = Attempt.objects.create(assessment=self.assessment, student=on_time)

        out = StringIO()
        call_command('expire_overdue_attempts', stdout=out)

        self.assertIn('Expired 1', out.getvalue())
        overdue.refresh_from_db()
        running.refresh_from_db()
        self.assertEqual(overdue.status, Attempt.STATUS_EXPIRED)
        self.assertEqual(running.status, Attempt.STATUS_IN_PROGRESS)
        self.assertTrue(Result.objects.filter(student=late).exists())

    def test_regrade_assessment(self):
        student = self.make_student(classroom=self.classroom)
        attempt = Attempt.objects.create(assessment=self.assessment, student=student)
        save_answer(self.assessment, student, self.short.pk, 'Tema')
        AttemptStateMachine().submit(attempt)

        self.short.correct_answer = 'Tema'
        self.short.save()
        call_command('regrade_assessment', self.assessment.pk, stdout=StringIO())

        self.assertEqual(Result.objects.get(student=student).score, Decimal('10'))

    def test_create_sample_data(self):
        call_command('create_sample_data', stdout=StringIO())

        self.assertTrue(Assessment.objects.filter(use_question_limit=True).exists())
        self.assertEqual(User.objects.filter(username__startswith='student').count(), 2)
