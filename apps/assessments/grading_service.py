"""
Grading service with Strategy Pattern implementation.

Architecture:
- BaseGrader: Abstract interface for per-question grading strategies
- RuleBasedGrader: Deterministic MCQ / exact / any_match scoring
- GradingService: Grades a selected question set and writes scores back

Grading is pure with respect to its inputs: the same questions and the same
answer texts always give the same scores. Only grade_attempt touches the
database, and only to record per-question scores on existing answer rows.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP

from .question_selector import select_question_ids
from .values import AcceptableAnswers

logger = logging.getLogger(__name__)

SCORE_PLACES = Decimal('0.01')
ZERO = Decimal('0.00')


def quantize_score(value):
    return Decimal(value).quantize(SCORE_PLACES, rounding=ROUND_HALF_UP)


@dataclass
class GradingOutcome:
    scores: dict = field(default_factory=dict)
    total: Decimal = ZERO
    max_possible: int = 0


class BaseGrader(ABC):
    """
    Strategy interface for grading implementations.
    Enables dependency injection and easy testing.
    """
    @abstractmethod
    def grade_answer(self, question, student_answer):
        """
        Returns dict: {
            'is_correct': bool,
            'score': Decimal
        }
        """
        pass


class RuleBasedGrader(BaseGrader):
    """
    Strategies by question type:
    - MCQ: submitted option id must be an option flagged correct
    - ShortAnswer/exact: trimmed, case-insensitive equality
    - ShortAnswer/any_match: linear partial credit per distinct correct line
    """

    def grade_answer(self, question, student_answer):
        if not student_answer or not student_answer.strip():
            return self._result(False, ZERO)

        if question.is_mcq:
            return self._grade_mcq(question, student_answer)
        if question.answer_mode == question.MODE_ANY_MATCH:
            return self._grade_any_match(question, student_answer)
        return self._grade_exact(question, student_answer)

    def _grade_mcq(self, question, student_answer):
        # Option ids are numeric, so no case folding or trimming
        correct_ids = {
            option.identifier
            for option in question.options.all()
            if option.is_correct
        }
        is_correct = student_answer in correct_ids
        return self._result(is_correct, question.max_score if is_correct else ZERO)

    def _grade_exact(self, question, student_answer):
        expected = (question.correct_answer or '').strip().lower()
        is_correct = student_answer.strip().lower() == expected
        return self._result(is_correct, question.max_score if is_correct else ZERO)

    def _grade_any_match(self, question, student_answer):
        acceptable = AcceptableAnswers.parse(question.correct_answer).answers
        if not acceptable:
            logger.warning(
                "Question %s has no readable any_match answers; scoring 0",
                question.pk
            )

        used = set()
        matched = 0
        for line in self._split_lines(student_answer):
            for index, candidate in enumerate(acceptable):
                if index not in used and candidate == line:
                    used.add(index)
                    matched += 1
                    break

        required = question.answer_count if question.answer_count and question.answer_count > 0 else 1
        correct_count = min(matched, required)
        score = Decimal(question.max_score) / Decimal(required) * correct_count

        return self._result(correct_count == required, score)

    @staticmethod
    def _split_lines(student_answer):
        """Trimmed, lower-cased, non-empty lines with duplicates dropped in order."""
        seen = []
        for line in student_answer.split('\n'):
            line = line.strip().lower()
            if line and line not in seen:
                seen.append(line)
        return seen

    @staticmethod
    def _result(is_correct, score):
        return {
            'is_correct': is_correct,
            'score': quantize_score(score),
        }


class GradingService:
    """Grades the selected questions of an attempt."""

    def __init__(self, grader=None):
        self.grader = grader or RuleBasedGrader()

    def grade(self, questions, answers_by_question_id):
        """
        Pure scoring pass.

        questions: the selected Question objects, in selection order
        answers_by_question_id: {question_id: answer_text}
        """
        outcome = GradingOutcome()
        for question in questions:
            result = self.grader.grade_answer(
                question,
                answers_by_question_id.get(question.pk)
            )
            outcome.scores[question.pk] = result['score']
            outcome.total += result['score']
            outcome.max_possible += question.max_score
        return outcome

    def grade_attempt(self, attempt):
        """
        Grades an attempt over its selected questions and stores each score
        on the matching answer row. Must run inside the caller's transaction.

        Returns: GradingOutcome
        """
        from .models import Answer, Question

        assessment = attempt.assessment
        question_ids = select_question_ids(assessment, attempt)

        if not question_ids and assessment.uses_pooling:
            logger.error(
                "Pooling anomaly: no selected questions for assessment_id=%s "
                "attempt_id=%s student_id=%s; grading as zero",
                assessment.pk, attempt.pk, attempt.student_id
            )

        by_id = {
            q.pk: q
            for q in Question.objects.filter(
                assessment=assessment, pk__in=question_ids
            ).prefetch_related('options')
        }
        questions = [by_id[qid] for qid in question_ids if qid in by_id]

        answers = list(Answer.objects.filter(
            assessment=assessment,
            student_id=attempt.student_id,
            question_id__in=list(by_id)
        ))

        outcome = self.grade(
            questions,
            {answer.question_id: answer.answer_text for answer in answers}
        )

        for answer in answers:
            answer.score = outcome.scores[answer.question_id]
            answer.save(update_fields=['score'])

        logger.info(
            "Graded assessment_id=%s attempt_id=%s student_id=%s: %s/%s over %d questions",
            assessment.pk, attempt.pk, attempt.student_id,
            outcome.total, outcome.max_possible, len(questions)
        )
        return outcome
