"""
Resolves which questions a student answers on an attempt.

Without pooling that is the whole bank in creation order. With pooling it is
the subset drawn once when the attempt was started and stored on the
attempt; it is never re-drawn while grading.

Shuffling only changes the order a student sees. Grading always goes through
select_question_ids.
"""
import logging
import random

from .models import MCQOption, Question
from .values import OptionOrders, QuestionOrder

logger = logging.getLogger(__name__)


def select_question_ids(assessment, attempt):
    """Ordered list of question ids for this attempt. Read-only."""
    if not assessment.uses_pooling:
        return list(
            assessment.questions.order_by('id').values_list('id', flat=True)
        )

    order = QuestionOrder.parse(attempt.question_order)
    if not order:
        # Fail closed: an unreadable pool grades as zero
        logger.warning(
            "Pooled attempt has no usable question_order: assessment_id=%s attempt_id=%s student_id=%s",
            assessment.pk, attempt.pk, attempt.student_id
        )
        return []

    selected = []
    for qid in order:
        if qid not in selected:
            selected.append(qid)
    return selected


def draw_question_pool(assessment, rng=None):
    """
    Picks `questions_to_answer` question ids at random for a new attempt.

    Returns a QuestionOrder, or None when the bank is smaller than the pool.
    """
    rng = rng or random.SystemRandom()
    all_ids = list(assessment.questions.order_by('id').values_list('id', flat=True))
    wanted = assessment.questions_to_answer

    if len(all_ids) < wanted:
        logger.warning(
            "Assessment %s has %d questions but pools %d per student",
            assessment.pk, len(all_ids), wanted
        )
        return None

    return QuestionOrder.from_ids(rng.sample(all_ids, wanted))


def presentation_order(assessment, attempt):
    """Selected question ids in the order this attempt shows them."""
    selected = select_question_ids(assessment, attempt)
    if assessment.uses_pooling or not assessment.shuffle_questions:
        return selected
    return QuestionOrder.parse(attempt.question_order).arrange(selected)


def draw_question_shuffle(assessment, rng=None):
    """Whole bank in a random order, for non-pooled assessments that shuffle."""
    rng = rng or random.SystemRandom()
    question_ids = list(assessment.questions.order_by('id').values_list('id', flat=True))
    rng.shuffle(question_ids)
    return QuestionOrder.from_ids(question_ids)


def draw_option_orders(question_ids, rng=None):
    """A random option order for every MCQ among `question_ids`."""
    rng = rng or random.SystemRandom()
    orders = {}
    options = MCQOption.objects.filter(
        question_id__in=list(question_ids),
        question__question_type=Question.TYPE_MCQ
    ).order_by('question_id', 'id').values_list('question_id', 'id')

    for question_id, option_id in options:
        orders.setdefault(question_id, []).append(option_id)
    for option_ids in orders.values():
        rng.shuffle(option_ids)
    return OptionOrders.from_mapping(orders)
