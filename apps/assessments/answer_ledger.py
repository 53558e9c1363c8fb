"""
Answer ledger: the durable record of student work.

Rows are keyed by (assessment, student, question) and only ever upserted.
Nothing here grades or looks at attempt status; terminal-state exclusivity
belongs to the attempt state machine.
"""
import logging

from django.db import transaction
from rest_framework.exceptions import ValidationError

from .models import Answer, Question
from .permissions import verify_assessment_access

logger = logging.getLogger(__name__)


def answer_text_for(question, value):
    """
    Stored text for a submitted value. Multi-answer payloads arrive as a
    list and are joined one answer per line.
    """
    if value is None:
        return ''
    if isinstance(value, (list, tuple)):
        return '\n'.join(str(item).strip() for item in value if str(item).strip())
    return str(value)


def upsert_answer(assessment, student, question, answer_text):
    """Insert or overwrite the answer row. Caller owns the transaction."""
    answer, created = Answer.objects.update_or_create(
        assessment=assessment,
        student=student,
        question=question,
        defaults={'answer_text': answer_text},
    )
    return answer


def get_question(assessment, question_id):
    try:
        return assessment.questions.get(pk=question_id)
    except Question.DoesNotExist:
        raise ValidationError({'question_id': 'Invalid question for this assessment.'})


def save_answer(assessment, student, question_id, answer_text, today=None):
    """
    Autosave one answer in its own transaction.

    Returns the saved Answer.
    """
    verify_assessment_access(assessment, student, today)
    question = get_question(assessment, question_id)

    with transaction.atomic():
        answer = upsert_answer(
            assessment,
            student,
            question,
            answer_text_for(question, answer_text)
        )

    logger.debug(
        "Autosaved answer: assessment_id=%s student_id=%s question_id=%s",
        assessment.pk, student.pk, question.pk
    )
    return answer
