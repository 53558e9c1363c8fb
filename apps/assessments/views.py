from django.shortcuts import get_object_or_404
from django.urls import reverse
from rest_framework import status
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from .answer_ledger import save_answer
from .attempt_service import AttemptStateMachine, get_attempt
from .models import Answer, Assessment, Attempt, Question, Result
from .permissions import IsAttemptOwner
from .question_selector import presentation_order, select_question_ids
from .serializers import (
    AnswerDetailSerializer,
    AttemptActionSerializer,
    AttemptSerializer,
    QuestionSerializer,
    ResultSerializer,
    SaveAnswerSerializer,
    StartAttemptSerializer,
    SubmitAssessmentSerializer,
    SyncClockSerializer,
)
from .time_authority import remaining_time, sync_clock
from .values import OptionOrders


def result_url(request, assessment_id):
    return request.build_absolute_uri(
        reverse('result-detail', kwargs={'assessment_id': assessment_id})
    )


def questions_in_order(assessment, question_ids):
    """Question objects for `question_ids`, in that order, options prefetched."""
    by_id = {
        q.pk: q
        for q in Question.objects.filter(
            assessment=assessment, pk__in=question_ids
        ).prefetch_related('options')
    }
    return [by_id[qid] for qid in question_ids if qid in by_id]


def attempt_paper(attempt):
    """Serialized questions as this attempt shows them, shuffles applied."""
    questions = questions_in_order(
        attempt.assessment,
        presentation_order(attempt.assessment, attempt)
    )
    return QuestionSerializer(
        questions,
        many=True,
        context={'option_orders': OptionOrders.parse(attempt.option_orders)}
    ).data


class StartAttemptView(APIView):
    """
    Begin (or resume) an attempt.

    Identity comes from request.user; the question subset for pooled
    assessments and any shuffled order are fixed here and never re-drawn.
    """
    permission_classes = [IsAuthenticated]

    def post(self, request):
        serializer = StartAttemptSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        assessment = get_object_or_404(
            Assessment, pk=serializer.validated_data['assessment_id']
        )
        attempt = AttemptStateMachine().start(assessment, request.user)

        return Response({
            'attempt': AttemptSerializer(attempt).data,
            'remaining_seconds': remaining_time(attempt).remaining_seconds,
            'questions': attempt_paper(attempt),
        }, status=status.HTTP_200_OK)


class AttemptPaperView(APIView):
    """Selected questions plus saved answers, for resuming after a reload."""
    permission_classes = [IsAuthenticated, IsAttemptOwner]

    def get(self, request, assessment_id):
        attempt = get_object_or_404(
            Attempt.objects.select_related('assessment'),
            assessment_id=assessment_id,
            student=request.user
        )
        self.check_object_permissions(request, attempt)

        saved = Answer.objects.filter(
            assessment_id=assessment_id,
            student=request.user
        ).values_list('question_id', 'answer_text')

        return Response({
            'attempt': AttemptSerializer(attempt).data,
            'remaining_seconds': remaining_time(attempt).remaining_seconds,
            'questions': attempt_paper(attempt),
            'answers': {str(qid): text for qid, text in saved},
        })


class CheckTimeView(APIView):
    """
    Server-authoritative time check.

    Polled by the client timer. When the server clock shows no time left
    the attempt is expired and graded as a side effect of this call.
    """
    permission_classes = [IsAuthenticated]

    def get(self, request):
        return self._check(request, request.query_params)

    def post(self, request):
        return self._check(request, request.data)

    def _check(self, request, data):
        serializer = AttemptActionSerializer(data=data)
        serializer.is_valid(raise_exception=True)

        assessment_id = serializer.validated_data['assessment_id']
        attempt = get_attempt(
            serializer.validated_data['attempt_id'],
            assessment_id,
            request.user
        )
        payload = AttemptStateMachine().check_time(attempt)

        if payload.get('auto_submit_failed'):
            return Response(payload, status=status.HTTP_503_SERVICE_UNAVAILABLE)

        if payload['status'] in Attempt.TERMINAL_STATUSES:
            payload['redirect_url'] = result_url(request, assessment_id)
        return Response(payload)


class SyncClockView(APIView):
    """Pure echo for client clock correction; never used for authorization."""
    permission_classes = [IsAuthenticated]

    def get(self, request):
        return self._sync(request.query_params)

    def post(self, request):
        return self._sync(request.data)

    def _sync(self, data):
        serializer = SyncClockSerializer(data=data)
        serializer.is_valid(raise_exception=True)
        return Response(sync_clock(serializer.validated_data['client_time']))


class SaveAnswerView(APIView):
    """Autosave a single answer. No grading side effects."""
    permission_classes = [IsAuthenticated]

    def post(self, request):
        serializer = SaveAnswerSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        assessment = get_object_or_404(Assessment, pk=data['assessment_id'])
        answer = save_answer(
            assessment,
            request.user,
            data['question_id'],
            data['answer_text']
        )

        return Response({
            'timestamp': answer.updated_at,
            'question_id': answer.question_id,
        })


class SubmitAssessmentView(APIView):
    """
    Final submission.

    Security measures in place:
    - Identity inferred from request.user (no student id in payload)
    - Final answers validated against the assessment before any write
    - Row lock on the attempt keeps double submits from grading twice
    - One transaction covers answers, status, grading and the result
    """
    permission_classes = [IsAuthenticated]

    def post(self, request):
        serializer = SubmitAssessmentSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        attempt = get_attempt(data['attempt_id'], data['assessment_id'], request.user)
        answers = {a['question_id']: a['answer'] for a in data['answers']}

        result = AttemptStateMachine().submit(attempt, answers=answers)

        return Response({
            'score': result.score,
            'status': attempt.status,
            'redirect_url': result_url(request, data['assessment_id']),
            'message': 'Assessment submitted successfully',
        })


class AutoSubmitView(APIView):
    """
    Client-timer fallback for the poll-triggered expiry. Accepted even when
    the server clock still shows time left; that case is logged.
    """
    permission_classes = [IsAuthenticated]

    def post(self, request):
        serializer = AttemptActionSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        attempt = get_attempt(data['attempt_id'], data['assessment_id'], request.user)
        result = AttemptStateMachine().force_expire(attempt)

        return Response({
            'score': result.score,
            'status': attempt.status,
            'redirect_url': result_url(request, data['assessment_id']),
            'message': 'Assessment auto-submitted due to time expiry',
        })


class ResultDetailView(APIView):
    """The caller's graded result with per-question scores."""
    permission_classes = [IsAuthenticated, IsAttemptOwner]

    def get(self, request, assessment_id):
        result = get_object_or_404(
            Result.objects.select_related('assessment'),
            assessment_id=assessment_id,
            student=request.user
        )
        self.check_object_permissions(request, result)

        attempt = Attempt.objects.select_related('assessment').filter(
            assessment_id=assessment_id,
            student=request.user
        ).first()
        questions = questions_in_order(
            attempt.assessment,
            select_question_ids(attempt.assessment, attempt)
        ) if attempt else []
        answers = Answer.objects.filter(
            assessment_id=assessment_id,
            student=request.user,
            question__in=questions
        ).select_related('question')

        data = ResultSerializer(result).data
        data['max_score'] = sum(q.max_score for q in questions)
        data['answers'] = AnswerDetailSerializer(answers, many=True).data
        return Response(data)
