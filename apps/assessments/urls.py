from django.urls import path
from .views import (
    AttemptPaperView,
    AutoSubmitView,
    CheckTimeView,
    ResultDetailView,
    SaveAnswerView,
    StartAttemptView,
    SubmitAssessmentView,
    SyncClockView,
)

urlpatterns = [
    # Attempts
    path('attempts/start/', StartAttemptView.as_view(), name='attempt-start'),
    path('attempts/check-time/', CheckTimeView.as_view(), name='attempt-check-time'),
    path('attempts/sync-clock/', SyncClockView.as_view(), name='attempt-sync-clock'),
    path('attempts/submit/', SubmitAssessmentView.as_view(), name='attempt-submit'),
    path('attempts/auto-submit/', AutoSubmitView.as_view(), name='attempt-auto-submit'),
    path('assessments/<int:assessment_id>/attempt/', AttemptPaperView.as_view(), name='attempt-paper'),

    # Answers
    path('answers/save/', SaveAnswerView.as_view(), name='answer-save'),

    # Results
    path('results/<int:assessment_id>/', ResultDetailView.as_view(), name='result-detail'),
]
