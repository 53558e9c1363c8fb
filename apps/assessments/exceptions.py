"""
Domain errors raised by the attempt engine.

Messages are deliberately generic; identifiers and causes go to the
server log only.
"""
from rest_framework import status
from rest_framework.exceptions import APIException


class AssessmentUnavailable(APIException):
    status_code = status.HTTP_403_FORBIDDEN
    default_detail = 'Assessment not found or not available.'
    default_code = 'assessment_unavailable'


class AttemptNotFound(APIException):
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = 'Invalid attempt.'
    default_code = 'attempt_not_found'


class AttemptAlreadyCompleted(APIException):
    status_code = status.HTTP_409_CONFLICT
    default_detail = 'Assessment already completed.'
    default_code = 'already_completed'


class AttemptInProgressElsewhere(APIException):
    status_code = status.HTTP_409_CONFLICT
    default_detail = 'Another assessment is in progress. Complete it before starting a new one.'
    default_code = 'attempt_in_progress'


class NoTimeLimit(APIException):
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = 'This assessment has no time limit.'
    default_code = 'no_time_limit'


class InsufficientQuestions(APIException):
    status_code = status.HTTP_409_CONFLICT
    default_detail = 'Insufficient questions available for this assessment.'
    default_code = 'insufficient_questions'


class SubmissionFailed(APIException):
    """The submit/expire transaction rolled back; the attempt is still open."""
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_detail = 'Server submission failed. Please submit manually or refresh the page.'
    default_code = 'submission_failed'


class AttemptNotFinished(APIException):
    status_code = status.HTTP_409_CONFLICT
    default_detail = 'Attempt is still in progress.'
    default_code = 'attempt_not_finished'
