from drf_spectacular.utils import extend_schema_field
from rest_framework import serializers

from .models import Answer, Attempt, MCQOption, Question, Result


class MCQOptionSerializer(serializers.ModelSerializer):
    """Option as shown to students - is_correct is never exposed."""
    class Meta:
        model = MCQOption
        fields = ['id', 'option_text']


class QuestionSerializer(serializers.ModelSerializer):
    """
    Public question view - excludes correct_answer for security.
    Students must never see answers before submission.

    Pass `option_orders` in the context to show options in an attempt's
    shuffled order.
    """
    options = serializers.SerializerMethodField()

    class Meta:
        model = Question
        fields = ['id', 'question_text', 'question_type', 'answer_mode',
                  'answer_count', 'max_score', 'options']

    @extend_schema_field(MCQOptionSerializer(many=True))
    def get_options(self, obj):
        options = list(obj.options.all())
        option_orders = self.context.get('option_orders')
        if option_orders:
            options = option_orders.arrange(obj.pk, options)
        return MCQOptionSerializer(options, many=True).data


class AttemptSerializer(serializers.ModelSerializer):
    class Meta:
        model = Attempt
        fields = ['id', 'assessment', 'start_time', 'end_time', 'status']


class AttemptActionSerializer(serializers.Serializer):
    """Identifies the attempt for time checks and auto-submits."""
    assessment_id = serializers.IntegerField(min_value=1)
    attempt_id = serializers.IntegerField(min_value=1)


class StartAttemptSerializer(serializers.Serializer):
    assessment_id = serializers.IntegerField(min_value=1)


class SyncClockSerializer(serializers.Serializer):
    # Unix seconds from the client clock
    client_time = serializers.IntegerField(min_value=1)


class SaveAnswerSerializer(serializers.Serializer):
    """
    Autosave payload. answer_text may be blank (student cleared the field)
    or a list for multi-answer questions.
    """
    assessment_id = serializers.IntegerField(min_value=1)
    question_id = serializers.IntegerField(min_value=1)
    answer_text = serializers.JSONField()

    def validate_answer_text(self, value):
        if isinstance(value, list):
            if not all(isinstance(item, (str, int)) for item in value):
                raise serializers.ValidationError("Answers must be text.")
            return value
        if isinstance(value, (str, int)) and not isinstance(value, bool):
            return value
        raise serializers.ValidationError("Answers must be text.")


class FinalAnswerSerializer(serializers.Serializer):
    question_id = serializers.IntegerField(min_value=1)
    answer = serializers.JSONField()

    def validate_answer(self, value):
        return SaveAnswerSerializer().validate_answer_text(value)


class SubmitAssessmentSerializer(AttemptActionSerializer):
    """
    Final submission payload. Handled separately from the model serializers
    because answers are upserted by the state machine, not created here.
    """
    answers = FinalAnswerSerializer(many=True, required=False, default=list)

    def validate_answers(self, value):
        """Ensure no duplicate question_ids in submission."""
        question_ids = [a['question_id'] for a in value]
        if len(question_ids) != len(set(question_ids)):
            raise serializers.ValidationError(
                "Duplicate answers for the same question."
            )
        return value


class AnswerDetailSerializer(serializers.ModelSerializer):
    """
    Answer view for graded results.
    Includes question context for student review.
    """
    question_text = serializers.CharField(source='question.question_text', read_only=True)
    question_type = serializers.CharField(source='question.question_type', read_only=True)
    max_score = serializers.IntegerField(source='question.max_score', read_only=True)

    class Meta:
        model = Answer
        fields = ['question', 'question_text', 'question_type', 'answer_text',
                  'score', 'max_score', 'updated_at']


class ResultSerializer(serializers.ModelSerializer):
    assessment_title = serializers.CharField(source='assessment.title', read_only=True)

    class Meta:
        model = Result
        fields = ['assessment', 'assessment_title', 'score', 'status', 'updated_at']
