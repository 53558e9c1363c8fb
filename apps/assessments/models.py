from django.db import models
from django.contrib.auth.models import AbstractUser
from django.core.validators import MinValueValidator
from django.utils import timezone


class User(AbstractUser):
    # AbstractUser already has first_name and last_name
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'users'
        indexes = [
            models.Index(fields=['email'], name='users_email_idx'),
        ]


class Classroom(models.Model):
    name = models.CharField(max_length=100)
    students = models.ManyToManyField(
        User,
        related_name='classrooms',
        blank=True
    )
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'classrooms'
        ordering = ['name']

    def __str__(self):
        return self.name


class Assessment(models.Model):
    """
    A dated, optionally timed assessment assigned to one or more classes.

    Everything on this row is treated as immutable while attempts are running;
    the attempt engine only ever reads it.
    """
    STATUS_DRAFT = 'draft'
    STATUS_PENDING = 'pending'
    STATUS_COMPLETED = 'completed'
    STATUS_CHOICES = [
        (STATUS_DRAFT, 'Draft'),
        (STATUS_PENDING, 'Pending'),
        (STATUS_COMPLETED, 'Completed'),
    ]
    AVAILABLE_STATUSES = (STATUS_PENDING, STATUS_COMPLETED)

    title = models.CharField(max_length=255)
    classes = models.ManyToManyField(
        Classroom,
        related_name='assessments',
        blank=True
    )
    # NULL or 0 means untimed
    duration_minutes = models.IntegerField(
        null=True,
        blank=True,
        validators=[MinValueValidator(0)]
    )
    use_question_limit = models.BooleanField(default=False)
    questions_to_answer = models.PositiveIntegerField(null=True, blank=True)
    date = models.DateField(default=timezone.localdate)
    allow_late_submission = models.BooleanField(default=False)
    late_submission_days = models.PositiveIntegerField(default=0)
    # Presentation only; grading order is unaffected
    shuffle_questions = models.BooleanField(default=False)
    shuffle_options = models.BooleanField(default=False)
    status = models.CharField(
        max_length=20,
        choices=STATUS_CHOICES,
        default=STATUS_PENDING
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'assessments'
        ordering = ['-date', '-created_at']
        indexes = [
            models.Index(fields=['status', 'date'], name='assessments_status_date_idx'),
        ]

    def __str__(self):
        return self.title

    @property
    def is_timed(self):
        return bool(self.duration_minutes)

    @property
    def uses_pooling(self):
        return bool(self.use_question_limit and self.questions_to_answer)


class Question(models.Model):
    TYPE_MCQ = 'MCQ'
    TYPE_SHORT_ANSWER = 'ShortAnswer'
    QUESTION_TYPES = [
        (TYPE_MCQ, 'Multiple Choice'),
        (TYPE_SHORT_ANSWER, 'Short Answer'),
    ]

    MODE_EXACT = 'exact'
    MODE_ANY_MATCH = 'any_match'
    ANSWER_MODES = [
        (MODE_EXACT, 'Exact match'),
        (MODE_ANY_MATCH, 'Any of several answers'),
    ]

    assessment = models.ForeignKey(
        Assessment,
        on_delete=models.CASCADE,
        related_name='questions'
    )
    question_text = models.TextField()
    question_type = models.CharField(max_length=20, choices=QUESTION_TYPES)
    answer_mode = models.CharField(
        max_length=20,
        choices=ANSWER_MODES,
        default=MODE_EXACT
    )
    # Plain text for exact mode, a JSON array of strings for any_match
    correct_answer = models.TextField(blank=True)
    # Number of distinct correct answers required in any_match mode
    answer_count = models.PositiveIntegerField(default=1)
    max_score = models.IntegerField(validators=[MinValueValidator(0)])
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'questions'
        # Primary key order doubles as creation order
        ordering = ['assessment', 'id']
        indexes = [
            models.Index(fields=['assessment'], name='questions_assessment_idx'),
        ]

    def __str__(self):
        return f"Q{self.pk}: {self.question_text[:50]}"

    @property
    def is_mcq(self):
        return self.question_type == self.TYPE_MCQ


class MCQOption(models.Model):
    question = models.ForeignKey(
        Question,
        on_delete=models.CASCADE,
        related_name='options'
    )
    option_text = models.CharField(max_length=500)
    is_correct = models.BooleanField(default=False)

    class Meta:
        db_table = 'mcq_options'
        ordering = ['question', 'id']

    def __str__(self):
        return f"{self.pk}: {self.option_text[:50]}"

    @property
    def identifier(self):
        """Value a student submits to pick this option."""
        return str(self.pk)


class Attempt(models.Model):
    """
    One student's timed run at one assessment.

    Created once when the student starts; afterwards only the attempt state
    machine touches status and end_time. The unique constraint is what keeps
    a second terminal status from ever existing for the same student.
    """
    STATUS_IN_PROGRESS = 'in_progress'
    STATUS_COMPLETED = 'completed'
    STATUS_EXPIRED = 'expired'
    STATUS_CHOICES = [
        (STATUS_IN_PROGRESS, 'In progress'),
        (STATUS_COMPLETED, 'Completed'),
        (STATUS_EXPIRED, 'Expired'),
    ]
    TERMINAL_STATUSES = (STATUS_COMPLETED, STATUS_EXPIRED)

    assessment = models.ForeignKey(
        Assessment,
        on_delete=models.CASCADE,
        related_name='attempts'
    )
    student = models.ForeignKey(
        User,
        on_delete=models.CASCADE,
        related_name='attempts'
    )
    start_time = models.DateTimeField(default=timezone.now)
    end_time = models.DateTimeField(null=True, blank=True)
    status = models.CharField(
        max_length=20,
        choices=STATUS_CHOICES,
        default=STATUS_IN_PROGRESS
    )
    # Serialized list of question ids: the pool when pooling, otherwise the
    # shuffled display order. Unset when neither applies.
    question_order = models.TextField(null=True, blank=True)
    # Serialized {question_id: [option ids]} when options are shuffled
    option_orders = models.TextField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'attempts'
        ordering = ['-start_time']
        constraints = [
            models.UniqueConstraint(
                fields=['assessment', 'student'],
                name='unique_assessment_student_attempt'
            )
        ]
        indexes = [
            models.Index(fields=['student', 'status'], name='attempts_student_status_idx'),
            models.Index(fields=['status'], name='attempts_status_idx'),
        ]

    def __str__(self):
        return f"{self.student.username} - {self.assessment.title} ({self.status})"

    @property
    def is_terminal(self):
        return self.status in self.TERMINAL_STATUSES


class AssessmentReset(models.Model):
    """
    Written by the admin reset workflow. The attempt engine only reads the
    most recent row per student to pick the effective duration.
    """
    TYPE_FULL = 'full'
    TYPE_PARTIAL = 'partial'
    RESET_TYPES = [
        (TYPE_FULL, 'Full reset'),
        (TYPE_PARTIAL, 'Partial reset'),
    ]

    assessment = models.ForeignKey(
        Assessment,
        on_delete=models.CASCADE,
        related_name='resets'
    )
    student = models.ForeignKey(
        User,
        on_delete=models.CASCADE,
        related_name='assessment_resets'
    )
    reset_type = models.CharField(max_length=20, choices=RESET_TYPES)
    reason = models.TextField(blank=True)
    reset_time = models.DateTimeField(default=timezone.now)

    class Meta:
        db_table = 'assessment_resets'
        ordering = ['-reset_time', '-id']
        indexes = [
            models.Index(
                fields=['assessment', 'student', '-reset_time'],
                name='resets_latest_idx'
            ),
        ]

    def __str__(self):
        return f"{self.reset_type} reset for {self.student_id} on {self.assessment_id}"


class Answer(models.Model):
    """
    Autosaved answer for one question. The row is the durable record of
    student work; score stays NULL until the attempt is graded.
    """
    assessment = models.ForeignKey(
        Assessment,
        on_delete=models.CASCADE,
        related_name='answers'
    )
    student = models.ForeignKey(
        User,
        on_delete=models.CASCADE,
        related_name='answers'
    )
    question = models.ForeignKey(
        Question,
        on_delete=models.CASCADE,
        related_name='student_answers'
    )
    # MCQ: option id as a string. any_match: one answer per line.
    answer_text = models.TextField(blank=True, default='')
    score = models.DecimalField(max_digits=8, decimal_places=2, null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'answers'
        constraints = [
            models.UniqueConstraint(
                fields=['assessment', 'student', 'question'],
                name='unique_student_question_answer'
            )
        ]
        indexes = [
            models.Index(fields=['assessment', 'student'], name='answers_assessment_student_idx'),
        ]

    def __str__(self):
        return f"Answer to Q{self.question_id} by {self.student_id}"


class Result(models.Model):
    STATUS_PENDING = 'pending'
    STATUS_COMPLETED = 'completed'
    STATUS_CHOICES = [
        (STATUS_PENDING, 'Pending'),
        (STATUS_COMPLETED, 'Completed'),
    ]

    assessment = models.ForeignKey(
        Assessment,
        on_delete=models.CASCADE,
        related_name='results'
    )
    student = models.ForeignKey(
        User,
        on_delete=models.CASCADE,
        related_name='results'
    )
    score = models.DecimalField(max_digits=8, decimal_places=2, default=0)
    status = models.CharField(
        max_length=20,
        choices=STATUS_CHOICES,
        default=STATUS_PENDING
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'results'
        ordering = ['-updated_at']
        # Re-grading overwrites this row instead of adding another one
        constraints = [
            models.UniqueConstraint(
                fields=['assessment', 'student'],
                name='unique_assessment_student_result'
            )
        ]

    def __str__(self):
        return f"{self.student.username} - {self.assessment.title}: {self.score}"
