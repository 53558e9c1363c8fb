import json

from django.core.management.base import BaseCommand
from django.contrib.auth import get_user_model
from django.utils import timezone

from apps.assessments.models import Assessment, Classroom, MCQOption, Question

User = get_user_model()


class Command(BaseCommand):
    help = 'Creates sample assessment data for trying out the attempt API'

    def handle(self, *args, **kwargs):
        self.stdout.write('Creating sample data...')

        classroom, _ = Classroom.objects.get_or_create(name='Form 2A')

        for username, first, last in [('student1', 'Ama', 'Mensah'), ('student2', 'Kofi', 'Boateng')]:
            if not User.objects.filter(username=username).exists():
                user = User.objects.create_user(
                    username=username,
                    email=f'{username}@test.com',
                    password='testpass123',
                    first_name=first,
                    last_name=last
                )
                classroom.students.add(user)
                self.stdout.write(self.style.SUCCESS(f'Created user: {username}'))

        # Timed geography quiz, everyone answers everything in a shuffled order
        geography = Assessment.objects.create(
            title='Geography Quiz',
            duration_minutes=30,
            shuffle_questions=True,
            shuffle_options=True,
            date=timezone.localdate(),
        )
        geography.classes.add(classroom)

        capital = Question.objects.create(
            assessment=geography,
            question_text='Which city is the capital of Ghana?',
            question_type=Question.TYPE_MCQ,
            max_score=10
        )
        for text, correct in [('Kumasi', False), ('Accra', True), ('Tamale', False)]:
            MCQOption.objects.create(question=capital, option_text=text, is_correct=correct)

        Question.objects.create(
            assessment=geography,
            question_text='Name the capital of Ghana.',
            question_type=Question.TYPE_SHORT_ANSWER,
            answer_mode=Question.MODE_EXACT,
            correct_answer='Accra',
            max_score=10
        )

        Question.objects.create(
            assessment=geography,
            question_text='Name three European capital cities.',
            question_type=Question.TYPE_SHORT_ANSWER,
            answer_mode=Question.MODE_ANY_MATCH,
            correct_answer=json.dumps(['Paris', 'London', 'Rome', 'Madrid', 'Berlin']),
            answer_count=3,
            max_score=9
        )

        self.stdout.write(self.style.SUCCESS('Created Geography Quiz with 3 questions'))

        # Pooled maths test: each student gets 3 of 6 questions
        maths = Assessment.objects.create(
            title='Mental Arithmetic',
            duration_minutes=15,
            use_question_limit=True,
            questions_to_answer=3,
            date=timezone.localdate(),
            allow_late_submission=True,
            late_submission_days=2,
        )
        maths.classes.add(classroom)

        for a, b in [(2, 3), (7, 8), (6, 9), (12, 12), (15, 4), (9, 11)]:
            Question.objects.create(
                assessment=maths,
                question_text=f'What is {a} x {b}?',
                question_type=Question.TYPE_SHORT_ANSWER,
                correct_answer=str(a * b),
                max_score=5
            )

        self.stdout.write(self.style.SUCCESS('Created pooled Mental Arithmetic test with 6 questions'))

        self.stdout.write(self.style.SUCCESS('Sample data created successfully!'))
        self.stdout.write('Test credentials: username=student1, password=testpass123')
