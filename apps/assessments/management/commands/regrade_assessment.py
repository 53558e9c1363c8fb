from django.core.management.base import BaseCommand, CommandError

from apps.assessments.attempt_service import AttemptStateMachine
from apps.assessments.models import Assessment, Attempt


class Command(BaseCommand):
    help = 'Re-grades every finished attempt of an assessment and overwrites the results'

    def add_arguments(self, parser):
        parser.add_argument('assessment_id', type=int)

    def handle(self, *args, **options):
        try:
            assessment = Assessment.objects.get(pk=options['assessment_id'])
        except Assessment.DoesNotExist:
            raise CommandError(f"Assessment {options['assessment_id']} does not exist")

        machine = AttemptStateMachine()
        attempts = assessment.attempts.filter(
            status__in=Attempt.TERMINAL_STATUSES
        ).select_related('student')

        count = 0
        for attempt in attempts:
            attempt.assessment = assessment
            result = machine.regrade(attempt)
            self.stdout.write(f'{attempt.student.username}: {result.score}')
            count += 1

        self.stdout.write(self.style.SUCCESS(
            f'Re-graded {count} attempt(s) for {assessment.title}'
        ))
