from django.core.management.base import BaseCommand

from apps.assessments.attempt_service import AttemptStateMachine


class Command(BaseCommand):
    help = (
        'Force-expires every in-progress attempt whose time has run out. '
        'Meant to run from cron so attempts close even when no client polls.'
    )

    def handle(self, *args, **kwargs):
        expired, failed = AttemptStateMachine().expire_overdue()

        self.stdout.write(self.style.SUCCESS(f'Expired {expired} overdue attempt(s)'))
        if failed:
            self.stdout.write(self.style.ERROR(
                f'{failed} attempt(s) could not be expired; see the assessments log'
            ))
