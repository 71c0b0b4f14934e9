"""
Management command to reconcile recurring sessions with their schedules.

This command can be run on demand or periodically (e.g., daily via cron) so
every active schedule keeps sessions materialized across the horizon.
"""

from django.core.management.base import BaseCommand

from scheduling.auditor import IntegrityAuditor


class Command(BaseCommand):
    help = 'Audit recurring schedules and regenerate their future sessions'

    def add_arguments(self, parser):
        parser.add_argument(
            '--patient',
            type=int,
            action='append',
            dest='patient_ids',
            help='Only audit this patient (repeatable)'
        )
        parser.add_argument(
            '--months',
            type=int,
            default=None,
            help='Number of months ahead to materialize (default: SCHEDULING_HORIZON_MONTHS)'
        )
        parser.add_argument(
            '--workers',
            type=int,
            default=None,
            help='Number of schedules reconciled concurrently (default: SCHEDULING_AUDIT_MAX_WORKERS)'
        )
        parser.add_argument(
            '--only-unhealthy',
            action='store_true',
            help='Only reconcile schedules that have no future sessions'
        )
        parser.add_argument(
            '--check',
            action='store_true',
            help='Report schedules without future sessions and exit without writing'
        )

    def handle(self, *args, **options):
        auditor = IntegrityAuditor(
            horizon_months=options['months'],
            max_workers=options['workers']
        )

        if options['check']:
            result = auditor.check_integrity()
            self.stdout.write(
                f'{result.total} active schedule(s): {result.healthy} healthy, '
                f'{len(result.affected_schedule_ids)} without future sessions'
            )
            for schedule_id, patient_id in zip(result.affected_schedule_ids, result.affected_patient_ids):
                self.stdout.write(f'  schedule {schedule_id} (patient {patient_id})')
            return

        self.stdout.write('Auditing recurring schedules...')

        report = auditor.audit_all(
            patient_ids=options['patient_ids'],
            only_unhealthy=options['only_unhealthy']
        )
        summary = report.as_dict()

        for failure in summary['failures']:
            self.stderr.write(
                self.style.ERROR(
                    f"Schedule {failure['schedule_id']} (patient {failure['patient_id']}): "
                    f"{failure['error_type']}: {failure['error']}"
                )
            )

        self.stdout.write(
            self.style.SUCCESS(
                f"Successfully audited {summary['succeeded']} schedule(s): "
                f"{summary['inserted']} session(s) created, {summary['deleted']} removed, "
                f"{summary['failed']} failure(s)"
            )
        )
