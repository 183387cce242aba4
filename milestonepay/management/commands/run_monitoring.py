from django.core.management.base import BaseCommand
from loguru import logger

from milestonepay.scheduler import build_scheduler, run_all
from milestonepay.services import build_platform


class Command(BaseCommand):
    help = 'Run the payment monitoring, auto-approval and payout sweeps on their schedules.'

    def add_arguments(self, parser):
        parser.add_argument('--once', action='store_true', help='Run every sweep a single time and exit.')

    def handle(self, *args, **options):
        platform = build_platform()
        if options['once']:
            for job_id, result in run_all(platform).items():
                self.stdout.write(f'{job_id}: {result}')
            return

        scheduler = build_scheduler(platform)
        logger.info('starting monitoring scheduler with {} jobs', len(scheduler.get_jobs()))
        try:
            scheduler.start()
        except (KeyboardInterrupt, SystemExit):
            logger.info('monitoring scheduler stopped')
