from unittest.mock import patch

from apscheduler.schedulers.background import BackgroundScheduler
from django.core.management import call_command

from milestonepay.scheduler import build_scheduler, monitoring_jobs, run_all
from milestonepay.testing import PlatformTestCase

JOB_IDS = [
    'alert_rules', 'auto_approve', 'pre_charge_notices', 'payout_release', 'charge_reconciliation',
    'rail_failures', 'alert_digest', 'authorization_expiry', 'usage_limits', 'audit_retention',
]


# Closing the connection would end the test transaction.
@patch('milestonepay.scheduler.close_old_connections')
class SchedulerTests(PlatformTestCase):
    def test_every_sweep_is_scheduled(self, _):
        self.assertEqual([job[0] for job in monitoring_jobs(self.platform)], JOB_IDS)

        scheduler = build_scheduler(self.platform, BackgroundScheduler(timezone='UTC'))

        self.assertEqual(sorted(job.id for job in scheduler.get_jobs()), sorted(JOB_IDS))

    def test_run_all(self, _):
        results = run_all(self.platform)

        self.assertEqual(list(results), JOB_IDS)
        self.assertEqual(results['auto_approve'], {'approved': 0, 'charged': 0, 'held': 0, 'pending': 0, 'failed': 0})
        self.assertEqual(results['charge_reconciliation'], {'settled': 0, 'failed': 0, 'unconfirmed': 0})
        self.assertEqual(results['alert_digest'], 0)

    def test_failing_sweep_does_not_stop_the_rest(self, _):
        with patch.object(self.platform.monitor, 'check_usage_limits', side_effect=RuntimeError('db gone')):
            results = run_all(self.platform)

        self.assertIsNone(results['usage_limits'])
        self.assertEqual(results['audit_retention'], 0)

    def test_command_runs_once(self, _):
        with patch('milestonepay.management.commands.run_monitoring.build_platform', return_value=self.platform), \
                patch('milestonepay.management.commands.run_monitoring.run_all',
                      return_value={'alert_rules': []}) as run:
            call_command('run_monitoring', '--once')

        run.assert_called_once_with(self.platform)
