"""
Recurring monitoring and settlement jobs.

Each job runs in its own wrapper so a failing sweep is logged and the next
run still happens. ``run_all`` executes every sweep once, in schedule order.
"""
from typing import Callable, Dict, List, Tuple

from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.base import BaseScheduler
from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from django.conf import settings
from django.db import close_old_connections
from loguru import logger

from milestonepay.services import PaymentPlatform


def _purge_audit_log(platform: PaymentPlatform):
    return platform.audit.cleanup_old_logs(purge=getattr(settings, 'MILESTONEPAY_AUDIT_PURGE', False))


def monitoring_jobs(platform: PaymentPlatform) -> List[Tuple[str, str, Callable[[], object], object]]:
    """``(job_id, name, func, trigger)`` for every recurring sweep."""
    monitor = platform.monitor
    return [
        ('alert_rules', 'Evaluate alert rules',
         monitor.run_alert_rules, IntervalTrigger(minutes=5)),
        ('auto_approve', 'Auto-approve milestones past review',
         platform.approvals.auto_approve_due, IntervalTrigger(minutes=15)),
        ('pre_charge_notices', 'Send pre-charge notices',
         platform.approvals.send_pre_charge_notices, IntervalTrigger(minutes=30)),
        ('payout_release', 'Release payouts past the dispute window',
         platform.disputes.release_due_payouts, IntervalTrigger(minutes=30)),
        ('charge_reconciliation', 'Reconcile unconfirmed charges',
         platform.executor.reconcile_unconfirmed, IntervalTrigger(minutes=10)),
        ('rail_failures', 'Check payment rail failure rates',
         monitor.check_rail_failures, IntervalTrigger(hours=1)),
        ('alert_digest', 'Send alert digest',
         monitor.send_alert_digest, IntervalTrigger(hours=1)),
        ('authorization_expiry', 'Expire and warn about authorizations',
         monitor.check_expiring_authorizations, CronTrigger(hour=2, minute=0)),
        ('usage_limits', 'Check authorization usage',
         monitor.check_usage_limits, CronTrigger(day_of_week='mon', hour=3, minute=0)),
        ('audit_retention', 'Audit log retention',
         lambda: _purge_audit_log(platform), CronTrigger(hour=4, minute=30)),
    ]


def isolated(job_id: str, func: Callable[[], object]) -> Callable[[], object]:
    def run():
        close_old_connections()
        try:
            result = func()
        except Exception as exc:
            logger.exception('scheduled job {} failed: {}', job_id, exc)
            return None
        finally:
            close_old_connections()
        logger.info('scheduled job {} finished: {}', job_id, result)
        return result

    run.__name__ = f'run_{job_id}'
    return run


def build_scheduler(platform: PaymentPlatform, scheduler: BaseScheduler = None) -> BaseScheduler:
    if scheduler is None:
        scheduler = BlockingScheduler(
            jobstores={'default': MemoryJobStore()},
            job_defaults={'coalesce': True, 'max_instances': 1, 'misfire_grace_time': 120},
            timezone='UTC',
        )
    for job_id, name, func, trigger in monitoring_jobs(platform):
        scheduler.add_job(
            isolated(job_id, func),
            trigger=trigger,
            id=job_id,
            name=name,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
    return scheduler


def run_all(platform: PaymentPlatform) -> Dict[str, object]:
    return {job_id: isolated(job_id, func)() for job_id, _, func, _ in monitoring_jobs(platform)}
