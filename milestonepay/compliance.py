"""
Compliance reporting over a closed period.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List

from django.db.models import Count, Q, Sum
from django.utils import timezone
from loguru import logger

from milestonepay.audit import AuditLogger, EventType
from milestonepay.errors import ValidationError
from milestonepay.models import Alert, AuditEvent, Authorization, Charge, Dispute

ZERO = Decimal('0.00')
FAILURE_RATE_LIMIT = Decimal('0.10')
STALE_DISPUTE_DAYS = 7


def _sum(queryset, field: str) -> Decimal:
    return queryset.aggregate(total=Sum(field))['total'] or ZERO


class ComplianceReporter:
    def __init__(self, audit: AuditLogger):
        self.audit = audit

    def generate_report(self, period_start: datetime, period_end: datetime,
                        generated_by: str = 'system') -> Dict[str, Any]:
        if period_start >= period_end:
            raise ValidationError('periodStart must be before periodEnd.')

        charges = Charge.objects.filter(created_at__gte=period_start, created_at__lt=period_end)
        by_status = dict(charges.values_list('status').annotate(total=Count('id')).order_by())
        settled = charges.filter(status__in=[Charge.Status.SUCCEEDED, Charge.Status.REFUNDED])
        attempted = sum(by_status.values())
        failed = by_status.get(Charge.Status.FAILED, 0)

        disputes = Dispute.objects.filter(opened_at__gte=period_start, opened_at__lt=period_end)
        resolved = Dispute.objects.filter(
            resolved_at__gte=period_start, resolved_at__lt=period_end)

        in_period = Q(timestamp__gte=period_start, timestamp__lt=period_end)
        expired = AuditEvent.objects.filter(in_period, event_type=EventType.AUTHORIZATION_EXPIRED).count()

        alerts = Alert.objects.filter(created_at__gte=period_start, created_at__lt=period_end)
        alerts_by_severity = dict(alerts.values_list('severity').annotate(total=Count('id')).order_by())

        chain = self.audit.verify_chain()
        report = {
            'periodStart': period_start,
            'periodEnd': period_end,
            'generatedAt': timezone.now(),
            'generatedBy': generated_by,
            'transactions': {
                'attempted': attempted,
                'succeeded': by_status.get(Charge.Status.SUCCEEDED, 0),
                'failed': failed,
                'refunded': by_status.get(Charge.Status.REFUNDED, 0),
                'grossVolume': _sum(settled, 'settled_amount'),
                'processorFees': _sum(settled, 'processor_fee'),
                'platformFees': _sum(settled, 'platform_fee'),
                'refundedAmount': _sum(charges, 'refunded_amount'),
            },
            'disputes': {
                'opened': disputes.count(),
                'resolved': resolved.filter(status=Dispute.Status.RESOLVED).count(),
                'closed': resolved.filter(status=Dispute.Status.CLOSED).count(),
                'refundAmount': _sum(resolved, 'refund_amount'),
            },
            'authorizations': {
                'created': Authorization.objects.filter(
                    authorized_at__gte=period_start, authorized_at__lt=period_end).count(),
                'revoked': Authorization.objects.filter(
                    revoked_at__gte=period_start, revoked_at__lt=period_end).count(),
                'expired': expired,
                'active': Authorization.objects.filter(status=Authorization.Status.ACTIVE).count(),
            },
            'alerts': alerts_by_severity,
            'auditIntegrity': {'valid': chain.valid, 'checked': chain.checked,
                               'brokenAt': chain.broken_at, 'reason': chain.reason},
            'complianceIssues': self._issues(attempted, failed, chain.valid, alerts_by_severity, period_end),
        }

        self.audit.log_event(
            user_id=generated_by,
            event_type=EventType.COMPLIANCE_REPORT,
            action='Compliance report generated',
            details={'periodStart': period_start, 'periodEnd': period_end,
                     'issues': len(report['complianceIssues'])},
        )
        logger.info('compliance report {} to {} generated by {}', period_start, period_end, generated_by)
        return report

    @staticmethod
    def _issues(attempted: int, failed: int, chain_valid: bool,
                alerts_by_severity: Dict[str, int], period_end: datetime) -> List[str]:
        issues = []
        if not chain_valid:
            issues.append('Audit log hash chain is broken.')
        if attempted and Decimal(failed) / Decimal(attempted) > FAILURE_RATE_LIMIT:
            issues.append(f'Payment failure rate {failed}/{attempted} exceeds 10%.')
        critical = alerts_by_severity.get('critical', 0)
        if critical:
            issues.append(f'{critical} critical alert(s) raised in the period.')
        stale = Dispute.objects.filter(
            status__in=Dispute.OPEN_STATUSES,
            opened_at__lt=period_end - timedelta(days=STALE_DISPUTE_DAYS),
        ).count()
        if stale:
            issues.append(f'{stale} dispute(s) open for more than {STALE_DISPUTE_DAYS} days.')
        return issues
