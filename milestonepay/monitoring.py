"""
Payment monitoring and alerting.

Every sweep is a plain method so the scheduler, the management command and
tests can drive it the same way. Rules are evaluated independently; a rule
that raises is reported as a ``monitoring_system_error`` alert and never
stops the others.
"""
from __future__ import annotations

import dataclasses
import json
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from django.conf import settings
from django.core.serializers.json import DjangoJSONEncoder
from django.db.models import Count, F, Q
from django.utils import timezone
from loguru import logger

from milestonepay.audit import SYSTEM_USER, AuditLogger, EventType
from milestonepay.errors import NotFoundError, ValidationError
from milestonepay.ledger import AuthorizationLedger
from milestonepay.models import (
    Alert,
    AuditEvent,
    Authorization,
    Charge,
    Milestone,
    PaymentMethod,
    Severity,
)
from milestonepay.notifications import Notifier
from milestonepay.risk import HIGH_RISK_SCORE, RiskAssessment

IMMEDIATE_SEVERITIES = (Severity.CRITICAL, Severity.HIGH)
SYSTEM_ERROR_RULE = 'monitoring_system_error'


@dataclass(frozen=True)
class AlertRule:
    rule_id: str
    name: str
    severity: str
    threshold: Decimal
    window_minutes: int
    cooldown_minutes: int
    min_events: int = 0
    enabled: bool = True

    @property
    def window(self) -> timedelta:
        return timedelta(minutes=self.window_minutes)

    @property
    def cooldown(self) -> timedelta:
        return timedelta(minutes=self.cooldown_minutes)


DEFAULT_RULES = (
    AlertRule('failed_2fa_attempts', 'Failed verification attempts', Severity.HIGH,
              Decimal('3'), 60, 30),
    AlertRule('unusual_payment_patterns', 'Unusual payment patterns', Severity.MEDIUM,
              Decimal('5'), 1440, 60),
    AlertRule('high_value_authorizations', 'High value authorization', Severity.MEDIUM,
              Decimal('10000'), 10, 60),
    AlertRule('multiple_failed_payments', 'Multiple failed payments', Severity.HIGH,
              Decimal('3'), 360, 60),
    AlertRule('revocation_spikes', 'Authorization revocation spike', Severity.MEDIUM,
              Decimal('10'), 1440, 120),
    AlertRule('geographic_anomalies', 'Geographic anomaly', Severity.MEDIUM,
              Decimal('3'), 60, 30),
    AlertRule('velocity_abuse', 'Payment velocity abuse', Severity.HIGH,
              Decimal('5'), 15, 60),
    AlertRule('high_risk_transaction', 'High risk transaction', Severity.CRITICAL,
              Decimal(HIGH_RISK_SCORE), 0, 30),
    AlertRule('payment_rail_failures', 'Payment rail failure rate', Severity.HIGH,
              Decimal('0.5'), 60, 60, min_events=5),
    AlertRule('authorization_usage_limit', 'Authorization usage limit', Severity.LOW,
              Decimal('0.8'), 0, 0),
    AlertRule(SYSTEM_ERROR_RULE, 'Monitoring system error', Severity.CRITICAL,
              Decimal('1'), 0, 15),
)

_OVERRIDABLE = ('severity', 'threshold', 'window_minutes', 'cooldown_minutes', 'min_events', 'enabled')


def apply_overrides(rule: AlertRule, changes: Dict[str, Any]) -> AlertRule:
    unknown = set(changes) - set(_OVERRIDABLE)
    if unknown:
        raise ValidationError(f'Unknown alert rule fields for {rule.rule_id}: {", ".join(sorted(unknown))}')
    values = dict(changes)
    if 'threshold' in values:
        values['threshold'] = Decimal(str(values['threshold']))
    return dataclasses.replace(rule, **values)


def load_rules(overrides: Optional[Dict[str, Dict[str, Any]]] = None) -> Dict[str, AlertRule]:
    """Default rules merged with ``{rule_id: {field: value}}`` overrides."""
    rules = {rule.rule_id: rule for rule in DEFAULT_RULES}
    for rule_id, changes in (overrides or {}).items():
        if rule_id not in rules:
            logger.warning('ignoring override for unknown alert rule {}', rule_id)
            continue
        rules[rule_id] = apply_overrides(rules[rule_id], changes)
    return rules


def _metadata(data: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    return json.loads(json.dumps(data or {}, cls=DjangoJSONEncoder))


class PaymentMonitor:
    def __init__(self, ledger: AuthorizationLedger, audit: AuditLogger, notifier: Notifier):
        self.ledger = ledger
        self.audit = audit
        self.notifier = notifier
        overrides = dict(getattr(settings, 'MILESTONEPAY_ALERT_RULES', None) or {})
        overrides.setdefault('authorization_usage_limit', {
            'threshold': getattr(settings, 'MILESTONEPAY_USAGE_ALERT_RATIO', '0.8')})
        self.rules = load_rules(overrides)
        self.recipients = list(getattr(settings, 'MILESTONEPAY_SECURITY_ALERT_EMAILS', []))
        self.auto_remediation = getattr(settings, 'MILESTONEPAY_AUTO_REMEDIATION', True)
        self.expiry_warning = timedelta(days=getattr(settings, 'MILESTONEPAY_EXPIRY_WARNING_DAYS', 30))

    # Rules

    def get_rule(self, rule_id: str) -> AlertRule:
        try:
            return self.rules[rule_id]
        except KeyError:
            raise NotFoundError(f'Alert rule {rule_id} not found.')

    def update_rule(self, rule_id: str, **changes) -> AlertRule:
        rule = apply_overrides(self.get_rule(rule_id), changes)
        self.rules[rule_id] = rule
        logger.info('alert rule {} updated: {}', rule_id, changes)
        return rule

    def get_alerts(self, severity: Optional[str] = None, rule_id: Optional[str] = None,
                   since=None, limit: int = 100) -> List[Alert]:
        queryset = Alert.objects.all()
        if severity:
            queryset = queryset.filter(severity=severity)
        if rule_id:
            queryset = queryset.filter(rule_id=rule_id)
        if since is not None:
            queryset = queryset.filter(created_at__gte=since)
        return list(queryset[:limit])

    # Firing

    def in_cooldown(self, rule: AlertRule, subject_key: str) -> bool:
        if rule.cooldown_minutes <= 0:
            return False
        return Alert.objects.filter(
            rule_id=rule.rule_id,
            subject_key=subject_key,
            created_at__gt=timezone.now() - rule.cooldown,
        ).exists()

    def fire_alert(
        self,
        rule_id: str,
        title: str,
        description: str,
        subject_key: str = '',
        metadata: Optional[Dict[str, Any]] = None,
        user_id: str = '',
        contract_id: Any = '',
        ip_address: Optional[str] = None,
    ) -> Optional[Alert]:
        """
        Persist, audit and dispatch an alert unless the rule is disabled or
        the same (rule, subject) pair fired within the rule's cooldown.

        Returns the new ``Alert`` or ``None`` when nothing fired.
        """
        rule = self.get_rule(rule_id)
        if not rule.enabled:
            return None
        if self.in_cooldown(rule, subject_key):
            logger.debug('alert {} for {} suppressed by cooldown', rule_id, subject_key or '-')
            return None

        alert = Alert.objects.create(
            rule_id=rule_id,
            subject_key=subject_key,
            severity=rule.severity,
            title=title,
            description=description,
            metadata=_metadata(metadata),
            user_id=str(user_id or ''),
            contract_id=str(contract_id or ''),
            ip_address=ip_address or None,
            created_at=timezone.now(),
        )
        logger.warning('[ALERT] {}: {} ({})', rule.severity.upper(), title, subject_key or '-')
        self.audit.log_security_event(
            str(user_id or SYSTEM_USER),
            EventType.ALERT_TRIGGERED,
            title,
            severity=rule.severity,
            details={'ruleId': rule_id, 'alertId': alert.pk, 'subject': subject_key,
                     'description': description, 'metadata': alert.metadata},
            ip_address=ip_address,
            contract_id=contract_id or '',
            entity_id=alert.pk,
        )

        if rule.severity in IMMEDIATE_SEVERITIES:
            self._dispatch_now(alert)
        if rule.severity == Severity.CRITICAL and self.auto_remediation:
            self.remediate(alert)
        return alert

    def _dispatch_now(self, alert: Alert) -> None:
        sent = self.notifier.notify_many(self.recipients, 'security_alert', {
            'severity': alert.severity.upper(),
            'title': alert.title,
            'description': alert.description,
            'rule_id': alert.rule_id,
            'metadata': json.dumps(alert.metadata, sort_keys=True),
        })
        if sent:
            Alert.objects.filter(pk=alert.pk).update(notified_at=timezone.now())

    def remediate(self, alert: Alert) -> int:
        """
        Suspend the active authorizations behind a critical alert.

        The alert's contract wins over its user; an alert with neither has
        no target. Suspension is a conditional update, so running this twice
        suspends nothing new.
        """
        if alert.contract_id:
            targets = Authorization.objects.select_related('contract').filter(
                contract_id=alert.contract_id, status=Authorization.Status.ACTIVE)
        elif alert.user_id and alert.user_id != SYSTEM_USER:
            targets = Authorization.objects.select_related('contract').filter(
                client_id=alert.user_id, status=Authorization.Status.ACTIVE)
        else:
            return 0

        reason = f'{alert.title} (alert {alert.pk})'
        suspended = sum(1 for authorization in targets if self.ledger.suspend_authorization(authorization, reason))
        if suspended:
            Alert.objects.filter(pk=alert.pk).update(
                remediation=f'suspended {suspended} authorization(s)')
            self.audit.log_admin_action(
                SYSTEM_USER, f'Auto-remediation for alert {alert.pk}',
                entity_id=alert.pk, details={'ruleId': alert.rule_id, 'suspended': suspended})
            logger.warning('auto-remediation for alert {} suspended {} authorization(s)', alert.pk, suspended)
        return suspended

    def report_high_risk(self, payer: str, milestone: Milestone, assessment: RiskAssessment, context) -> Optional[Alert]:
        return self.fire_alert(
            'high_risk_transaction',
            'High risk transaction',
            f'Charge for milestone {milestone.pk} scored {assessment.score}/10.',
            subject_key=f'user:{payer}',
            metadata={'score': assessment.score, 'triggers': list(assessment.triggers),
                      'amount': milestone.amount, 'milestoneId': milestone.pk},
            user_id=payer,
            contract_id=milestone.contract_id,
            ip_address=getattr(context, 'ip_address', None),
        )

    # Near-real-time rules

    def run_alert_rules(self) -> List[Alert]:
        fired: List[Alert] = []
        checks: List[Callable[[], List[Alert]]] = [
            self.check_failed_2fa_attempts,
            self.check_unusual_payment_patterns,
            self.check_high_value_authorizations,
            self.check_multiple_failed_payments,
            self.check_revocation_spikes,
            self.check_geographic_anomalies,
            self.check_velocity_abuse,
        ]
        for check in checks:
            try:
                fired.extend(check())
            except Exception as exc:
                logger.exception('monitoring check {} failed: {}', check.__name__, exc)
                self._report_system_error(check.__name__, exc)
        return fired

    def _report_system_error(self, check_name: str, exc: Exception) -> None:
        try:
            self.fire_alert(
                SYSTEM_ERROR_RULE,
                'Monitoring system error',
                f'{check_name} failed: {exc}',
                subject_key=check_name,
                metadata={'check': check_name, 'error': str(exc)},
            )
        except Exception as nested:
            logger.error('could not report monitoring failure in {}: {}', check_name, nested)

    def _since(self, rule: AlertRule):
        return timezone.now() - rule.window

    def _fire_many(self, rule: AlertRule, rows, build) -> List[Alert]:
        fired = []
        for row in rows:
            alert = self.fire_alert(rule.rule_id, **build(row))
            if alert is not None:
                fired.append(alert)
        return fired

    def check_failed_2fa_attempts(self) -> List[Alert]:
        rule = self.rules['failed_2fa_attempts']
        if not rule.enabled:
            return []
        rows = (
            AuditEvent.objects
            .filter(event_type=EventType.TFA_FAILED, timestamp__gte=self._since(rule))
            .values('user_id').annotate(failures=Count('id'))
            .filter(failures__gte=int(rule.threshold)).order_by()
        )
        return self._fire_many(rule, rows, lambda row: {
            'title': 'Multiple failed verification attempts',
            'description': f'User {row["user_id"]} failed verification {row["failures"]} times '
                           f'in {rule.window_minutes} minutes.',
            'subject_key': f'user:{row["user_id"]}',
            'metadata': {'failures': row['failures']},
            'user_id': row['user_id'],
        })

    def check_unusual_payment_patterns(self) -> List[Alert]:
        rule = self.rules['unusual_payment_patterns']
        if not rule.enabled:
            return []
        rows = (
            Charge.objects.filter(created_at__gte=self._since(rule))
            .values('contract_id').annotate(payments=Count('id'))
            .filter(payments__gte=int(rule.threshold)).order_by()
        )
        return self._fire_many(rule, rows, lambda row: {
            'title': 'Unusual payment pattern',
            'description': f'Contract {row["contract_id"]} had {row["payments"]} payments '
                           f'in {rule.window_minutes // 60} hours.',
            'subject_key': f'contract:{row["contract_id"]}',
            'metadata': {'payments': row['payments']},
            'contract_id': row['contract_id'],
        })

    def check_high_value_authorizations(self) -> List[Alert]:
        rule = self.rules['high_value_authorizations']
        if not rule.enabled:
            return []
        rows = Authorization.objects.filter(
            authorized_at__gte=self._since(rule), total_authorized__gte=rule.threshold)
        return self._fire_many(rule, rows, lambda authorization: {
            'title': 'High value authorization',
            'description': f'Authorization of {authorization.total_authorized} created for '
                           f'contract {authorization.contract_id}.',
            'subject_key': f'authorization:{authorization.authorization_id}',
            'metadata': {'totalAuthorized': authorization.total_authorized,
                         'method': authorization.method},
            'user_id': authorization.client_id,
            'contract_id': authorization.contract_id,
            'ip_address': authorization.ip_address,
        })

    def check_multiple_failed_payments(self) -> List[Alert]:
        rule = self.rules['multiple_failed_payments']
        if not rule.enabled:
            return []
        rows = (
            Charge.objects.filter(status=Charge.Status.FAILED, created_at__gte=self._since(rule))
            .values('contract_id').annotate(failures=Count('id'))
            .filter(failures__gte=int(rule.threshold)).order_by()
        )
        return self._fire_many(rule, rows, lambda row: {
            'title': 'Multiple failed payments',
            'description': f'Contract {row["contract_id"]} had {row["failures"]} failed payments '
                           f'in {rule.window_minutes // 60} hours.',
            'subject_key': f'contract:{row["contract_id"]}',
            'metadata': {'failures': row['failures']},
            'contract_id': row['contract_id'],
        })

    def check_revocation_spikes(self) -> List[Alert]:
        rule = self.rules['revocation_spikes']
        if not rule.enabled:
            return []
        revocations = Authorization.objects.filter(
            status=Authorization.Status.REVOKED, revoked_at__gte=self._since(rule)).count()
        if revocations < int(rule.threshold):
            return []
        return self._fire_many(rule, [revocations], lambda count: {
            'title': 'Authorization revocation spike',
            'description': f'{count} authorizations revoked in {rule.window_minutes // 60} hours.',
            'subject_key': 'platform',
            'metadata': {'revocations': count},
        })

    def check_geographic_anomalies(self) -> List[Alert]:
        rule = self.rules['geographic_anomalies']
        if not rule.enabled:
            return []
        rows = (
            AuditEvent.objects
            .filter(timestamp__gte=self._since(rule), ip_address__isnull=False)
            .exclude(user_id=SYSTEM_USER)
            .values('user_id').annotate(locations=Count('ip_address', distinct=True))
            .filter(locations__gt=int(rule.threshold)).order_by()
        )
        return self._fire_many(rule, rows, lambda row: {
            'title': 'Access from multiple locations',
            'description': f'User {row["user_id"]} was active from {row["locations"]} addresses '
                           f'in {rule.window_minutes} minutes.',
            'subject_key': f'user:{row["user_id"]}',
            'metadata': {'locations': row['locations']},
            'user_id': row['user_id'],
        })

    def check_velocity_abuse(self) -> List[Alert]:
        rule = self.rules['velocity_abuse']
        if not rule.enabled:
            return []
        rows = (
            Charge.objects.filter(created_at__gte=self._since(rule))
            .values('authorization__client_id').annotate(attempts=Count('id'))
            .filter(attempts__gte=int(rule.threshold)).order_by()
        )
        return self._fire_many(rule, rows, lambda row: {
            'title': 'Payment velocity abuse',
            'description': f'User {row["authorization__client_id"]} made {row["attempts"]} payment '
                           f'attempts in {rule.window_minutes} minutes.',
            'subject_key': f'user:{row["authorization__client_id"]}',
            'metadata': {'attempts': row['attempts']},
            'user_id': row['authorization__client_id'],
        })

    # Scheduled sweeps

    def check_rail_failures(self) -> List[Alert]:
        """Hourly: per-method failure rate over the rule window."""
        rule = self.rules['payment_rail_failures']
        if not rule.enabled:
            return []
        rows = (
            Charge.objects
            .filter(created_at__gte=self._since(rule))
            .exclude(status=Charge.Status.PENDING)
            .values('method')
            .annotate(attempts=Count('id'), failures=Count('id', filter=Q(status=Charge.Status.FAILED)))
            .order_by()
        )
        fired = []
        for row in rows:
            if row['attempts'] < rule.min_events:
                continue
            rate = Decimal(row['failures']) / Decimal(row['attempts'])
            if rate < rule.threshold:
                continue
            alert = self.fire_alert(
                rule.rule_id,
                f'{PaymentMethod(row["method"]).label} payments failing',
                f'{row["failures"]} of {row["attempts"]} {row["method"]} payments failed '
                f'in the last {rule.window_minutes} minutes.',
                subject_key=f'method:{row["method"]}',
                metadata={'method': row['method'], 'attempts': row['attempts'],
                          'failures': row['failures'], 'failureRate': round(float(rate), 3)},
            )
            if alert is not None:
                fired.append(alert)
        return fired

    def check_expiring_authorizations(self) -> Dict[str, int]:
        """
        Daily: expire authorizations past ``expires_at`` and warn, once, about
        those expiring within the warning window.
        """
        now = timezone.now()
        summary = {'expired': 0, 'warned': 0}

        overdue = Authorization.objects.select_related('contract').filter(
            status__in=Authorization.LIVE_STATUSES, expires_at__lte=now)
        for authorization in overdue:
            if self.ledger.expire_authorization(authorization):
                summary['expired'] += 1

        expiring = Authorization.objects.select_related('contract').filter(
            status=Authorization.Status.ACTIVE,
            expires_at__gt=now,
            expires_at__lte=now + self.expiry_warning,
            expiry_warning_sent_at__isnull=True,
        )
        for authorization in expiring:
            claimed = Authorization.objects.filter(
                pk=authorization.pk, expiry_warning_sent_at__isnull=True,
            ).update(expiry_warning_sent_at=now)
            if not claimed:
                continue
            summary['warned'] += 1
            self.audit.log_authorization_event(
                authorization, EventType.AUTHORIZATION_EXPIRING,
                'Payment method expiring soon', user_id=SYSTEM_USER,
                details={'expiresAt': authorization.expires_at})
            self.notifier.notify(authorization.contract.client_email, 'authorization_expiring', {
                'contract': authorization.contract.title,
                'expires_at': authorization.expires_at,
            })

        if summary['expired'] or summary['warned']:
            logger.info('authorization expiry sweep: {}', summary)
        return summary

    def check_usage_limits(self) -> int:
        """Weekly: notify, once per authorization, when usage crosses the ratio."""
        now = timezone.now()
        rule = self.rules['authorization_usage_limit']
        crossed = Authorization.objects.select_related('contract').filter(
            status=Authorization.Status.ACTIVE,
            usage_alert_sent_at__isnull=True,
            total_charged__gte=F('total_authorized') * rule.threshold,
        )
        sent = 0
        for authorization in crossed:
            claimed = Authorization.objects.filter(
                pk=authorization.pk, usage_alert_sent_at__isnull=True,
            ).update(usage_alert_sent_at=now)
            if not claimed:
                continue
            sent += 1
            percent = int(authorization.total_charged / authorization.total_authorized * 100)
            self.notifier.notify(authorization.contract.client_email, 'authorization_usage', {
                'usage_percent': percent,
                'total_charged': authorization.total_charged,
                'total_authorized': authorization.total_authorized,
                'contract': authorization.contract.title,
            })
            self.fire_alert(
                rule.rule_id,
                'Authorization nearing its limit',
                f'Authorization {authorization.authorization_id} is {percent}% used.',
                subject_key=f'authorization:{authorization.authorization_id}',
                metadata={'usagePercent': percent, 'totalCharged': authorization.total_charged,
                          'totalAuthorized': authorization.total_authorized},
                user_id=authorization.client_id,
                contract_id=authorization.contract_id,
            )
        return sent

    def send_alert_digest(self) -> int:
        """Hourly: batch undelivered alerts into one message per recipient."""
        pending = list(Alert.objects.filter(notified_at__isnull=True).order_by('created_at'))
        if not pending:
            return 0
        lines = '\n'.join(
            f'{alert.created_at:%Y-%m-%d %H:%M} [{alert.severity}] {alert.title}: {alert.description}'
            for alert in pending
        )
        sent = self.notifier.notify_many(self.recipients, 'alert_digest', {
            'count': len(pending),
            'lines': lines,
        })
        if not sent:
            logger.warning('alert digest of {} alerts was not delivered', len(pending))
            return 0
        Alert.objects.filter(pk__in=[alert.pk for alert in pending]).update(notified_at=timezone.now())
        return len(pending)

    def get_monitoring_stats(self) -> Dict[str, Any]:
        now = timezone.now()
        by_status = dict(
            Authorization.objects.values_list('status').annotate(total=Count('id')).order_by())
        return {
            'activeAuthorizations': by_status.get(Authorization.Status.ACTIVE, 0),
            'suspendedAuthorizations': by_status.get(Authorization.Status.SUSPENDED, 0),
            'revokedAuthorizations': by_status.get(Authorization.Status.REVOKED, 0),
            'expiredAuthorizations': by_status.get(Authorization.Status.EXPIRED, 0),
            'expiringSoon': Authorization.objects.filter(
                status=Authorization.Status.ACTIVE,
                expires_at__gt=now,
                expires_at__lte=now + self.expiry_warning,
            ).count(),
            'alertsLast24h': Alert.objects.filter(created_at__gte=now - timedelta(hours=24)).count(),
            'undeliveredAlerts': Alert.objects.filter(notified_at__isnull=True).count(),
            'generatedAt': now,
        }
