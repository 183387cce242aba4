"""
Append-only, hash-chained audit log.

Every event stores the SHA-256 of its own payload together with the hash of
the event before it, so editing or deleting a row in the middle of the log is
detectable by ``verify_chain``.
"""
from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone as datetime_timezone
from typing import Any, Dict, Iterable, List, Optional

from django.conf import settings
from django.core.exceptions import ValidationError as DjangoValidationError
from django.core.serializers.json import DjangoJSONEncoder
from django.db import IntegrityError, transaction
from django.db.models import Count, Q
from django.utils import timezone
from loguru import logger

from milestonepay.errors import AuditIntegrityError, NotFoundError, ValidationError
from milestonepay.models import AuditEvent, Severity


class EventType:
    AUTHORIZATION_CREATED = 'authorization_created'
    AUTHORIZATION_REVOKED = 'authorization_revoked'
    AUTHORIZATION_EXPIRED = 'authorization_expired'
    AUTHORIZATION_SUSPENDED = 'authorization_suspended'
    AUTHORIZATION_EXPIRING = 'authorization_expiring'
    PAYMENT_SUCCESS = 'payment_success'
    PAYMENT_FAILED = 'payment_failed'
    PAYMENT_UNCONFIRMED = 'payment_unconfirmed'
    PAYMENT_REFUNDED = 'payment_refunded'
    PAYOUT_RELEASED = 'payout_released'
    MILESTONE_APPROVED = 'milestone_approved'
    MILESTONE_AUTO_APPROVED = 'milestone_auto_approved'
    DISPUTE_OPENED = 'dispute_opened'
    DISPUTE_INVESTIGATING = 'dispute_investigating'
    DISPUTE_RESOLVED = 'dispute_resolved'
    DISPUTE_CLOSED = 'dispute_closed'
    TFA_SENT = '2fa_sent'
    TFA_BYPASSED = '2fa_bypassed'
    TFA_VERIFIED = '2fa_verified'
    TFA_FAILED = '2fa_failed'
    TFA_CODE_ISSUED = '2fa_code_issued'
    DEVICE_TRUSTED = 'device_trusted'
    SECURITY_SETTINGS_CHANGED = 'security_settings_changed'
    HIGH_RISK_TRANSACTION = 'high_risk_transaction'
    ALERT_TRIGGERED = 'alert_triggered'
    ADMIN_ACTION = 'admin_action'
    COMPLIANCE_REPORT = 'compliance_report'


SYSTEM_USER = 'system'

TIMEFRAMES = {
    'day': timedelta(days=1),
    'week': timedelta(days=7),
    'month': timedelta(days=30),
    'year': timedelta(days=365),
}

MAX_APPEND_ATTEMPTS = 5


@dataclass(frozen=True)
class ChainReport:
    valid: bool
    checked: int
    broken_at: Optional[int] = None
    reason: Optional[str] = None


def _normalize_details(details: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    # Round-trip through JSON so the stored value hashes the same after reload.
    return json.loads(json.dumps(details or {}, cls=DjangoJSONEncoder))


def _timestamp_text(timestamp: datetime) -> str:
    return timestamp.astimezone(datetime_timezone.utc).isoformat()


def compute_integrity_hash(
    *,
    user_id: str,
    event_type: str,
    action: str,
    timestamp: datetime,
    details: Dict[str, Any],
    previous_hash: str,
) -> str:
    payload = json.dumps(
        {
            'userId': user_id,
            'eventType': event_type,
            'action': action,
            'timestamp': _timestamp_text(timestamp),
            'details': details,
            'previousHash': previous_hash,
        },
        sort_keys=True,
        separators=(',', ':'),
    )
    return hashlib.sha256(payload.encode('utf-8')).hexdigest()


def _event_hash(event: AuditEvent) -> str:
    return compute_integrity_hash(
        user_id=event.user_id,
        event_type=event.event_type,
        action=event.action,
        timestamp=event.timestamp,
        details=event.details,
        previous_hash=event.previous_hash,
    )


class AuditLogger:
    def __init__(
        self,
        retention_years: Optional[int] = None,
        security_retention_years: Optional[int] = None,
    ):
        self.retention_years = retention_years or getattr(
            settings, 'MILESTONEPAY_AUDIT_RETENTION_YEARS', 7)
        self.security_retention_years = security_retention_years or getattr(
            settings, 'MILESTONEPAY_SECURITY_RETENTION_YEARS', 2)

    def log_event(
        self,
        *,
        user_id: str,
        event_type: str,
        action: str,
        details: Optional[Dict[str, Any]] = None,
        contract_id: Any = '',
        entity_id: Any = '',
        ip_address: Optional[str] = None,
        user_agent: str = '',
        severity: str = Severity.INFO,
        compliance_relevant: bool = True,
    ) -> AuditEvent:
        normalized = _normalize_details(details)
        retention = self.retention_years if compliance_relevant else self.security_retention_years

        for attempt in range(1, MAX_APPEND_ATTEMPTS + 1):
            try:
                with transaction.atomic():
                    last = AuditEvent.objects.only('sequence', 'integrity_hash').order_by('-sequence').first()
                    previous_hash = last.integrity_hash if last else ''
                    timestamp = timezone.now()
                    event = AuditEvent(
                        sequence=(last.sequence + 1) if last else 1,
                        user_id=str(user_id or SYSTEM_USER),
                        contract_id=str(contract_id or ''),
                        entity_id=str(entity_id or ''),
                        event_type=event_type,
                        action=action[:255],
                        details=normalized,
                        ip_address=ip_address or None,
                        user_agent=user_agent or '',
                        severity=severity,
                        compliance_relevant=compliance_relevant,
                        retention_years=retention,
                        timestamp=timestamp,
                        previous_hash=previous_hash,
                    )
                    event.integrity_hash = _event_hash(event)
                    event.save(force_insert=True)
            except IntegrityError:
                logger.debug('audit sequence collision on attempt {}, retrying', attempt)
                continue

            logger.debug('audit event {} #{} recorded', event_type, event.sequence)
            return event

        raise IntegrityError('Unable to append audit event after repeated sequence collisions.')

    # Typed helpers

    def log_authorization_event(self, authorization, event_type: str, action: str,
                                severity: str = Severity.INFO, user_id: Optional[str] = None,
                                details: Optional[Dict[str, Any]] = None) -> AuditEvent:
        payload = {
            'authorizationId': str(authorization.authorization_id),
            'status': authorization.status,
            'method': authorization.method,
            'maxPerMilestone': authorization.max_per_milestone,
            'totalAuthorized': authorization.total_authorized,
            'totalCharged': authorization.total_charged,
        }
        payload.update(details or {})
        return self.log_event(
            user_id=user_id or authorization.client_id,
            event_type=event_type,
            action=action,
            details=payload,
            contract_id=authorization.contract_id,
            entity_id=authorization.authorization_id,
            ip_address=authorization.ip_address,
            user_agent=authorization.user_agent,
            severity=severity,
        )

    def log_payment_event(self, charge, event_type: str, action: str, user_id: str,
                          severity: str = Severity.INFO,
                          details: Optional[Dict[str, Any]] = None) -> AuditEvent:
        payload = {
            'paymentId': str(charge.payment_id),
            'milestoneId': charge.milestone_id,
            'amount': charge.amount,
            'method': charge.method,
            'status': charge.status,
            'externalChargeId': charge.external_charge_id,
        }
        payload.update(details or {})
        return self.log_event(
            user_id=user_id,
            event_type=event_type,
            action=action,
            details=payload,
            contract_id=charge.contract_id,
            entity_id=charge.payment_id,
            severity=severity,
        )

    def log_approval_event(self, milestone, user_id: str, event_type: str = EventType.MILESTONE_APPROVED,
                           details: Optional[Dict[str, Any]] = None) -> AuditEvent:
        payload = {'milestoneId': milestone.pk, 'amount': milestone.amount, 'status': milestone.status}
        payload.update(details or {})
        return self.log_event(
            user_id=user_id,
            event_type=event_type,
            action=f'Milestone {milestone.pk} approved',
            details=payload,
            contract_id=milestone.contract_id,
            entity_id=milestone.pk,
        )

    def log_dispute_event(self, dispute, event_type: str, action: str, user_id: str,
                          severity: str = Severity.WARNING,
                          details: Optional[Dict[str, Any]] = None) -> AuditEvent:
        payload = {
            'disputeId': str(dispute.dispute_id),
            'paymentId': str(dispute.charge.payment_id),
            'amount': dispute.amount,
            'status': dispute.status,
        }
        payload.update(details or {})
        return self.log_event(
            user_id=user_id,
            event_type=event_type,
            action=action,
            details=payload,
            contract_id=dispute.contract_id,
            entity_id=dispute.dispute_id,
            severity=severity,
        )

    def log_admin_action(self, admin_id: str, action: str, entity_id: Any = '',
                         details: Optional[Dict[str, Any]] = None) -> AuditEvent:
        return self.log_event(
            user_id=admin_id,
            event_type=EventType.ADMIN_ACTION,
            action=action,
            details=details,
            entity_id=entity_id,
            severity=Severity.WARNING,
        )

    def log_security_event(self, user_id: str, event_type: str, action: str,
                           severity: str = Severity.INFO, details: Optional[Dict[str, Any]] = None,
                           ip_address: Optional[str] = None, user_agent: str = '',
                           entity_id: Any = '', contract_id: Any = '') -> AuditEvent:
        """Security telemetry; kept for the shorter security retention period."""
        return self.log_event(
            user_id=user_id,
            event_type=event_type,
            action=action,
            details=details,
            ip_address=ip_address,
            user_agent=user_agent,
            entity_id=entity_id,
            contract_id=contract_id,
            severity=severity,
            compliance_relevant=False,
        )

    # Integrity

    def verify_integrity(self, audit_id) -> bool:
        try:
            event = AuditEvent.objects.get(audit_id=audit_id)
        except (AuditEvent.DoesNotExist, DjangoValidationError):
            raise NotFoundError(f'Audit event {audit_id} not found.')
        valid = _event_hash(event) == event.integrity_hash
        if not valid:
            logger.error('audit event {} failed integrity verification', audit_id)
        return valid

    def assert_integrity(self, audit_id) -> None:
        if not self.verify_integrity(audit_id):
            raise AuditIntegrityError(
                'Audit event integrity check failed.', details={'auditId': str(audit_id)})

    def verify_chain(self) -> ChainReport:
        checked = 0
        previous: Optional[AuditEvent] = None
        for event in AuditEvent.objects.order_by('sequence').iterator():
            if _event_hash(event) != event.integrity_hash:
                logger.error('audit chain broken at #{}: payload hash mismatch', event.sequence)
                return ChainReport(valid=False, checked=checked, broken_at=event.sequence,
                                   reason='hash_mismatch')
            if previous is not None:
                if event.sequence != previous.sequence + 1:
                    logger.error('audit chain broken at #{}: missing predecessor', event.sequence)
                    return ChainReport(valid=False, checked=checked, broken_at=event.sequence,
                                       reason='sequence_gap')
                if event.previous_hash != previous.integrity_hash:
                    logger.error('audit chain broken at #{}: previous hash mismatch', event.sequence)
                    return ChainReport(valid=False, checked=checked, broken_at=event.sequence,
                                       reason='link_mismatch')
            previous = event
            checked += 1
        return ChainReport(valid=True, checked=checked)

    # Queries

    def get_audit_trail(
        self,
        entity_id: Any,
        event_types: Optional[Iterable[str]] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[AuditEvent]:
        entity = str(entity_id)
        queryset = AuditEvent.objects.filter(Q(entity_id=entity) | Q(contract_id=entity))
        if event_types:
            queryset = queryset.filter(event_type__in=list(event_types))
        if start is not None:
            queryset = queryset.filter(timestamp__gte=start)
        if end is not None:
            queryset = queryset.filter(timestamp__lte=end)
        return list(queryset.order_by('sequence'))

    def get_compliance_metrics(self, timeframe: str = 'month') -> Dict[str, Any]:
        window = TIMEFRAMES.get(timeframe)
        if window is None:
            raise ValidationError(
                f'Unsupported timeframe: {timeframe}. Supported: {", ".join(TIMEFRAMES)}')

        since = timezone.now() - window
        events = AuditEvent.objects.filter(timestamp__gte=since)
        by_type = dict(events.values_list('event_type').annotate(total=Count('id')).order_by())
        by_severity = dict(events.values_list('severity').annotate(total=Count('id')).order_by())

        return {
            'timeframe': timeframe,
            'since': since,
            'totalEvents': sum(by_type.values()),
            'complianceEvents': events.filter(compliance_relevant=True).count(),
            'securityEvents': events.filter(compliance_relevant=False).count(),
            'eventsByType': by_type,
            'eventsBySeverity': by_severity,
            'failedVerifications': by_type.get(EventType.TFA_FAILED, 0),
            'failedPayments': by_type.get(EventType.PAYMENT_FAILED, 0),
            'disputesOpened': by_type.get(EventType.DISPUTE_OPENED, 0),
            'revocations': by_type.get(EventType.AUTHORIZATION_REVOKED, 0),
        }

    # Retention

    def expired_events(self):
        now = timezone.now()
        condition = Q(pk__in=[])
        years = AuditEvent.objects.order_by().values_list('retention_years', flat=True).distinct()
        for retention in set(years):
            cutoff = now - timedelta(days=365 * retention)
            condition |= Q(retention_years=retention, timestamp__lt=cutoff)
        return AuditEvent.objects.filter(condition)

    def cleanup_old_logs(self, purge: bool = False) -> int:
        """
        Count events past their retention window and optionally purge them.

        Only the expired head of the log is deleted, so the chain of what
        remains still verifies. Returns the number of expired events found.
        """
        expired = self.expired_events()
        count = expired.count()
        if not count:
            return 0
        if not purge:
            logger.info('{} audit events are past retention', count)
            return count

        retained = AuditEvent.objects.exclude(
            pk__in=expired.values('pk')).order_by('sequence').first()
        head = expired if retained is None else expired.filter(sequence__lt=retained.sequence)
        deleted, _ = head.delete()
        logger.info('purged {} of {} audit events past retention', deleted, count)
        return count
