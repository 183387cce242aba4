"""
Adaptive two-factor gate for milestone charges.

Decides whether a charge needs a one-time code, issues and checks those
codes, and keeps track of trusted and previously seen devices. Every check
that protects money fails closed.
"""
from __future__ import annotations

import hashlib
import threading
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Deque, Dict, Iterable, Optional, Tuple

from django.conf import settings
from django.contrib.auth.hashers import check_password, make_password
from django.db import transaction
from django.db.models import Avg, F
from django.utils import timezone
from django.utils.crypto import get_random_string
from loguru import logger

from milestonepay.audit import AuditLogger, EventType
from milestonepay.errors import (
    NotFoundError,
    ValidationError,
    VerificationFailedError,
    VerificationRequiredError,
)
from milestonepay.models import (
    Charge,
    DeviceSighting,
    Milestone,
    SecuritySettings,
    Severity,
    TrustedDevice,
    VerificationCode,
)
from milestonepay.notifications import Notifier
from milestonepay.risk import RiskContext, is_user_agent_suspicious

CODE_LENGTH = 6
CODE_ALPHABET = '0123456789'
UNUSUAL_DAILY_PAYMENTS = 5
UNUSUAL_AMOUNT_MULTIPLIER = Decimal('3')
AVERAGE_LOOKBACK_DAYS = 30
RECENT_FAILURE_HOURS = 24


@dataclass(frozen=True)
class ChargeContext:
    """Request-side facts about who is approving a charge and from where."""
    ip_address: Optional[str] = None
    user_agent: str = ''
    device_id: Optional[str] = None
    is_first_payment: Optional[bool] = None
    system_initiated: bool = False


@dataclass(frozen=True)
class TwoFactorDecision:
    required: bool
    reason: str


@dataclass(frozen=True)
class IssuedCode:
    otp_id: int
    expires_at: datetime


@dataclass(frozen=True)
class VerificationResult:
    valid: bool
    otp_id: Optional[int] = None
    milestone_ids: Tuple[int, ...] = field(default_factory=tuple)

    def covers(self, milestone_id: int) -> bool:
        return self.valid and int(milestone_id) in self.milestone_ids


INVALID = VerificationResult(valid=False)


def device_fingerprint(user_agent: Optional[str], ip_address: Optional[str]) -> str:
    return hashlib.sha256(f'{user_agent or ""}-{ip_address or ""}'.encode('utf-8')).hexdigest()


class SlidingWindowRateLimiter:
    """
    Per-key sliding window counter held in process memory.

    Any internal error denies the request.
    """

    def __init__(self, limit: int, window: timedelta):
        self.limit = limit
        self.window = window
        self._hits: Dict[str, Deque] = defaultdict(deque)
        self._lock = threading.Lock()

    def allow(self, key: str) -> bool:
        try:
            now = timezone.now()
            cutoff = now - self.window
            with self._lock:
                hits = self._hits[key]
                while hits and hits[0] <= cutoff:
                    hits.popleft()
                if len(hits) >= self.limit:
                    return False
                hits.append(now)
                return True
        except Exception as exc:
            logger.error('rate limiter failure for {}: {}', key, exc)
            return False

    def reset(self, key: Optional[str] = None) -> None:
        with self._lock:
            if key is None:
                self._hits.clear()
            else:
                self._hits.pop(key, None)


def _threshold(value) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        value = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError('tfaThreshold must be a number.')
    if not value.is_finite() or value < 0:
        raise ValidationError('tfaThreshold cannot be negative.')
    return value


class TwoFactorGate:
    def __init__(
        self,
        audit: AuditLogger,
        notifier: Notifier,
        rate_limiter: Optional[SlidingWindowRateLimiter] = None,
    ):
        self.audit = audit
        self.notifier = notifier
        self.default_threshold = Decimal(str(getattr(settings, 'MILESTONEPAY_TFA_THRESHOLD', 100)))
        self.code_ttl = timedelta(minutes=getattr(settings, 'MILESTONEPAY_OTP_TTL_MINUTES', 10))
        self.max_failed_attempts = getattr(settings, 'MILESTONEPAY_OTP_MAX_FAILED_ATTEMPTS', 3)
        self.trusted_device_days = getattr(settings, 'MILESTONEPAY_TRUSTED_DEVICE_DAYS', 30)
        self.rate_limiter = rate_limiter or SlidingWindowRateLimiter(
            getattr(settings, 'MILESTONEPAY_OTP_RATE_LIMIT', 5),
            timedelta(minutes=getattr(settings, 'MILESTONEPAY_OTP_RATE_WINDOW_MINUTES', 15)),
        )

    # Settings

    def get_security_settings(self, user_id: str) -> SecuritySettings:
        found = SecuritySettings.objects.filter(user_id=user_id).first()
        if found is not None:
            return found
        return SecuritySettings(user_id=user_id, always_2fa=False,
                                tfa_threshold=self.default_threshold, tfa_method='email')

    def update_security_settings(self, user_id: str, always_2fa: Optional[bool] = None,
                                 tfa_threshold: Optional[Decimal] = None,
                                 changed_by: Optional[str] = None,
                                 context: Optional[ChargeContext] = None) -> SecuritySettings:
        """Apply a settings change without any checks; callers gate downgrades."""
        tfa_threshold = _threshold(tfa_threshold)
        context = context or ChargeContext()
        current, _ = SecuritySettings.objects.get_or_create(
            user_id=user_id, defaults={'tfa_threshold': self.default_threshold})
        before = {'always2FA': current.always_2fa, 'tfaThreshold': current.tfa_threshold}
        if always_2fa is not None:
            current.always_2fa = always_2fa
        if tfa_threshold is not None:
            current.tfa_threshold = tfa_threshold
        current.save()

        after = {'always2FA': current.always_2fa, 'tfaThreshold': current.tfa_threshold}
        if after != before:
            self.audit.log_security_event(
                user_id,
                EventType.SECURITY_SETTINGS_CHANGED,
                'Two-factor settings changed',
                severity=Severity.WARNING,
                details={'before': before, 'after': after, 'changedBy': changed_by or user_id},
                ip_address=context.ip_address,
                user_agent=context.user_agent,
                entity_id=user_id,
            )
            logger.info('security settings of {} changed by {}: {}', user_id, changed_by or user_id, after)
        return current

    def change_security_settings(self, user_id: str, always_2fa: Optional[bool] = None,
                                 tfa_threshold: Optional[Decimal] = None,
                                 otp_id: Optional[int] = None,
                                 admin_id: Optional[str] = None,
                                 context: Optional[ChargeContext] = None) -> SecuritySettings:
        """
        Settings change requested by a user or an admin.

        Turning ``always_2fa`` off or raising the threshold weakens the gate,
        so it needs either an admin or a code the user verified recently.
        Tightening the settings needs neither.
        """
        tfa_threshold = _threshold(tfa_threshold)
        current = self.get_security_settings(user_id)
        threshold = current.tfa_threshold if current.tfa_threshold is not None else self.default_threshold
        downgrade = (
            (always_2fa is False and current.always_2fa)
            or (tfa_threshold is not None and tfa_threshold > threshold)
        )
        if downgrade and not admin_id:
            if otp_id is None or not self.has_recent_verification(user_id, otp_id):
                logger.warning('rejected security downgrade for {} without verification', user_id)
                raise VerificationRequiredError(
                    'Lowering security settings requires a recent verification code.',
                    details={'userId': user_id})
        return self.update_security_settings(
            user_id, always_2fa=always_2fa, tfa_threshold=tfa_threshold,
            changed_by=admin_id or user_id, context=context)

    # Context

    def is_first_payment(self, user_id: str) -> bool:
        return not Charge.objects.filter(
            authorization__client_id=user_id,
            status__in=[Charge.Status.SUCCEEDED, Charge.Status.REFUNDED],
        ).exists()

    def _first_payment(self, user_id: str, context: ChargeContext) -> bool:
        if context.is_first_payment is not None:
            return context.is_first_payment
        return self.is_first_payment(user_id)

    def is_trusted_device(self, user_id: str, device_id: Optional[str]) -> bool:
        if not device_id:
            return False
        return TrustedDevice.objects.filter(
            user_id=user_id, device_fingerprint=device_id, trusted_until__gt=timezone.now(),
        ).exists()

    def is_known_sighting(self, user_id: str, context: ChargeContext) -> bool:
        fingerprint = device_fingerprint(context.user_agent, context.ip_address)
        return DeviceSighting.objects.filter(user_id=user_id, fingerprint=fingerprint).exists()

    def is_known_location(self, user_id: str, ip_address: Optional[str]) -> bool:
        if not ip_address:
            return False
        return DeviceSighting.objects.filter(user_id=user_id, ip_address=ip_address).exists()

    def record_sighting(self, user_id: str, context: Optional[ChargeContext]) -> None:
        """Remember the device behind a successful payment or verification."""
        if context is None or context.system_initiated or not context.ip_address:
            return
        try:
            now = timezone.now()
            fingerprint = device_fingerprint(context.user_agent, context.ip_address)
            sighting, created = DeviceSighting.objects.get_or_create(
                user_id=user_id, fingerprint=fingerprint,
                defaults={'ip_address': context.ip_address, 'first_seen_at': now, 'last_seen_at': now},
            )
            if not created:
                DeviceSighting.objects.filter(pk=sighting.pk).update(last_seen_at=now)
        except Exception as exc:
            logger.warning('could not record device sighting for {}: {}', user_id, exc)

    def recent_failure_count(self, user_id: str) -> int:
        since = timezone.now() - timedelta(hours=RECENT_FAILURE_HOURS)
        return Charge.objects.filter(
            authorization__client_id=user_id, status=Charge.Status.FAILED, created_at__gte=since,
        ).count()

    def average_payment(self, user_id: str) -> Optional[Decimal]:
        """Average settled amount over the lookback window; ``None`` when unknown."""
        try:
            since = timezone.now() - timedelta(days=AVERAGE_LOOKBACK_DAYS)
            average = Charge.objects.filter(
                authorization__client_id=user_id,
                status=Charge.Status.SUCCEEDED,
                created_at__gte=since,
            ).aggregate(average=Avg('amount'))['average']
        except Exception as exc:
            logger.warning('average payment lookup failed for {}: {}', user_id, exc)
            return None
        return Decimal(str(average)) if average is not None else None

    def build_risk_context(self, user_id: str, amount: Decimal, context: ChargeContext) -> RiskContext:
        if context.system_initiated:
            return RiskContext(
                amount=Decimal(amount),
                is_first_payment=self._first_payment(user_id, context),
                recent_failure_count=self.recent_failure_count(user_id),
            )
        return RiskContext(
            amount=Decimal(amount),
            is_first_payment=self._first_payment(user_id, context),
            has_known_device=bool(context.device_id),
            recent_failure_count=self.recent_failure_count(user_id),
            has_known_location=self.is_known_location(user_id, context.ip_address),
            user_agent_suspicious=is_user_agent_suspicious(context.user_agent),
        )

    def detect_unusual_activity(self, user_id: str, amount: Decimal, context: ChargeContext) -> Optional[str]:
        now = timezone.now()
        start_of_day = timezone.localtime(now).replace(hour=0, minute=0, second=0, microsecond=0)
        payments_today = Charge.objects.filter(
            authorization__client_id=user_id, created_at__gte=start_of_day,
        ).exclude(status=Charge.Status.FAILED).count()
        if payments_today >= UNUSUAL_DAILY_PAYMENTS:
            return 'Unusual payment frequency'

        average = self.average_payment(user_id)
        if average and Decimal(amount) > average * UNUSUAL_AMOUNT_MULTIPLIER:
            return 'Amount significantly higher than usual'

        if not context.system_initiated and context.ip_address and not self.is_known_sighting(user_id, context):
            return 'New device or location'
        return None

    # Decision

    def requires_2fa(self, user_id: str, amount: Decimal, context: Optional[ChargeContext] = None,
                     milestone_id: Optional[int] = None) -> TwoFactorDecision:
        context = context or ChargeContext()
        try:
            decision = self._decide(user_id, Decimal(amount), context)
        except Exception as exc:
            logger.error('2FA requirement check failed for {}: {}', user_id, exc)
            decision = TwoFactorDecision(required=True, reason='Security check failed')

        try:
            self.audit.log_security_event(
                user_id,
                EventType.TFA_SENT if decision.required else EventType.TFA_BYPASSED,
                f'2FA {"required" if decision.required else "not required"}: {decision.reason}',
                details={'reason': decision.reason, 'amount': amount, 'milestoneId': milestone_id},
                ip_address=context.ip_address,
                user_agent=context.user_agent,
                entity_id=milestone_id or '',
            )
        except Exception as exc:
            logger.error('failed to record 2FA decision for {}: {}', user_id, exc)
        return decision

    def _decide(self, user_id: str, amount: Decimal, context: ChargeContext) -> TwoFactorDecision:
        if self._first_payment(user_id, context):
            return TwoFactorDecision(True, 'First payment requires verification')

        security = self.get_security_settings(user_id)
        if security.always_2fa:
            return TwoFactorDecision(True, 'User requires 2FA for all payments')

        threshold = security.tfa_threshold if security.tfa_threshold is not None else self.default_threshold
        if amount > threshold:
            return TwoFactorDecision(True, f'Amount exceeds threshold of ${threshold}')

        unusual = self.detect_unusual_activity(user_id, amount, context)
        if unusual:
            return TwoFactorDecision(True, unusual)

        if self.is_trusted_device(user_id, context.device_id):
            return TwoFactorDecision(False, 'Trusted device')

        return TwoFactorDecision(False, 'Below threshold')

    # Codes

    def send_verification_code(self, user_id: str, milestone_id: int, amount: Decimal,
                               recipient: Optional[str] = None,
                               context: Optional[ChargeContext] = None) -> IssuedCode:
        context = context or ChargeContext()
        if not self.rate_limiter.allow(f'send:{user_id}'):
            self.audit.log_security_event(
                user_id, EventType.TFA_FAILED, 'Verification code request rate limited',
                severity=Severity.WARNING, details={'reason': 'rate_limited'},
                ip_address=context.ip_address, user_agent=context.user_agent, entity_id=milestone_id)
            raise VerificationFailedError('Too many verification requests. Try again later.')

        try:
            milestone = Milestone.objects.select_related('contract').get(pk=milestone_id)
        except (Milestone.DoesNotExist, ValueError):
            raise NotFoundError(f'Milestone {milestone_id} not found.')
        if milestone.contract.client_id != str(user_id):
            raise ValidationError('Only the contract client can verify this payment.')

        now = timezone.now()
        code = get_random_string(CODE_LENGTH, allowed_chars=CODE_ALPHABET)
        with transaction.atomic():
            VerificationCode.objects.filter(
                user_id=user_id, milestone=milestone, used=False,
            ).update(used=True, used_at=now)
            otp = VerificationCode.objects.create(
                user_id=user_id,
                milestone=milestone,
                hashed_code=make_password(code),
                amount=Decimal(amount),
                expires_at=now + self.code_ttl,
                ip_address=context.ip_address or None,
                user_agent=context.user_agent or '',
                created_at=now,
            )

        recipient = recipient or milestone.contract.client_email
        try:
            self.notifier.deliver(recipient, 'verification_code', {
                'code': code,
                'amount': amount,
                'milestone': milestone.title,
                'expires_at': otp.expires_at,
            })
        except Exception as exc:
            if getattr(settings, 'APP_ENV', 'local') == 'production':
                VerificationCode.objects.filter(pk=otp.pk).update(used=True, used_at=now)
                logger.error('verification code delivery to {} failed: {}', recipient, exc)
                raise VerificationFailedError('Unable to deliver verification code.')
            logger.warning('verification code delivery failed ({}); code for user {} milestone {}: {}',
                           exc, user_id, milestone_id, code)

        self.audit.log_security_event(
            user_id, EventType.TFA_CODE_ISSUED, 'Verification code issued',
            details={'otpId': otp.pk, 'amount': amount, 'expiresAt': otp.expires_at},
            ip_address=context.ip_address, user_agent=context.user_agent, entity_id=milestone_id)
        logger.info('verification code {} issued to user {} for milestone {}', otp.pk, user_id, milestone_id)
        return IssuedCode(otp_id=otp.pk, expires_at=otp.expires_at)

    def _fail(self, user_id: str, milestone_id, reason: str, context: ChargeContext) -> VerificationResult:
        logger.info('verification failed for user {} milestone {}: {}', user_id, milestone_id, reason)
        self.audit.log_security_event(
            user_id, EventType.TFA_FAILED, 'Verification code rejected',
            severity=Severity.WARNING, details={'reason': reason, 'milestoneId': milestone_id},
            ip_address=context.ip_address, user_agent=context.user_agent, entity_id=milestone_id)
        return INVALID

    def verify_code(self, user_id: str, milestone_id: int, code: str,
                    context: Optional[ChargeContext] = None,
                    required_amount: Optional[Decimal] = None,
                    covers: Optional[Iterable[int]] = None) -> VerificationResult:
        """
        Check a code for one milestone and consume it.

        ``required_amount`` and ``covers`` serve batch approval: one code
        issued for the combined amount of several milestones.
        """
        context = context or ChargeContext()
        if not self.rate_limiter.allow(f'verify:{user_id}'):
            return self._fail(user_id, milestone_id, 'rate_limited', context)

        code = (code or '').strip()
        if len(code) != CODE_LENGTH or not code.isdigit():
            return self._fail(user_id, milestone_id, 'malformed', context)

        now = timezone.now()
        otp = (
            VerificationCode.objects
            .filter(user_id=user_id, milestone_id=milestone_id, used=False, expires_at__gt=now)
            .order_by('-created_at', '-pk')
            .first()
        )
        if otp is None:
            return self._fail(user_id, milestone_id, 'not_found_or_expired', context)
        if otp.failed_attempts >= self.max_failed_attempts:
            return self._fail(user_id, milestone_id, 'attempts_exhausted', context)
        if required_amount is not None and otp.amount < Decimal(required_amount):
            return self._fail(user_id, milestone_id, 'amount_mismatch', context)

        if not check_password(code, otp.hashed_code):
            VerificationCode.objects.filter(pk=otp.pk).update(failed_attempts=F('failed_attempts') + 1)
            VerificationCode.objects.filter(
                pk=otp.pk, used=False, failed_attempts__gte=self.max_failed_attempts,
            ).update(used=True, used_at=now)
            return self._fail(user_id, milestone_id, 'mismatch', context)

        consumed = VerificationCode.objects.filter(
            pk=otp.pk, used=False, expires_at__gt=now,
        ).update(used=True, used_at=now, verified_at=now)
        if not consumed:
            return self._fail(user_id, milestone_id, 'already_used', context)

        milestone_ids = tuple(int(m) for m in covers) if covers else (int(milestone_id),)
        self.record_sighting(user_id, context)
        self.audit.log_security_event(
            user_id, EventType.TFA_VERIFIED, 'Verification code accepted',
            details={'otpId': otp.pk, 'milestoneIds': list(milestone_ids)},
            ip_address=context.ip_address, user_agent=context.user_agent, entity_id=milestone_id)
        logger.info('verification code {} accepted for user {}', otp.pk, user_id)
        return VerificationResult(valid=True, otp_id=otp.pk, milestone_ids=milestone_ids)

    def has_recent_verification(self, user_id: str, otp_id: int) -> bool:
        return VerificationCode.objects.filter(
            pk=otp_id, user_id=user_id, verified_at__gte=timezone.now() - self.code_ttl,
        ).exists()

    # Devices

    def trust_device(self, user_id: str, device_id: str, context: Optional[ChargeContext] = None) -> TrustedDevice:
        if not device_id:
            raise ValidationError('deviceId is required.')
        context = context or ChargeContext()
        now = timezone.now()
        device, _ = TrustedDevice.objects.update_or_create(
            user_id=user_id,
            device_fingerprint=device_id,
            defaults={
                'trusted_until': now + timedelta(days=self.trusted_device_days),
                'ip_address': context.ip_address or None,
                'user_agent': context.user_agent or '',
                'created_at': now,
            },
        )
        self.audit.log_event(
            user_id=user_id,
            event_type=EventType.DEVICE_TRUSTED,
            action='Device trusted for 2FA bypass',
            details={'deviceId': device_id, 'trustedUntil': device.trusted_until},
            entity_id=device.pk,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
        )
        logger.info('device trusted for user {} until {}', user_id, device.trusted_until)
        return device
