"""
Authorization ledger: a client's standing consent to be charged.

The running ``total_charged`` is only ever changed with conditional
``UPDATE`` statements, so two approvals racing on one contract cannot both
pass the cap check.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Optional

from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import IntegrityError, transaction
from django.db.models import F, Q
from django.utils import timezone
from loguru import logger

from milestonepay.audit import AuditLogger, EventType
from milestonepay.errors import (
    CapExceededError,
    NoAuthorizationError,
    NotFoundError,
    ValidationError,
)
from milestonepay.models import Authorization, Contract, PaymentMethod, Severity
from milestonepay.notifications import Notifier
from milestonepay.rails import RailFactory


@dataclass(frozen=True)
class AuthorizationCaps:
    max_per_milestone: Decimal
    total_authorized: Decimal


@dataclass(frozen=True)
class ConsentMetadata:
    payment_method_ref: str
    terms_version: str
    ip_address: Optional[str] = None
    user_agent: str = ''
    expires_at: Optional[datetime] = None


def _money(value, field: str) -> Decimal:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f'{field} must be a number.')
    if not amount.is_finite() or amount <= 0:
        raise ValidationError(f'{field} must be positive.')
    if amount != amount.quantize(Decimal('0.01')):
        raise ValidationError(f'{field} must have at most two decimal places.')
    return amount


class AuthorizationLedger:
    def __init__(self, audit: AuditLogger, notifier: Notifier, rails: Optional[RailFactory] = None):
        self.audit = audit
        self.notifier = notifier
        self.rails = rails

    def get_authorization(self, authorization_id) -> Authorization:
        try:
            return Authorization.objects.select_related('contract').get(authorization_id=authorization_id)
        except (Authorization.DoesNotExist, DjangoValidationError, ValueError):
            raise NotFoundError(f'Authorization {authorization_id} not found.')

    def get_active_authorization(self, contract_id) -> Optional[Authorization]:
        return (
            Authorization.objects.select_related('contract')
            .filter(contract_id=contract_id, status=Authorization.Status.ACTIVE)
            .first()
        )

    def create_authorization(
        self,
        contract_id,
        client_id: str,
        method: str,
        caps: AuthorizationCaps,
        consent: ConsentMetadata,
    ) -> Authorization:
        if method not in PaymentMethod.values:
            raise ValidationError(
                f'Unsupported payment method: {method}. Supported: {", ".join(PaymentMethod.values)}')
        max_per_milestone = _money(caps.max_per_milestone, 'maxPerMilestone')
        total_authorized = _money(caps.total_authorized, 'totalAuthorized')
        if max_per_milestone > total_authorized:
            raise ValidationError('maxPerMilestone cannot exceed totalAuthorized.')
        if not consent.payment_method_ref:
            raise ValidationError('A payment method reference is required.')
        if self.rails is not None and not self.rails.rail_for(method).validate_reference(consent.payment_method_ref):
            raise ValidationError('The payment method reference is not valid for this method.')
        if not consent.terms_version:
            raise ValidationError('The accepted terms version is required.')

        now = timezone.now()
        if consent.expires_at is not None and consent.expires_at <= now:
            raise ValidationError('The payment method has already expired.')

        try:
            contract = Contract.objects.get(pk=contract_id)
        except (Contract.DoesNotExist, ValueError):
            raise NotFoundError(f'Contract {contract_id} not found.')
        if contract.client_id != str(client_id):
            raise ValidationError('Only the contract client can authorize payments.')
        if contract.status in (Contract.Status.COMPLETED, Contract.Status.TERMINATED):
            raise ValidationError(f'Contract is {contract.status}.')

        try:
            with transaction.atomic():
                if Authorization.objects.filter(
                        contract=contract, status__in=Authorization.LIVE_STATUSES).exists():
                    raise ValidationError('Contract already has an active payment authorization.')
                authorization = Authorization.objects.create(
                    contract=contract,
                    client_id=contract.client_id,
                    payment_method_ref=consent.payment_method_ref,
                    method=method,
                    max_per_milestone=max_per_milestone,
                    total_authorized=total_authorized,
                    terms_version=consent.terms_version,
                    ip_address=consent.ip_address or None,
                    user_agent=consent.user_agent or '',
                    authorized_at=now,
                    expires_at=consent.expires_at,
                )
                if contract.status == Contract.Status.AUTHORIZATION_EXPIRED:
                    Contract.objects.filter(pk=contract.pk).update(
                        status=Contract.Status.ACTIVE, updated_at=now)
                self.audit.log_authorization_event(
                    authorization,
                    EventType.AUTHORIZATION_CREATED,
                    f'Payment authorization created for contract {contract.pk}',
                    details={'termsVersion': consent.terms_version},
                )
        except IntegrityError:
            raise ValidationError('Contract already has an active payment authorization.')

        logger.info('authorization {} created for contract {} ({} cap {})',
                    authorization.authorization_id, contract.pk, method, total_authorized)
        self.notifier.notify(contract.client_email, 'authorization_created', {
            'contract': contract.title,
            'max_per_milestone': max_per_milestone,
            'total_authorized': total_authorized,
        })
        return authorization

    def revoke_authorization(self, authorization_id, reason: str, revoked_by: Optional[str] = None) -> Authorization:
        """Revoke a live authorization. Revoking a revoked or expired one is a no-op."""
        authorization = self.get_authorization(authorization_id)
        if authorization.is_terminal:
            logger.debug('authorization {} already {}', authorization_id, authorization.status)
            return authorization

        now = timezone.now()
        reason = (reason or 'Revoked by client').strip()
        with transaction.atomic():
            updated = Authorization.objects.filter(
                pk=authorization.pk, status__in=Authorization.LIVE_STATUSES,
            ).update(
                status=Authorization.Status.REVOKED,
                revoked_at=now,
                revoked_reason=reason[:255],
                updated_at=now,
            )
            authorization.refresh_from_db()
            if not updated:
                return authorization
            self.audit.log_authorization_event(
                authorization,
                EventType.AUTHORIZATION_REVOKED,
                f'Payment authorization revoked: {reason}',
                severity=Severity.WARNING,
                user_id=revoked_by or authorization.client_id,
                details={'reason': reason},
            )

        logger.info('authorization {} revoked: {}', authorization.authorization_id, reason)
        self.notifier.notify(authorization.contract.client_email, 'authorization_revoked', {
            'contract': authorization.contract.title,
            'reason': reason,
            'remaining': authorization.remaining,
        })
        return authorization

    def record_charge(self, authorization_pk: int, amount: Decimal) -> Authorization:
        """
        Atomically add ``amount`` to the authorization's running total.

        The status, expiry, per-milestone and total caps are all part of the
        ``WHERE`` clause of a single ``UPDATE``.
        """
        amount = _money(amount, 'amount')
        now = timezone.now()
        updated = (
            Authorization.objects
            .filter(
                pk=authorization_pk,
                status=Authorization.Status.ACTIVE,
                max_per_milestone__gte=amount,
                total_charged__lte=F('total_authorized') - amount,
            )
            .filter(Q(expires_at__isnull=True) | Q(expires_at__gt=now))
            .update(total_charged=F('total_charged') + amount, last_used_at=now, updated_at=now)
        )

        try:
            authorization = Authorization.objects.get(pk=authorization_pk)
        except Authorization.DoesNotExist:
            raise NoAuthorizationError('Payment authorization not found.')

        if updated:
            logger.debug('authorization {} charged {} (total {})',
                         authorization.authorization_id, amount, authorization.total_charged)
            return authorization

        if authorization.status != Authorization.Status.ACTIVE:
            raise NoAuthorizationError(
                f'Payment authorization is {authorization.status}.',
                details={'authorizationId': str(authorization.authorization_id)})
        if authorization.expires_at is not None and authorization.expires_at <= now:
            raise NoAuthorizationError(
                'Payment authorization has expired.',
                details={'authorizationId': str(authorization.authorization_id)})
        if amount > authorization.max_per_milestone:
            raise CapExceededError(
                f'Amount {amount} exceeds the per-milestone limit of {authorization.max_per_milestone}.',
                details={'maxPerMilestone': str(authorization.max_per_milestone)})
        raise CapExceededError(
            f'Amount {amount} exceeds the remaining authorized balance of {authorization.remaining}.',
            details={'remaining': str(authorization.remaining)})

    def release_charge(self, authorization_pk: int, amount: Decimal) -> bool:
        """Give back a reservation made by ``record_charge`` after the rail failed."""
        released = Authorization.objects.filter(
            pk=authorization_pk, total_charged__gte=amount,
        ).update(total_charged=F('total_charged') - amount, updated_at=timezone.now())
        if not released:
            logger.error('authorization pk={} could not release {}', authorization_pk, amount)
        return bool(released)

    def suspend_authorization(self, authorization: Authorization, reason: str) -> bool:
        """Pause an active authorization. Returns False when it was not active."""
        now = timezone.now()
        with transaction.atomic():
            updated = Authorization.objects.filter(
                pk=authorization.pk, status=Authorization.Status.ACTIVE,
            ).update(status=Authorization.Status.SUSPENDED, updated_at=now)
            if not updated:
                return False
            authorization.refresh_from_db()
            self.audit.log_authorization_event(
                authorization,
                EventType.AUTHORIZATION_SUSPENDED,
                f'Payment authorization suspended: {reason}',
                severity=Severity.WARNING,
                user_id='system',
                details={'reason': reason},
            )

        logger.warning('authorization {} suspended: {}', authorization.authorization_id, reason)
        self.notifier.notify(authorization.contract.client_email, 'authorization_suspended', {
            'contract': authorization.contract.title,
            'reason': reason,
        })
        return True

    def expire_authorization(self, authorization: Authorization) -> bool:
        """Mark a live authorization expired and flag its contract."""
        now = timezone.now()
        with transaction.atomic():
            updated = Authorization.objects.filter(
                pk=authorization.pk, status__in=Authorization.LIVE_STATUSES,
            ).update(status=Authorization.Status.EXPIRED, updated_at=now)
            if not updated:
                return False
            Contract.objects.filter(
                pk=authorization.contract_id, status=Contract.Status.ACTIVE,
            ).update(status=Contract.Status.AUTHORIZATION_EXPIRED, updated_at=now)
            authorization.refresh_from_db()
            self.audit.log_authorization_event(
                authorization,
                EventType.AUTHORIZATION_EXPIRED,
                'Payment authorization expired',
                severity=Severity.WARNING,
                user_id='system',
                details={'expiresAt': authorization.expires_at},
            )

        logger.info('authorization {} expired', authorization.authorization_id)
        self.notifier.notify(authorization.contract.client_email, 'authorization_expired', {
            'contract': authorization.contract.title,
            'expires_at': authorization.expires_at,
        })
        return True
