"""
Dispute manager.

A dispute may be opened until ``settled_at`` plus the dispute window. Opening
one freezes the freelancer payout for the charge; resolving or closing it lifts
the freeze. Payout release only happens through a conditional update on the
same flag, so a freeze and a release cannot interleave.
"""
from __future__ import annotations

import uuid
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from typing import Dict, Optional

from django.conf import settings
from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import IntegrityError, transaction
from django.db.models import F
from django.utils import timezone
from loguru import logger

from milestonepay.audit import AuditLogger, EventType
from milestonepay.errors import (
    DisputeWindowClosedError,
    InvalidStateError,
    NotFoundError,
    RailError,
    ValidationError,
)
from milestonepay.fees import calculate_fees
from milestonepay.models import Charge, Dispute, Severity
from milestonepay.notifications import Notifier
from milestonepay.rails import RailFactory, RefundResult


class DisputeManager:
    def __init__(self, rails: RailFactory, audit: AuditLogger, notifier: Notifier):
        self.rails = rails
        self.audit = audit
        self.notifier = notifier
        self.window = timedelta(hours=getattr(settings, 'MILESTONEPAY_DISPUTE_WINDOW_HOURS', 48))

    # Lookups

    @staticmethod
    def _charge(payment_id) -> Charge:
        try:
            return Charge.objects.select_related(
                'contract', 'milestone', 'authorization').get(payment_id=payment_id)
        except (Charge.DoesNotExist, DjangoValidationError, ValueError):
            raise NotFoundError(f'Payment {payment_id} not found.')

    @staticmethod
    def _dispute(dispute_id) -> Dispute:
        try:
            return Dispute.objects.select_related('charge', 'contract').get(dispute_id=dispute_id)
        except (Dispute.DoesNotExist, DjangoValidationError, ValueError):
            raise NotFoundError(f'Dispute {dispute_id} not found.')

    def dispute_deadline(self, charge: Charge):
        return charge.settled_at + self.window

    def is_payout_frozen(self, payment_id) -> bool:
        return self._charge(payment_id).payout_frozen

    def _notify_parties(self, dispute: Dispute, template: str, data: Dict) -> None:
        contract = dispute.contract
        for recipient in (contract.client_email, contract.freelancer_email):
            self.notifier.notify(recipient, template, data)

    # Lifecycle

    def open_dispute(self, payment_id, reason: str, client_id: str) -> Dispute:
        reason = (reason or '').strip()
        if not reason:
            raise ValidationError('A reason is required to open a dispute.')

        charge = self._charge(payment_id)
        contract = charge.contract
        if contract.client_id != str(client_id):
            raise ValidationError('Only the contract client can dispute this payment.')
        if charge.status != Charge.Status.SUCCEEDED or charge.settled_at is None:
            raise InvalidStateError(f'Payment cannot be disputed (status: {charge.status}).')

        now = timezone.now()
        deadline = self.dispute_deadline(charge)
        if now > deadline:
            logger.info('dispute on {} rejected: window closed at {}', charge.payment_id, deadline)
            raise DisputeWindowClosedError(
                'The dispute window for this payment has closed.',
                details={'disputeDeadline': deadline.isoformat()})

        try:
            with transaction.atomic():
                dispute = Dispute.objects.create(
                    charge=charge,
                    contract=contract,
                    client_id=contract.client_id,
                    freelancer_id=contract.freelancer_id,
                    amount=charge.amount,
                    reason=reason,
                    opened_at=now,
                )
                Charge.objects.filter(pk=charge.pk).update(payout_frozen=True, updated_at=now)
                self.audit.log_dispute_event(
                    dispute, EventType.DISPUTE_OPENED,
                    f'Dispute opened on payment {charge.payment_id}',
                    user_id=client_id,
                    details={'reason': reason, 'payoutFrozen': True},
                )
        except IntegrityError:
            raise InvalidStateError('An open dispute already exists for this payment.')

        logger.warning('dispute {} opened on payment {}; payout frozen', dispute.dispute_id, charge.payment_id)
        self._notify_parties(dispute, 'dispute_opened', {
            'amount': charge.amount,
            'payment_id': charge.payment_id,
            'contract': contract.title,
            'reason': reason,
        })
        return dispute

    def mark_investigating(self, dispute_id, admin_id: str) -> Dispute:
        dispute = self._dispute(dispute_id)
        updated = Dispute.objects.filter(
            pk=dispute.pk, status=Dispute.Status.OPEN,
        ).update(status=Dispute.Status.INVESTIGATING)
        if not updated:
            raise InvalidStateError(f'Dispute is {dispute.status}; only open disputes can be investigated.')
        dispute.refresh_from_db()
        self.audit.log_dispute_event(
            dispute, EventType.DISPUTE_INVESTIGATING, 'Dispute under investigation', user_id=admin_id)
        return dispute

    def _finish(self, dispute: Dispute, status: str, admin_id: str, resolution: str,
                refund_amount: Optional[Decimal], notes: str = '') -> bool:
        now = timezone.now()
        with transaction.atomic():
            updated = Dispute.objects.filter(
                pk=dispute.pk, status__in=Dispute.OPEN_STATUSES,
            ).update(
                status=status,
                resolved_at=now,
                resolution=resolution,
                refund_amount=refund_amount,
                resolved_by=admin_id,
                admin_notes=notes,
            )
            if not updated:
                return False
            Charge.objects.filter(pk=dispute.charge_id).update(payout_frozen=False, updated_at=now)
        return True

    def resolve_dispute(self, dispute_id, resolution: str, refund_amount: Optional[Decimal] = None,
                        admin_id: str = 'admin') -> Dispute:
        """
        Resolve an open dispute, refunding ``refund_amount`` if given.

        Resolving an already resolved or closed dispute raises
        ``InvalidStateError`` and never refunds twice.
        """
        resolution = (resolution or '').strip()
        if not resolution:
            raise ValidationError('A resolution is required.')
        dispute = self._dispute(dispute_id)
        if not dispute.is_open:
            raise InvalidStateError(f'Dispute is already {dispute.status}.')

        if refund_amount is not None:
            try:
                refund_amount = Decimal(str(refund_amount))
            except (InvalidOperation, ValueError):
                raise ValidationError('refundAmount must be a number.')
            if not refund_amount.is_finite() or refund_amount <= 0:
                raise ValidationError('refundAmount must be positive.')

        previous_status = dispute.status
        if not self._finish(dispute, Dispute.Status.RESOLVED, admin_id, resolution, refund_amount):
            raise InvalidStateError('Dispute is already resolved.')

        refund: Optional[RefundResult] = None
        if refund_amount is not None:
            try:
                refund = self.process_refund(dispute.charge.payment_id, refund_amount, actor=admin_id)
            except (RailError, ValidationError, InvalidStateError):
                # Reopen so the admin can retry; the payout stays frozen meanwhile.
                with transaction.atomic():
                    Dispute.objects.filter(pk=dispute.pk).update(
                        status=previous_status, resolved_at=None, resolution='',
                        refund_amount=None, resolved_by='')
                    Charge.objects.filter(pk=dispute.charge_id).update(payout_frozen=True)
                raise
            Dispute.objects.filter(pk=dispute.pk).update(refund_reference=refund.refund_id or '')

        dispute.refresh_from_db()
        self.audit.log_dispute_event(
            dispute, EventType.DISPUTE_RESOLVED, f'Dispute resolved: {resolution}',
            user_id=admin_id,
            details={'refundAmount': refund_amount, 'refundReference': dispute.refund_reference,
                     'payoutFrozen': False},
        )
        self.audit.log_admin_action(admin_id, f'Resolved dispute {dispute.dispute_id}',
                                    entity_id=dispute.dispute_id,
                                    details={'refundAmount': refund_amount})
        logger.info('dispute {} resolved by {} (refund {})', dispute.dispute_id, admin_id, refund_amount)
        self._notify_parties(dispute, 'dispute_resolved', {
            'status': 'resolved',
            'payment_id': dispute.charge.payment_id,
            'resolution': resolution,
            'refund_amount': refund_amount or Decimal('0.00'),
        })
        return dispute

    def close_dispute(self, dispute_id, admin_id: str, notes: str = '') -> Dispute:
        """Close without refund; the payout is released from the freeze."""
        dispute = self._dispute(dispute_id)
        if not self._finish(dispute, Dispute.Status.CLOSED, admin_id, 'Closed without refund', None, notes):
            raise InvalidStateError(f'Dispute is already {dispute.status}.')
        dispute.refresh_from_db()
        self.audit.log_dispute_event(
            dispute, EventType.DISPUTE_CLOSED, 'Dispute closed without refund',
            user_id=admin_id, details={'notes': notes, 'payoutFrozen': False})
        self.audit.log_admin_action(admin_id, f'Closed dispute {dispute.dispute_id}',
                                    entity_id=dispute.dispute_id)
        self._notify_parties(dispute, 'dispute_resolved', {
            'status': 'closed',
            'payment_id': dispute.charge.payment_id,
            'resolution': dispute.resolution,
            'refund_amount': Decimal('0.00'),
        })
        return dispute

    # Money movement

    def process_refund(self, payment_id, amount: Decimal, actor: str = 'system') -> RefundResult:
        """
        Return ``amount`` of a settled charge to the client.

        The refunded total is reserved with a conditional update before the
        rail is called and handed back if the rail refuses.
        """
        try:
            amount = Decimal(str(amount))
        except (InvalidOperation, ValueError):
            raise ValidationError('Refund amount must be a number.')
        if not amount.is_finite() or amount <= 0:
            raise ValidationError('Refund amount must be positive.')
        charge = self._charge(payment_id)
        if charge.status not in (Charge.Status.SUCCEEDED, Charge.Status.REFUNDED) or not charge.external_charge_id:
            raise InvalidStateError(f'Payment cannot be refunded (status: {charge.status}).')

        settled = charge.settled_amount or charge.amount
        reserved = Charge.objects.filter(
            pk=charge.pk, refunded_amount__lte=settled - amount,
        ).update(refunded_amount=F('refunded_amount') + amount, updated_at=timezone.now())
        if not reserved:
            charge.refresh_from_db()
            raise ValidationError(
                f'Refund of {amount} exceeds the refundable balance of {settled - charge.refunded_amount}.')

        # Each refund is its own processor operation, even for equal amounts.
        refund_key = f'refund-{charge.payment_id}-{uuid.uuid4().hex}'
        rail = self.rails.rail_for(charge.method)
        try:
            result = rail.refund(charge.external_charge_id, amount,
                                 charge.authorization.payment_method_ref, idempotency_key=refund_key)
        except Exception as exc:
            logger.error('refund rail call for {} raised: {}', charge.payment_id, exc)
            result = RefundResult(success=False, error_reason=str(exc))

        if not result.success:
            Charge.objects.filter(pk=charge.pk).update(
                refunded_amount=F('refunded_amount') - amount, updated_at=timezone.now())
            self.audit.log_payment_event(
                charge, EventType.PAYMENT_FAILED, f'Refund of {amount} failed',
                user_id=actor, severity=Severity.ERROR,
                details={'refund': True, 'refundKey': refund_key, 'reason': result.error_reason})
            raise RailError(result.error_reason or 'Refund failed',
                            details={'paymentId': str(charge.payment_id)})

        Charge.objects.filter(pk=charge.pk).update(status=Charge.Status.REFUNDED, updated_at=timezone.now())
        charge.refresh_from_db()
        self.audit.log_payment_event(
            charge, EventType.PAYMENT_REFUNDED, f'Refunded {amount}',
            user_id=actor, severity=Severity.WARNING,
            details={'refundAmount': amount, 'refundId': result.refund_id, 'refundKey': refund_key,
                     'refundedTotal': charge.refunded_amount})
        logger.info('refunded {} on payment {} ({})', amount, charge.payment_id, result.refund_id)
        return result

    def release_due_payouts(self) -> int:
        """Release payouts whose dispute window passed without a freeze."""
        now = timezone.now()
        cutoff = now - self.window
        released = 0
        due = Charge.objects.select_related('contract', 'milestone').filter(
            status=Charge.Status.SUCCEEDED,
            settled_at__lte=cutoff,
            payout_frozen=False,
            payout_released_at__isnull=True,
        )
        for charge in due:
            claimed = Charge.objects.filter(
                pk=charge.pk, status=Charge.Status.SUCCEEDED,
                payout_frozen=False, payout_released_at__isnull=True,
            ).update(payout_released_at=now, updated_at=now)
            if not claimed:
                continue
            released += 1
            fees = calculate_fees(charge.amount, charge.method)
            self.audit.log_payment_event(
                charge, EventType.PAYOUT_RELEASED, 'Payout released to freelancer',
                user_id='system', details={'netToFreelancer': fees.net_to_freelancer})
            self.notifier.notify(charge.contract.freelancer_email, 'payout_released', {
                'amount': charge.amount,
                'net_to_freelancer': fees.net_to_freelancer,
                'milestone': charge.milestone.title,
                'payment_id': charge.payment_id,
            })
        if released:
            logger.info('released {} payouts', released)
        return released
