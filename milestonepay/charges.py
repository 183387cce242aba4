"""
Charge executor.

A charge attempt runs in three steps: a short transaction that locks the
milestone, reserves the amount on the authorization and records a
``processing`` charge; the rail call, outside any transaction; and a second
transaction that settles the charge or releases the reservation.

When the rail cannot say what happened (a timeout after the request went
out), the charge stays ``processing`` with its reservation held and is
flagged for reconciliation. Later attempts ask the rail about it under the
same idempotency key instead of charging again.
"""
from __future__ import annotations

from datetime import timedelta
from decimal import Decimal
from typing import Callable, Dict, Optional

from django.conf import settings
from django.db import IntegrityError, transaction
from django.utils import timezone
from loguru import logger

from milestonepay.audit import AuditLogger, EventType
from milestonepay.errors import (
    CapExceededError,
    InvalidStateError,
    NoAuthorizationError,
    NotFoundError,
    PaymentPendingError,
    RailError,
    VerificationRequiredError,
)
from milestonepay.fees import calculate_fees
from milestonepay.ledger import AuthorizationLedger
from milestonepay.models import Authorization, Charge, Milestone, Severity
from milestonepay.notifications import Notifier
from milestonepay.rails import ChargeResult, DeclineCategory, RailFactory
from milestonepay.risk import RiskAssessment, score_transaction
from milestonepay.two_factor import ChargeContext, TwoFactorGate, VerificationResult

FAILURE_GUIDANCE = {
    DeclineCategory.DECLINED: 'Your payment method was declined. Update your payment method or retry the payment.',
    DeclineCategory.EXPIRED_METHOD: 'Your payment method has expired. Add a new payment method to continue.',
    DeclineCategory.INSUFFICIENT_AUTHORIZATION: (
        'The authorization does not cover this payment. Increase the authorization or pay manually.'),
    DeclineCategory.PROCESSOR_ERROR: 'The payment processor had a temporary problem. Retry the payment shortly.',
}

HighRiskHook = Callable[[str, Milestone, RiskAssessment, ChargeContext], None]


class ChargeExecutor:
    def __init__(
        self,
        ledger: AuthorizationLedger,
        gate: TwoFactorGate,
        rails: RailFactory,
        audit: AuditLogger,
        notifier: Notifier,
        on_high_risk: Optional[HighRiskHook] = None,
    ):
        self.ledger = ledger
        self.gate = gate
        self.rails = rails
        self.audit = audit
        self.notifier = notifier
        self.on_high_risk = on_high_risk
        self.dispute_window = timedelta(hours=getattr(settings, 'MILESTONEPAY_DISPUTE_WINDOW_HOURS', 48))

    def dispute_deadline(self, charge: Charge):
        return charge.settled_at + self.dispute_window if charge.settled_at else None

    @staticmethod
    def _load_milestone(milestone_id) -> Milestone:
        try:
            return Milestone.objects.select_related('contract').get(pk=milestone_id)
        except (Milestone.DoesNotExist, ValueError):
            raise NotFoundError(f'Milestone {milestone_id} not found.')

    @staticmethod
    def _settled_charge(milestone: Milestone) -> Optional[Charge]:
        return (
            milestone.charges
            .filter(status__in=[Charge.Status.SUCCEEDED, Charge.Status.REFUNDED])
            .order_by('-created_at')
            .first()
        )

    def _assess_risk(self, payer: str, milestone: Milestone, context: ChargeContext) -> Optional[RiskAssessment]:
        try:
            assessment = score_transaction(self.gate.build_risk_context(payer, milestone.amount, context))
        except Exception as exc:
            logger.error('risk scoring failed for milestone {}: {}', milestone.pk, exc)
            return None
        logger.debug('milestone {} risk score {} {}', milestone.pk, assessment.score, assessment.triggers)
        return assessment

    def _report_high_risk(self, payer: str, milestone: Milestone,
                          assessment: Optional[RiskAssessment], context: ChargeContext) -> None:
        if assessment is None or not assessment.is_high_risk:
            return
        try:
            self.audit.log_security_event(
                payer,
                EventType.HIGH_RISK_TRANSACTION,
                f'High risk transaction scored {assessment.score}',
                severity=Severity.CRITICAL,
                details={'score': assessment.score, 'triggers': list(assessment.triggers),
                         'amount': milestone.amount, 'milestoneId': milestone.pk},
                ip_address=context.ip_address,
                user_agent=context.user_agent,
                entity_id=milestone.pk,
                contract_id=milestone.contract_id,
            )
            if self.on_high_risk is not None:
                self.on_high_risk(payer, milestone, assessment, context)
        except Exception as exc:
            logger.error('high risk reporting failed for milestone {}: {}', milestone.pk, exc)

    def execute_charge(
        self,
        milestone_id,
        user_id: Optional[str] = None,
        context: Optional[ChargeContext] = None,
        verification: Optional[VerificationResult] = None,
    ) -> Charge:
        """
        Charge an approved milestone against its contract's active authorization.

        Calling this again for a paid milestone returns the existing charge.
        Calling it while an earlier attempt awaits confirmation asks the rail
        about that attempt instead of starting a new one.
        """
        context = context or ChargeContext()
        milestone = self._load_milestone(milestone_id)

        if milestone.status == Milestone.Status.PAID:
            existing = self._settled_charge(milestone)
            if existing is not None:
                logger.info('milestone {} already paid by {}', milestone.pk, existing.payment_id)
                return existing
            raise InvalidStateError('Milestone is already paid.')
        if milestone.status != Milestone.Status.APPROVED:
            raise InvalidStateError(
                f'Milestone must be approved before payment (status: {milestone.status}).')

        contract = milestone.contract
        payer = str(user_id or contract.client_id)

        pending = milestone.charges.filter(
            status=Charge.Status.PROCESSING, needs_reconciliation=True).first()
        if pending is not None:
            logger.info('milestone {} resuming unconfirmed charge {}', milestone.pk, pending.payment_id)
            return self._confirm(pending, payer, context)

        authorization = self.ledger.get_active_authorization(contract.pk)
        if authorization is None:
            raise NoAuthorizationError('No active payment authorization for this contract.')
        if milestone.amount > authorization.max_per_milestone:
            raise CapExceededError(
                f'Amount {milestone.amount} exceeds the per-milestone limit of {authorization.max_per_milestone}.',
                details={'maxPerMilestone': str(authorization.max_per_milestone)})

        decision = self.gate.requires_2fa(payer, milestone.amount, context, milestone_id=milestone.pk)
        if decision.required and (verification is None or not verification.covers(milestone.pk)):
            logger.info('milestone {} charge held for verification: {}', milestone.pk, decision.reason)
            raise VerificationRequiredError(
                'Verification code required to complete this payment.',
                details={'reason': decision.reason, 'milestoneId': milestone.pk, 'amount': str(milestone.amount)})

        assessment = self._assess_risk(payer, milestone, context)

        charge, authorization = self._reserve(milestone.pk, authorization)
        if charge.status != Charge.Status.PROCESSING:
            return charge

        result = self._call_rail(charge, authorization)
        try:
            return self._apply(charge, authorization, result, payer, context)
        finally:
            self._report_high_risk(payer, milestone, assessment, context)

    def reconcile_unconfirmed(self) -> Dict[str, int]:
        """Ask the rails about every charge whose outcome is still unknown."""
        summary = {'settled': 0, 'failed': 0, 'unconfirmed': 0}
        context = ChargeContext(system_initiated=True)
        pending = (
            Charge.objects
            .filter(status=Charge.Status.PROCESSING, needs_reconciliation=True)
            .select_related('milestone__contract', 'authorization')
            .order_by('created_at')
        )
        for charge in pending:
            payer = str(charge.milestone.contract.client_id)
            try:
                self._confirm(charge, payer, context)
            except PaymentPendingError:
                summary['unconfirmed'] += 1
            except RailError:
                summary['failed'] += 1
            except Exception as exc:
                logger.error('reconciling charge {} failed: {}', charge.payment_id, exc)
                summary['unconfirmed'] += 1
            else:
                summary['settled'] += 1

        if any(summary.values()):
            logger.info('charge reconciliation: {}', summary)
        return summary

    def _confirm(self, charge: Charge, payer: str, context: ChargeContext) -> Charge:
        authorization = charge.authorization
        result = self._call_rail(charge, authorization, replay=True)
        return self._apply(charge, authorization, result, payer, context)

    def _reserve(self, milestone_pk: int, authorization: Authorization):
        try:
            with transaction.atomic():
                milestone = Milestone.objects.select_for_update().get(pk=milestone_pk)
                if milestone.status == Milestone.Status.PAID:
                    existing = self._settled_charge(milestone)
                    if existing is not None:
                        return existing, authorization
                    raise InvalidStateError('Milestone is already paid.')
                if milestone.status != Milestone.Status.APPROVED:
                    raise InvalidStateError(
                        f'Milestone must be approved before payment (status: {milestone.status}).')
                if milestone.charges.exclude(status=Charge.Status.FAILED).exists():
                    raise InvalidStateError('A payment for this milestone is already in progress.')

                # Definitely failed attempts get a fresh key; anything else reuses it.
                attempt = milestone.charges.filter(status=Charge.Status.FAILED).count() + 1
                authorization = self.ledger.record_charge(authorization.pk, milestone.amount)
                fees = calculate_fees(milestone.amount, authorization.method)
                charge = Charge.objects.create(
                    contract_id=milestone.contract_id,
                    milestone=milestone,
                    authorization=authorization,
                    amount=milestone.amount,
                    method=authorization.method,
                    status=Charge.Status.PROCESSING,
                    idempotency_key=f'milestone-{milestone.pk}-attempt-{attempt}',
                    processor_fee=fees.processor_fee,
                    platform_fee=fees.platform_fee,
                    created_at=timezone.now(),
                )
        except IntegrityError:
            raise InvalidStateError('A payment for this milestone is already in progress.')

        logger.info('charge {} reserved {} on authorization {}',
                    charge.payment_id, charge.amount, authorization.authorization_id)
        return charge, authorization

    def _call_rail(self, charge: Charge, authorization: Authorization, replay: bool = False) -> ChargeResult:
        try:
            rail = self.rails.rail_for(authorization.method)
        except Exception as exc:
            logger.error('no rail for charge {}: {}', charge.payment_id, exc)
            # A replayed attempt may still have been captured earlier.
            return ChargeResult(success=False, error_reason=str(exc),
                                decline_category=DeclineCategory.PROCESSOR_ERROR,
                                outcome_unknown=replay)

        metadata = {
            'paymentId': str(charge.payment_id),
            'contractId': charge.contract_id,
            'milestoneId': charge.milestone_id,
        }
        key = charge.idempotency_key or str(charge.payment_id)
        try:
            if replay:
                return rail.check_charge(
                    charge.amount,
                    authorization.payment_method_ref,
                    key,
                    charge_id=charge.external_charge_id,
                    metadata=metadata,
                )
            return rail.charge(
                charge.amount,
                authorization.payment_method_ref,
                idempotency_key=key,
                metadata=metadata,
            )
        except Exception as exc:
            # The request may already have reached the processor.
            logger.error('rail call for charge {} raised: {}', charge.payment_id, exc)
            return ChargeResult(success=False, error_reason=str(exc),
                                decline_category=DeclineCategory.PROCESSOR_ERROR,
                                outcome_unknown=True)

    def _apply(self, charge: Charge, authorization: Authorization, result: ChargeResult,
               payer: str, context: ChargeContext) -> Charge:
        if result.success:
            return self._settle(charge, authorization, result, payer, context)
        if result.outcome_unknown:
            return self._hold(charge, result, payer)
        return self._fail(charge, authorization, result, payer)

    def _hold(self, charge: Charge, result: ChargeResult, payer: str) -> Charge:
        reason = result.error_reason or 'Processor outcome unknown'
        with transaction.atomic():
            first = charge.mark_unconfirmed(reason, result.charge_id)
            if first:
                self.audit.log_payment_event(
                    charge, EventType.PAYMENT_UNCONFIRMED,
                    f'Milestone payment of {charge.amount} awaiting processor confirmation',
                    user_id=payer,
                    severity=Severity.WARNING,
                    details={'reason': reason},
                )
        if first:
            logger.warning('charge {} outcome unknown, holding reservation: {}', charge.payment_id, reason)
        if charge.status != Charge.Status.PROCESSING:
            # Finished by a concurrent attempt in the meantime.
            if charge.status == Charge.Status.FAILED:
                raise RailError(charge.failure_reason or 'Payment failed',
                                decline_category=charge.decline_category or DeclineCategory.PROCESSOR_ERROR,
                                details={'paymentId': str(charge.payment_id)})
            return charge
        raise PaymentPendingError(
            'Payment is awaiting confirmation from the processor.',
            details={'paymentId': str(charge.payment_id), 'milestoneId': charge.milestone_id})

    def _settle(self, charge: Charge, authorization: Authorization, result: ChargeResult,
                payer: str, context: ChargeContext) -> Charge:
        now = timezone.now()
        with transaction.atomic():
            if not charge.mark_succeeded(result.charge_id, result.settled_amount or charge.amount):
                logger.warning('charge {} was already {}', charge.payment_id, charge.status)
                return charge
            Milestone.objects.filter(pk=charge.milestone_id).update(
                status=Milestone.Status.PAID, payment_released=True, paid_at=now, updated_at=now)
            self.audit.log_payment_event(
                charge, EventType.PAYMENT_SUCCESS,
                f'Milestone payment of {charge.amount} succeeded',
                user_id=payer,
                details={'processorFee': charge.processor_fee, 'platformFee': charge.platform_fee},
            )

        logger.info('charge {} succeeded: {} via {}', charge.payment_id, charge.amount, charge.method)
        self.gate.record_sighting(payer, context)

        fees = calculate_fees(charge.amount, charge.method)
        milestone = charge.milestone
        self.notifier.notify(milestone.contract.client_email, 'payment_receipt', {
            'amount': charge.amount,
            'method': charge.get_method_display(),
            'milestone': milestone.title,
            'processed_at': charge.settled_at,
            'processor_fee': fees.processor_fee,
            'platform_fee': fees.platform_fee,
            'net_to_freelancer': fees.net_to_freelancer,
            'payment_id': charge.payment_id,
            'dispute_deadline': self.dispute_deadline(charge),
        })
        return charge

    def _fail(self, charge: Charge, authorization: Authorization, result: ChargeResult, payer: str) -> Charge:
        reason = result.error_reason or 'Payment failed'
        category = result.decline_category or DeclineCategory.PROCESSOR_ERROR
        with transaction.atomic():
            applied = charge.mark_failed(reason, category)
            if applied:
                # Only the attempt that closed the charge gives the reservation back.
                self.ledger.release_charge(authorization.pk, charge.amount)
                self.audit.log_payment_event(
                    charge, EventType.PAYMENT_FAILED,
                    f'Milestone payment of {charge.amount} failed',
                    user_id=payer,
                    severity=Severity.ERROR,
                    details={'reason': reason, 'declineCategory': category},
                )

        if not applied:
            logger.warning('charge {} was already {}', charge.payment_id, charge.status)
            if charge.status != Charge.Status.FAILED:
                return charge
            reason = charge.failure_reason or reason
            category = charge.decline_category or category
        else:
            logger.error('charge {} failed ({}): {}', charge.payment_id, category, reason)
            milestone = charge.milestone
            self.notifier.notify(milestone.contract.client_email, 'payment_failed', {
                'amount': charge.amount,
                'milestone': milestone.title,
                'reason': category.replace('_', ' '),
                'guidance': FAILURE_GUIDANCE.get(category, FAILURE_GUIDANCE[DeclineCategory.PROCESSOR_ERROR]),
            })
        raise RailError(reason, decline_category=category,
                        details={'paymentId': str(charge.payment_id), 'declineCategory': category})
