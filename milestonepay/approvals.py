"""
Milestone approval: manual, batch and automatic after the review window.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from typing import Dict, List, Optional, Sequence

from django.conf import settings
from django.utils import timezone
from loguru import logger

from milestonepay.audit import AuditLogger, EventType
from milestonepay.charges import ChargeExecutor
from milestonepay.errors import (
    InvalidStateError,
    NotFoundError,
    PaymentPendingError,
    PaymentPlatformError,
    ValidationError,
    VerificationFailedError,
    VerificationRequiredError,
)
from milestonepay.models import Authorization, Charge, Milestone
from milestonepay.notifications import Notifier
from milestonepay.two_factor import ChargeContext, TwoFactorGate, VerificationResult

SYSTEM_APPROVER = 'system'


@dataclass
class BatchResult:
    milestone_id: int
    success: bool
    charge: Optional[Charge] = None
    error: Optional[str] = None
    message: Optional[str] = None


class MilestoneApprovals:
    def __init__(self, executor: ChargeExecutor, gate: TwoFactorGate, audit: AuditLogger, notifier: Notifier):
        self.executor = executor
        self.gate = gate
        self.audit = audit
        self.notifier = notifier
        self.review_window = timedelta(days=getattr(settings, 'MILESTONEPAY_AUTO_APPROVE_DAYS', 7))
        self.notice_lead = timedelta(hours=getattr(settings, 'MILESTONEPAY_PRE_CHARGE_NOTICE_HOURS', 24))

    @staticmethod
    def _load(milestone_id) -> Milestone:
        try:
            return Milestone.objects.select_related('contract').get(pk=milestone_id)
        except (Milestone.DoesNotExist, ValueError):
            raise NotFoundError(f'Milestone {milestone_id} not found.')

    def _mark_approved(self, milestone: Milestone, approver: str, event_type: str) -> bool:
        now = timezone.now()
        updated = Milestone.objects.filter(
            pk=milestone.pk, status=Milestone.Status.SUBMITTED,
        ).update(status=Milestone.Status.APPROVED, approved_at=now, approved_by=approver, updated_at=now)
        milestone.refresh_from_db()
        if updated:
            self.audit.log_approval_event(milestone, approver, event_type=event_type)
            logger.info('milestone {} approved by {}', milestone.pk, approver)
        return bool(updated)

    def approve_milestone(
        self,
        milestone_id,
        user_id: str,
        otp_code: Optional[str] = None,
        context: Optional[ChargeContext] = None,
        verification: Optional[VerificationResult] = None,
    ) -> Charge:
        """Approve a submitted milestone and charge it in the same action."""
        context = context or ChargeContext()
        milestone = self._load(milestone_id)
        if milestone.contract.client_id != str(user_id):
            raise ValidationError('Only the contract client can approve this milestone.')

        if milestone.status == Milestone.Status.SUBMITTED:
            self._mark_approved(milestone, str(user_id), EventType.MILESTONE_APPROVED)
        if milestone.status not in (Milestone.Status.APPROVED, Milestone.Status.PAID):
            raise InvalidStateError(
                f'Milestone cannot be approved from status {milestone.status}.')

        if otp_code and verification is None and milestone.status == Milestone.Status.APPROVED:
            verification = self.gate.verify_code(user_id, milestone.pk, otp_code, context)
            if not verification.valid:
                raise VerificationFailedError('Verification code is invalid or expired.')

        return self.executor.execute_charge(
            milestone.pk, user_id=user_id, context=context, verification=verification)

    def batch_approve(
        self,
        user_id: str,
        milestone_ids: Sequence[int],
        code: str,
        context: Optional[ChargeContext] = None,
    ) -> List[BatchResult]:
        """
        Verify one code against the combined amount, then approve each
        milestone on its own. One failure does not undo the others.
        """
        context = context or ChargeContext()
        ids = list(dict.fromkeys(int(m) for m in milestone_ids))
        if not ids:
            raise ValidationError('At least one milestone is required.')

        milestones = {m.pk: m for m in Milestone.objects.select_related('contract').filter(pk__in=ids)}
        missing = [m for m in ids if m not in milestones]
        if missing:
            raise NotFoundError(f'Milestones not found: {", ".join(map(str, missing))}')
        if any(m.contract.client_id != str(user_id) for m in milestones.values()):
            raise ValidationError('Only the contract client can approve these milestones.')

        combined = sum((m.amount for m in milestones.values()), Decimal('0'))
        verification = self.gate.verify_code(
            user_id, ids[0], code, context, required_amount=combined, covers=ids)
        if not verification.valid:
            raise VerificationFailedError('Verification code is invalid or expired.')

        results = []
        for milestone_id in ids:
            try:
                charge = self.approve_milestone(
                    milestone_id, user_id, context=context, verification=verification)
            except PaymentPlatformError as exc:
                logger.warning('batch approval of milestone {} failed: {}', milestone_id, exc.message)
                results.append(BatchResult(milestone_id=milestone_id, success=False,
                                           error=exc.code, message=exc.public_message))
            else:
                results.append(BatchResult(milestone_id=milestone_id, success=True, charge=charge))
        return results

    def auto_approve_due(self) -> Dict[str, int]:
        """Approve and charge milestones left in review past the window."""
        cutoff = timezone.now() - self.review_window
        summary = {'approved': 0, 'charged': 0, 'held': 0, 'pending': 0, 'failed': 0}
        due = Milestone.objects.select_related('contract').filter(
            status=Milestone.Status.SUBMITTED, submitted_at__lte=cutoff)

        for milestone in due:
            if not self._mark_approved(milestone, SYSTEM_APPROVER, EventType.MILESTONE_AUTO_APPROVED):
                continue
            summary['approved'] += 1
            contract = milestone.contract
            try:
                self.executor.execute_charge(
                    milestone.pk,
                    user_id=contract.client_id,
                    context=ChargeContext(system_initiated=True),
                )
            except VerificationRequiredError:
                summary['held'] += 1
                self.notifier.notify(contract.client_email, 'verification_required', {
                    'milestone': milestone.title,
                    'amount': milestone.amount,
                })
            except PaymentPendingError:
                summary['pending'] += 1
            except PaymentPlatformError as exc:
                summary['failed'] += 1
                logger.warning('auto-approved milestone {} not charged: {}', milestone.pk, exc.message)
            else:
                summary['charged'] += 1

        if summary['approved']:
            logger.info('auto-approval sweep: {}', summary)
        return summary

    def send_pre_charge_notices(self) -> int:
        """Warn clients once, ahead of the automatic approval deadline."""
        now = timezone.now()
        cutoff = now - (self.review_window - self.notice_lead)
        sent = 0
        due = Milestone.objects.select_related('contract').filter(
            status=Milestone.Status.SUBMITTED,
            submitted_at__lte=cutoff,
            pending_notice_sent_at__isnull=True,
        )
        for milestone in due:
            claimed = Milestone.objects.filter(
                pk=milestone.pk, pending_notice_sent_at__isnull=True,
            ).update(pending_notice_sent_at=now)
            if not claimed:
                continue
            authorization = milestone.contract.authorizations.filter(
                status__in=Authorization.LIVE_STATUSES).first()
            self.notifier.notify(milestone.contract.client_email, 'payment_pending', {
                'milestone': milestone.title,
                'amount': milestone.amount,
                'method': authorization.get_method_display() if authorization else 'payment method',
                'charge_at': milestone.submitted_at + self.review_window,
            })
            sent += 1
        return sent
