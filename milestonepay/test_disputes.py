from datetime import timedelta
from decimal import Decimal
from unittest.mock import patch

from django.core import mail
from django.utils import timezone

from milestonepay.audit import EventType
from milestonepay.errors import (
    DisputeWindowClosedError,
    InvalidStateError,
    NotFoundError,
    RailError,
    ValidationError,
)
from milestonepay.models import AuditEvent, Charge, Dispute, Milestone
from milestonepay.rails import RefundResult
from milestonepay.services import build_platform
from milestonepay.testing import CLIENT_ID, FREELANCER_ID, FakeProcessor, PlatformTestCase


class DisputeTests(PlatformTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.disputes = self.platform.disputes
        self.establish_history()
        self.set_threshold(threshold='2000')
        self.contract = self.make_contract()
        self.authorize(self.contract)
        milestone = self.make_milestone(self.contract, '1500')
        self.charge = self.platform.executor.execute_charge(milestone.pk, context=self.known_context())
        mail.outbox.clear()

    def _settled_ago(self, delta: timedelta) -> None:
        Charge.objects.filter(pk=self.charge.pk).update(settled_at=timezone.now() - delta)

    def test_open_dispute_freezes_payout(self):
        dispute = self.disputes.open_dispute(self.charge.payment_id, 'Work not delivered', CLIENT_ID)

        self.assertEqual(dispute.status, Dispute.Status.OPEN)
        self.assertEqual(dispute.amount, Decimal('1500'))
        self.assertEqual(dispute.freelancer_id, FREELANCER_ID)
        self.assertTrue(self.disputes.is_payout_frozen(self.charge.payment_id))
        self.assertTrue(AuditEvent.objects.filter(event_type=EventType.DISPUTE_OPENED).exists())
        recipients = sorted(message.to[0] for message in mail.outbox)
        self.assertEqual(recipients, [f'{CLIENT_ID}@example.com', f'{FREELANCER_ID}@example.com'])

    def test_dispute_just_inside_window(self):
        self._settled_ago(timedelta(hours=47, minutes=59))
        dispute = self.disputes.open_dispute(self.charge.payment_id, 'Late delivery', CLIENT_ID)
        self.assertTrue(dispute.is_open)

    def test_dispute_after_window_is_rejected(self):
        self._settled_ago(timedelta(hours=48, seconds=1))
        with self.assertRaises(DisputeWindowClosedError):
            self.disputes.open_dispute(self.charge.payment_id, 'Late delivery', CLIENT_ID)
        self.assertFalse(Dispute.objects.exists())
        self.assertFalse(self.disputes.is_payout_frozen(self.charge.payment_id))

    def test_open_requires_reason_and_client(self):
        with self.assertRaises(ValidationError):
            self.disputes.open_dispute(self.charge.payment_id, '   ', CLIENT_ID)
        with self.assertRaises(ValidationError):
            self.disputes.open_dispute(self.charge.payment_id, 'Not mine', FREELANCER_ID)
        with self.assertRaises(NotFoundError):
            self.disputes.open_dispute('not-a-uuid', 'Missing', CLIENT_ID)

    def test_second_open_dispute_is_rejected(self):
        self.disputes.open_dispute(self.charge.payment_id, 'First', CLIENT_ID)
        with self.assertRaises(InvalidStateError):
            self.disputes.open_dispute(self.charge.payment_id, 'Second', CLIENT_ID)

    def test_resolve_with_partial_refund(self):
        dispute = self.disputes.open_dispute(self.charge.payment_id, 'Half the work', CLIENT_ID)
        self.disputes.mark_investigating(dispute.dispute_id, 'admin-1')

        resolved = self.disputes.resolve_dispute(
            dispute.dispute_id, 'Refund half', refund_amount=Decimal('750'), admin_id='admin-1')

        self.assertEqual(resolved.status, Dispute.Status.RESOLVED)
        self.assertEqual(resolved.refund_amount, Decimal('750'))
        self.assertTrue(resolved.refund_reference.startswith('sbx_re_'))
        self.assertEqual(resolved.resolved_by, 'admin-1')
        self.charge.refresh_from_db()
        self.assertEqual(self.charge.status, Charge.Status.REFUNDED)
        self.assertEqual(self.charge.refunded_amount, Decimal('750'))
        self.assertFalse(self.charge.payout_frozen)
        self.assertTrue(AuditEvent.objects.filter(event_type=EventType.PAYMENT_REFUNDED).exists())
        self.assertTrue(AuditEvent.objects.filter(
            event_type=EventType.ADMIN_ACTION, user_id='admin-1').exists())

    def test_resolving_twice_is_rejected(self):
        dispute = self.disputes.open_dispute(self.charge.payment_id, 'Quality', CLIENT_ID)
        self.disputes.resolve_dispute(dispute.dispute_id, 'Refund some', refund_amount=Decimal('100'))

        with self.assertRaises(InvalidStateError):
            self.disputes.resolve_dispute(dispute.dispute_id, 'Refund again', refund_amount=Decimal('100'))
        self.charge.refresh_from_db()
        self.assertEqual(self.charge.refunded_amount, Decimal('100'))

    def test_failed_refund_reopens_dispute(self):
        dispute = self.disputes.open_dispute(self.charge.payment_id, 'Quality', CLIENT_ID)
        rail = self.platform.rails.rail_for('card')
        refused = RefundResult(success=False, error_reason='Processor refused')
        with patch.object(rail, 'refund', return_value=refused):
            with self.assertRaises(RailError):
                self.disputes.resolve_dispute(dispute.dispute_id, 'Refund', refund_amount=Decimal('100'))

        dispute.refresh_from_db()
        self.assertEqual(dispute.status, Dispute.Status.OPEN)
        self.charge.refresh_from_db()
        self.assertTrue(self.charge.payout_frozen)
        self.assertEqual(self.charge.refunded_amount, Decimal('0'))
        self.assertEqual(self.charge.status, Charge.Status.SUCCEEDED)

    def test_refund_above_settled_amount_is_rejected(self):
        dispute = self.disputes.open_dispute(self.charge.payment_id, 'Quality', CLIENT_ID)
        with self.assertRaises(ValidationError):
            self.disputes.resolve_dispute(dispute.dispute_id, 'Refund', refund_amount=Decimal('1500.01'))
        dispute.refresh_from_db()
        self.assertTrue(dispute.is_open)

    def test_refund_amount_must_be_a_finite_number(self):
        dispute = self.disputes.open_dispute(self.charge.payment_id, 'Quality', CLIENT_ID)
        for value in ('NaN', 'sNaN', 'Infinity', 'abc'):
            with self.subTest(value=value), self.assertRaises(ValidationError):
                self.disputes.resolve_dispute(dispute.dispute_id, 'Refund', refund_amount=value)
        with self.assertRaises(ValidationError):
            self.disputes.process_refund(self.charge.payment_id, 'NaN')

        dispute.refresh_from_db()
        self.assertTrue(dispute.is_open)
        self.charge.refresh_from_db()
        self.assertEqual(self.charge.refunded_amount, Decimal('0'))

    def test_close_without_refund(self):
        dispute = self.disputes.open_dispute(self.charge.payment_id, 'Quality', CLIENT_ID)
        closed = self.disputes.close_dispute(dispute.dispute_id, 'admin-1', notes='Work accepted')

        self.assertEqual(closed.status, Dispute.Status.CLOSED)
        self.assertEqual(closed.admin_notes, 'Work accepted')
        self.assertIsNone(closed.refund_amount)
        self.assertFalse(self.disputes.is_payout_frozen(self.charge.payment_id))
        with self.assertRaises(InvalidStateError):
            self.disputes.close_dispute(dispute.dispute_id, 'admin-1')

    def test_only_open_disputes_can_be_investigated(self):
        dispute = self.disputes.open_dispute(self.charge.payment_id, 'Quality', CLIENT_ID)
        self.disputes.mark_investigating(dispute.dispute_id, 'admin-1')
        with self.assertRaises(InvalidStateError):
            self.disputes.mark_investigating(dispute.dispute_id, 'admin-1')


class PayoutReleaseTests(PlatformTestCase):
    def test_release_skips_frozen_and_recent_charges(self):
        released_candidate = self.establish_history()
        frozen_contract = self.make_contract(title='Frozen work')
        frozen_authorization = self.authorize(frozen_contract)
        settled_at = timezone.now() - timedelta(hours=72)
        frozen = Charge.objects.create(
            contract=frozen_contract,
            milestone=self.make_milestone(frozen_contract, '400', status=Milestone.Status.PAID),
            authorization=frozen_authorization,
            amount=Decimal('400'),
            method='card',
            status=Charge.Status.SUCCEEDED,
            external_charge_id='sbx_ch_frozen',
            settled_amount=Decimal('400'),
            settled_at=settled_at,
            payout_frozen=True,
        )
        recent_contract = self.make_contract(title='Recent work')
        recent = Charge.objects.create(
            contract=recent_contract,
            milestone=self.make_milestone(recent_contract, '300', status=Milestone.Status.PAID),
            authorization=self.authorize(recent_contract),
            amount=Decimal('300'),
            method='card',
            status=Charge.Status.SUCCEEDED,
            external_charge_id='sbx_ch_recent',
            settled_amount=Decimal('300'),
            settled_at=timezone.now() - timedelta(hours=1),
        )
        mail.outbox.clear()

        self.assertEqual(self.platform.disputes.release_due_payouts(), 1)
        self.assertEqual(self.platform.disputes.release_due_payouts(), 0)

        released_candidate.refresh_from_db()
        frozen.refresh_from_db()
        recent.refresh_from_db()
        self.assertIsNotNone(released_candidate.payout_released_at)
        self.assertIsNone(frozen.payout_released_at)
        self.assertIsNone(recent.payout_released_at)
        self.assertEqual(len(mail.outbox), 1)
        self.assertEqual(mail.outbox[0].to, [f'{FREELANCER_ID}@example.com'])


class ProcessorRefundTests(PlatformTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.processor = FakeProcessor()
        self.platform = build_platform(rail_factory=self.processor.rails())
        self.disputes = self.platform.disputes
        self.establish_history()
        self.set_threshold(threshold='2000')
        contract = self.make_contract()
        self.authorize(contract)
        milestone = self.make_milestone(contract, '1500')
        self.charge = self.platform.executor.execute_charge(milestone.pk, context=self.known_context())

    def test_equal_partial_refunds_are_separate_operations(self):
        first = self.disputes.process_refund(self.charge.payment_id, Decimal('100'), actor='admin-1')
        second = self.disputes.process_refund(self.charge.payment_id, Decimal('100'), actor='admin-1')

        self.assertNotEqual(first.refund_id, second.refund_id)
        self.assertEqual(len(self.processor.refunds), 2)
        self.assertEqual(sum(refund['amount'] for refund in self.processor.refunds.values()), 20000)
        self.charge.refresh_from_db()
        self.assertEqual(self.charge.refunded_amount, Decimal('200'))
        self.assertEqual(self.charge.status, Charge.Status.REFUNDED)
        keys = [event.details['refundKey'] for event in
                AuditEvent.objects.filter(event_type=EventType.PAYMENT_REFUNDED)]
        self.assertEqual(sorted(keys), sorted(self.processor.refunds))
