from datetime import timedelta
from decimal import Decimal
from unittest.mock import patch

from django.core import mail
from django.utils import timezone

from milestonepay.audit import EventType
from milestonepay.errors import (
    InvalidStateError,
    NotFoundError,
    ValidationError,
    VerificationFailedError,
)
from milestonepay.models import AuditEvent, Charge, Milestone
from milestonepay.testing import CLIENT_ID, FREELANCER_ID, PlatformTestCase


class ApproveMilestoneTests(PlatformTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.approvals = self.platform.approvals
        self.establish_history()
        self.set_threshold(threshold='2000')
        self.contract = self.make_contract()
        self.authorize(self.contract)

    def test_approval_charges_the_milestone(self):
        milestone = self.make_milestone(self.contract, '300', status=Milestone.Status.SUBMITTED)

        charge = self.approvals.approve_milestone(milestone.pk, CLIENT_ID, context=self.known_context())

        self.assertEqual(charge.status, Charge.Status.SUCCEEDED)
        milestone.refresh_from_db()
        self.assertEqual(milestone.status, Milestone.Status.PAID)
        self.assertEqual(milestone.approved_by, CLIENT_ID)
        self.assertTrue(AuditEvent.objects.filter(
            event_type=EventType.MILESTONE_APPROVED, entity_id=str(milestone.pk)).exists())

    def test_only_client_can_approve(self):
        milestone = self.make_milestone(self.contract, '300', status=Milestone.Status.SUBMITTED)
        with self.assertRaises(ValidationError):
            self.approvals.approve_milestone(milestone.pk, FREELANCER_ID)
        milestone.refresh_from_db()
        self.assertEqual(milestone.status, Milestone.Status.SUBMITTED)

    def test_work_in_progress_cannot_be_approved(self):
        milestone = self.make_milestone(self.contract, '300', status=Milestone.Status.IN_PROGRESS)
        with self.assertRaises(InvalidStateError):
            self.approvals.approve_milestone(milestone.pk, CLIENT_ID)

    def test_unknown_milestone(self):
        with self.assertRaises(NotFoundError):
            self.approvals.approve_milestone(424242, CLIENT_ID)


@patch('milestonepay.two_factor.get_random_string', return_value='123456')
class VerifiedApprovalTests(PlatformTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.approvals = self.platform.approvals
        self.gate = self.platform.gate
        self.contract = self.make_contract()
        self.authorize(self.contract)

    def test_approval_with_code(self, _):
        milestone = self.make_milestone(self.contract, '80', status=Milestone.Status.SUBMITTED)
        self.gate.send_verification_code(CLIENT_ID, milestone.pk, milestone.amount)

        charge = self.approvals.approve_milestone(
            milestone.pk, CLIENT_ID, otp_code='123456', context=self.known_context())

        self.assertEqual(charge.status, Charge.Status.SUCCEEDED)

    def test_wrong_code_leaves_milestone_approved_but_unpaid(self, _):
        milestone = self.make_milestone(self.contract, '80', status=Milestone.Status.SUBMITTED)
        self.gate.send_verification_code(CLIENT_ID, milestone.pk, milestone.amount)

        with self.assertRaises(VerificationFailedError):
            self.approvals.approve_milestone(milestone.pk, CLIENT_ID, otp_code='000000')

        milestone.refresh_from_db()
        self.assertEqual(milestone.status, Milestone.Status.APPROVED)
        self.assertFalse(Charge.objects.filter(milestone=milestone).exists())

    def test_batch_approval_continues_past_failures(self, _):
        first = self.make_milestone(self.contract, '50', status=Milestone.Status.SUBMITTED, title='One')
        second = self.make_milestone(self.contract, '60', status=Milestone.Status.SUBMITTED, title='Two')
        too_big = self.make_milestone(self.contract, '3000', status=Milestone.Status.SUBMITTED, title='Three')
        self.gate.send_verification_code(CLIENT_ID, first.pk, Decimal('3110'))

        results = self.approvals.batch_approve(
            CLIENT_ID, [first.pk, second.pk, too_big.pk], '123456', context=self.known_context())

        self.assertEqual([r.milestone_id for r in results], [first.pk, second.pk, too_big.pk])
        self.assertEqual([r.success for r in results], [True, True, False])
        self.assertEqual(results[2].error, 'cap_exceeded')
        self.assertEqual(Charge.objects.filter(status=Charge.Status.SUCCEEDED).count(), 2)

    def test_batch_code_must_cover_combined_amount(self, _):
        first = self.make_milestone(self.contract, '50', status=Milestone.Status.SUBMITTED)
        second = self.make_milestone(self.contract, '60', status=Milestone.Status.SUBMITTED)
        self.gate.send_verification_code(CLIENT_ID, first.pk, Decimal('50'))

        with self.assertRaises(VerificationFailedError):
            self.approvals.batch_approve(CLIENT_ID, [first.pk, second.pk], '123456')
        self.assertFalse(Charge.objects.exists())

    def test_batch_rejects_unknown_or_foreign_milestones(self, _):
        first = self.make_milestone(self.contract, '50', status=Milestone.Status.SUBMITTED)
        with self.assertRaises(NotFoundError):
            self.approvals.batch_approve(CLIENT_ID, [first.pk, 999999], '123456')

        foreign = self.make_milestone(self.make_contract('client-2'), '50', status=Milestone.Status.SUBMITTED)
        with self.assertRaises(ValidationError):
            self.approvals.batch_approve(CLIENT_ID, [first.pk, foreign.pk], '123456')


class AutoApprovalTests(PlatformTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.approvals = self.platform.approvals
        self.week_ago = timezone.now() - timedelta(days=8)

    def test_due_milestones_are_charged_or_held(self):
        self.establish_history()
        regular = self.make_contract()
        self.authorize(regular)
        charged = self.make_milestone(regular, '50', status=Milestone.Status.SUBMITTED,
                                      submitted_at=self.week_ago)

        newcomer = self.make_contract('client-2', title='New client')
        self.authorize(newcomer)
        held = self.make_milestone(newcomer, '50', status=Milestone.Status.SUBMITTED,
                                   submitted_at=self.week_ago)
        recent = self.make_milestone(newcomer, '50', status=Milestone.Status.SUBMITTED,
                                     submitted_at=timezone.now() - timedelta(days=2))
        mail.outbox.clear()

        summary = self.approvals.auto_approve_due()

        self.assertEqual(summary, {'approved': 2, 'charged': 1, 'held': 1, 'pending': 0, 'failed': 0})
        charged.refresh_from_db()
        held.refresh_from_db()
        recent.refresh_from_db()
        self.assertEqual(charged.status, Milestone.Status.PAID)
        self.assertEqual(charged.approved_by, 'system')
        self.assertEqual(held.status, Milestone.Status.APPROVED)
        self.assertEqual(recent.status, Milestone.Status.SUBMITTED)
        self.assertIn('Action needed', ' '.join(message.subject for message in mail.outbox))
        self.assertEqual(self.approvals.auto_approve_due()['approved'], 0)

    def test_missing_authorization_counts_as_failed(self):
        self.establish_history()
        contract = self.make_contract(title='Unauthorized')
        self.make_milestone(contract, '50', status=Milestone.Status.SUBMITTED, submitted_at=self.week_ago)

        self.assertEqual(self.approvals.auto_approve_due(),
                         {'approved': 1, 'charged': 0, 'held': 0, 'pending': 0, 'failed': 1})

    def test_pre_charge_notice_sent_once(self):
        contract = self.make_contract()
        self.authorize(contract)
        self.make_milestone(contract, '50', status=Milestone.Status.SUBMITTED,
                            submitted_at=timezone.now() - timedelta(days=6, hours=12))
        self.make_milestone(contract, '70', status=Milestone.Status.SUBMITTED,
                            submitted_at=timezone.now() - timedelta(days=1))
        mail.outbox.clear()

        self.assertEqual(self.approvals.send_pre_charge_notices(), 1)
        self.assertEqual(self.approvals.send_pre_charge_notices(), 0)
        self.assertEqual(len(mail.outbox), 1)
        self.assertIn('charged to your Card', mail.outbox[0].body)
