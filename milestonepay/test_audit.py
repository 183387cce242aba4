import uuid
from datetime import timedelta
from decimal import Decimal

from django.utils import timezone

from milestonepay.audit import EventType, compute_integrity_hash
from milestonepay.errors import AuditIntegrityError, NotFoundError, ValidationError
from milestonepay.models import AuditEvent
from milestonepay.testing import PlatformTestCase


class AuditChainTests(PlatformTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.audit = self.platform.audit
        self.events = [
            self.audit.log_event(user_id='client-1', event_type=EventType.AUTHORIZATION_CREATED,
                                 action=f'event {n}', details={'amount': Decimal('12.50'), 'n': n},
                                 contract_id=7, entity_id=f'entity-{n % 2}')
            for n in range(5)
        ]

    def test_events_link_to_their_predecessor(self):
        first, second = self.events[0], self.events[1]
        self.assertEqual(first.sequence, 1)
        self.assertEqual(first.previous_hash, '')
        self.assertEqual(second.previous_hash, first.integrity_hash)
        self.assertEqual(second.details['amount'], '12.50')

        report = self.audit.verify_chain()
        self.assertTrue(report.valid)
        self.assertEqual(report.checked, 5)

    def test_stored_hash_matches_payload(self):
        event = AuditEvent.objects.get(sequence=3)
        expected = compute_integrity_hash(
            user_id=event.user_id, event_type=event.event_type, action=event.action,
            timestamp=event.timestamp, details=event.details, previous_hash=event.previous_hash)
        self.assertEqual(event.integrity_hash, expected)
        self.assertTrue(self.audit.verify_integrity(event.audit_id))

    def test_edited_event_breaks_the_chain(self):
        AuditEvent.objects.filter(sequence=2).update(details={'amount': '9999.00', 'n': 1})

        report = self.audit.verify_chain()
        self.assertFalse(report.valid)
        self.assertEqual(report.broken_at, 2)
        self.assertEqual(report.reason, 'hash_mismatch')
        tampered = AuditEvent.objects.get(sequence=2)
        self.assertFalse(self.audit.verify_integrity(tampered.audit_id))
        with self.assertRaises(AuditIntegrityError):
            self.audit.assert_integrity(tampered.audit_id)

    def test_deleted_event_breaks_the_chain(self):
        AuditEvent.objects.filter(sequence=3).delete()

        report = self.audit.verify_chain()
        self.assertFalse(report.valid)
        self.assertEqual(report.broken_at, 4)
        self.assertEqual(report.reason, 'sequence_gap')

    def test_unknown_event(self):
        with self.assertRaises(NotFoundError):
            self.audit.verify_integrity(uuid.uuid4())
        with self.assertRaises(NotFoundError):
            self.audit.verify_integrity('not-a-uuid')


class AuditQueryTests(PlatformTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.audit = self.platform.audit

    def test_trail_matches_entity_or_contract(self):
        self.audit.log_event(user_id='u', event_type=EventType.PAYMENT_SUCCESS, action='paid',
                             contract_id=42, entity_id='pay-1')
        self.audit.log_event(user_id='u', event_type=EventType.DISPUTE_OPENED, action='disputed',
                             contract_id=42, entity_id='dsp-1')
        self.audit.log_event(user_id='u', event_type=EventType.PAYMENT_SUCCESS, action='elsewhere',
                             contract_id=43, entity_id='pay-2')

        self.assertEqual([e.action for e in self.audit.get_audit_trail('42')], ['paid', 'disputed'])
        self.assertEqual([e.action for e in self.audit.get_audit_trail('pay-1')], ['paid'])
        only_disputes = self.audit.get_audit_trail(42, event_types=[EventType.DISPUTE_OPENED])
        self.assertEqual([e.action for e in only_disputes], ['disputed'])
        future = timezone.now() + timedelta(hours=1)
        self.assertEqual(self.audit.get_audit_trail(42, start=future), [])

    def test_compliance_metrics(self):
        self.audit.log_event(user_id='u', event_type=EventType.PAYMENT_FAILED, action='failed')
        self.audit.log_security_event('u', EventType.TFA_FAILED, 'bad code')

        metrics = self.audit.get_compliance_metrics('day')

        self.assertEqual(metrics['totalEvents'], 2)
        self.assertEqual(metrics['complianceEvents'], 1)
        self.assertEqual(metrics['securityEvents'], 1)
        self.assertEqual(metrics['failedPayments'], 1)
        self.assertEqual(metrics['failedVerifications'], 1)
        with self.assertRaises(ValidationError):
            self.audit.get_compliance_metrics('decade')


class AuditRetentionTests(PlatformTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.audit = self.platform.audit
        for n in range(5):
            self.audit.log_event(user_id='u', event_type=EventType.PAYMENT_SUCCESS, action=f'event {n}')
        self.long_ago = timezone.now() - timedelta(days=365 * 8)

    def test_nothing_expired(self):
        self.assertEqual(self.audit.cleanup_old_logs(purge=True), 0)
        self.assertEqual(AuditEvent.objects.count(), 5)

    def test_count_only_without_purge(self):
        AuditEvent.objects.filter(sequence__lte=2).update(timestamp=self.long_ago)
        self.assertEqual(self.audit.cleanup_old_logs(), 2)
        self.assertEqual(AuditEvent.objects.count(), 5)

    def test_purge_removes_only_the_expired_head(self):
        AuditEvent.objects.filter(sequence__in=[1, 2, 4]).update(timestamp=self.long_ago)

        self.assertEqual(self.audit.cleanup_old_logs(purge=True), 3)

        self.assertEqual(list(AuditEvent.objects.order_by('sequence').values_list('sequence', flat=True)),
                         [3, 4, 5])

    def test_security_events_expire_sooner(self):
        security = self.audit.log_security_event('u', EventType.TFA_FAILED, 'bad code')
        self.assertEqual(security.retention_years, 2)
        three_years_ago = timezone.now() - timedelta(days=365 * 3)
        AuditEvent.objects.filter(pk=security.pk).update(timestamp=three_years_ago)
        AuditEvent.objects.filter(sequence=1).update(timestamp=three_years_ago)

        self.assertEqual(list(self.audit.expired_events()), [security])
