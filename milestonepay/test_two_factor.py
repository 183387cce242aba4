from datetime import timedelta
from decimal import Decimal
from unittest.mock import patch

from django.core import mail
from django.test import override_settings
from django.utils import timezone

from milestonepay.audit import EventType
from milestonepay.errors import ValidationError, VerificationFailedError, VerificationRequiredError
from milestonepay.models import AuditEvent, DeviceSighting, TrustedDevice, VerificationCode
from milestonepay.testing import CLIENT_ID, KNOWN_IP, PlatformTestCase
from milestonepay.two_factor import ChargeContext, SlidingWindowRateLimiter, device_fingerprint


class RequiresTwoFactorTests(PlatformTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.gate = self.platform.gate

    def test_first_payment_always_requires_verification(self):
        decision = self.gate.requires_2fa(CLIENT_ID, Decimal('5'), self.known_context())
        self.assertTrue(decision.required)
        self.assertEqual(decision.reason, 'First payment requires verification')
        event = AuditEvent.objects.get(event_type=EventType.TFA_SENT)
        self.assertEqual(event.details['reason'], decision.reason)
        self.assertFalse(event.compliance_relevant)

    def test_always_2fa_setting(self):
        self.establish_history()
        self.gate.update_security_settings(CLIENT_ID, always_2fa=True)
        decision = self.gate.requires_2fa(CLIENT_ID, Decimal('5'), self.known_context())
        self.assertTrue(decision.required)
        self.assertEqual(decision.reason, 'User requires 2FA for all payments')

    def test_default_threshold_is_one_hundred(self):
        self.establish_history()
        self.assertFalse(self.gate.requires_2fa(CLIENT_ID, Decimal('100'), self.known_context()).required)
        decision = self.gate.requires_2fa(CLIENT_ID, Decimal('100.01'), self.known_context())
        self.assertTrue(decision.required)
        self.assertIn('threshold', decision.reason)

    def test_amount_far_above_average_is_unusual(self):
        self.establish_history(amount='1000')
        self.set_threshold(threshold='10000')
        decision = self.gate.requires_2fa(CLIENT_ID, Decimal('3500'), self.known_context())
        self.assertTrue(decision.required)
        self.assertEqual(decision.reason, 'Amount significantly higher than usual')

    def test_new_device_is_unusual(self):
        self.establish_history()
        context = ChargeContext(ip_address='198.51.100.99', user_agent='Mozilla/5.0 (Windows NT 10.0)')
        decision = self.gate.requires_2fa(CLIENT_ID, Decimal('20'), context)
        self.assertTrue(decision.required)
        self.assertEqual(decision.reason, 'New device or location')

    def test_trusted_device_bypasses(self):
        self.establish_history()
        self.gate.trust_device(CLIENT_ID, 'device-1', self.known_context())
        decision = self.gate.requires_2fa(CLIENT_ID, Decimal('20'), self.known_context())
        self.assertFalse(decision.required)
        self.assertEqual(decision.reason, 'Trusted device')
        self.assertTrue(AuditEvent.objects.filter(event_type=EventType.TFA_BYPASSED).exists())

    def test_expired_trust_does_not_bypass(self):
        self.establish_history()
        self.gate.trust_device(CLIENT_ID, 'device-1', self.known_context())
        TrustedDevice.objects.update(trusted_until=timezone.now() - timedelta(seconds=1))
        decision = self.gate.requires_2fa(CLIENT_ID, Decimal('20'), self.known_context())
        self.assertEqual(decision.reason, 'Below threshold')

    def test_check_failure_fails_closed(self):
        with patch.object(self.gate, '_decide', side_effect=RuntimeError('db down')):
            decision = self.gate.requires_2fa(CLIENT_ID, Decimal('1'), self.known_context())
        self.assertTrue(decision.required)
        self.assertEqual(decision.reason, 'Security check failed')


@patch('milestonepay.two_factor.get_random_string', return_value='123456')
class VerificationCodeTests(PlatformTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.gate = self.platform.gate
        self.contract = self.make_contract()
        self.milestone = self.make_milestone(self.contract, '50')
        mail.outbox.clear()

    def test_code_is_delivered_and_only_its_hash_stored(self, _):
        issued = self.gate.send_verification_code(CLIENT_ID, self.milestone.pk, Decimal('50'))

        otp = VerificationCode.objects.get(pk=issued.otp_id)
        self.assertNotEqual(otp.hashed_code, '123456')
        self.assertEqual(otp.expires_at, issued.expires_at)
        self.assertEqual(len(mail.outbox), 1)
        self.assertIn('123456', mail.outbox[0].body)
        issued_event = AuditEvent.objects.get(event_type=EventType.TFA_CODE_ISSUED)
        self.assertNotIn('code', issued_event.details)

    def test_correct_code_verifies_once(self, _):
        self.gate.send_verification_code(CLIENT_ID, self.milestone.pk, Decimal('50'))

        first = self.gate.verify_code(CLIENT_ID, self.milestone.pk, '123456')
        second = self.gate.verify_code(CLIENT_ID, self.milestone.pk, '123456')

        self.assertTrue(first.valid)
        self.assertTrue(first.covers(self.milestone.pk))
        self.assertFalse(second.valid)
        self.assertEqual(AuditEvent.objects.filter(event_type=EventType.TFA_VERIFIED).count(), 1)

    def test_wrong_code_fails_and_logs(self, _):
        self.gate.send_verification_code(CLIENT_ID, self.milestone.pk, Decimal('50'))
        result = self.gate.verify_code(CLIENT_ID, self.milestone.pk, '654321')
        self.assertFalse(result.valid)
        self.assertFalse(result.covers(self.milestone.pk))
        failure = AuditEvent.objects.get(event_type=EventType.TFA_FAILED)
        self.assertEqual(failure.details['reason'], 'mismatch')

    def test_expired_code_fails(self, _):
        issued_at = timezone.now()
        with patch('django.utils.timezone.now', return_value=issued_at):
            self.gate.send_verification_code(CLIENT_ID, self.milestone.pk, Decimal('50'))
        with patch('django.utils.timezone.now', return_value=issued_at + timedelta(minutes=10, seconds=1)):
            result = self.gate.verify_code(CLIENT_ID, self.milestone.pk, '123456')
        self.assertFalse(result.valid)

    def test_three_wrong_guesses_kill_the_code(self, _):
        self.gate.send_verification_code(CLIENT_ID, self.milestone.pk, Decimal('50'))
        for guess in ('000001', '000002', '000003'):
            self.assertFalse(self.gate.verify_code(CLIENT_ID, self.milestone.pk, guess).valid)
        self.assertFalse(self.gate.verify_code(CLIENT_ID, self.milestone.pk, '123456').valid)

    def test_new_code_replaces_previous(self, random_mock):
        self.gate.send_verification_code(CLIENT_ID, self.milestone.pk, Decimal('50'))
        random_mock.return_value = '777777'
        self.gate.send_verification_code(CLIENT_ID, self.milestone.pk, Decimal('50'))

        self.assertFalse(self.gate.verify_code(CLIENT_ID, self.milestone.pk, '123456').valid)
        self.assertTrue(self.gate.verify_code(CLIENT_ID, self.milestone.pk, '777777').valid)

    def test_malformed_code_is_rejected(self, _):
        self.gate.send_verification_code(CLIENT_ID, self.milestone.pk, Decimal('50'))
        self.assertFalse(self.gate.verify_code(CLIENT_ID, self.milestone.pk, '12ab56').valid)
        self.assertTrue(self.gate.verify_code(CLIENT_ID, self.milestone.pk, ' 123456 ').valid)

    def test_verification_attempts_are_rate_limited(self, _):
        self.gate.send_verification_code(CLIENT_ID, self.milestone.pk, Decimal('50'))
        for _attempt in range(5):
            self.gate.verify_code(CLIENT_ID, self.milestone.pk, 'bad')
        result = self.gate.verify_code(CLIENT_ID, self.milestone.pk, '123456')
        self.assertFalse(result.valid)
        self.assertTrue(AuditEvent.objects.filter(
            event_type=EventType.TFA_FAILED, details__reason='rate_limited').exists())

    def test_code_amount_must_cover_required_amount(self, _):
        self.gate.send_verification_code(CLIENT_ID, self.milestone.pk, Decimal('50'))
        result = self.gate.verify_code(CLIENT_ID, self.milestone.pk, '123456', required_amount=Decimal('80'))
        self.assertFalse(result.valid)

    def test_only_the_client_can_request_a_code(self, _):
        with self.assertRaises(ValidationError):
            self.gate.send_verification_code('freelancer-1', self.milestone.pk, Decimal('50'))

    @override_settings(APP_ENV='production')
    def test_delivery_failure_in_production_fails_closed(self, _):
        with patch.object(self.platform.notifier, 'deliver', side_effect=OSError('smtp down')):
            with self.assertRaises(VerificationFailedError):
                self.gate.send_verification_code(CLIENT_ID, self.milestone.pk, Decimal('50'))
        self.assertFalse(VerificationCode.objects.filter(used=False).exists())

    def test_delivery_failure_locally_keeps_the_code(self, _):
        with patch.object(self.platform.notifier, 'deliver', side_effect=OSError('smtp down')):
            self.gate.send_verification_code(CLIENT_ID, self.milestone.pk, Decimal('50'))
        self.assertTrue(self.gate.verify_code(CLIENT_ID, self.milestone.pk, '123456').valid)

    def test_recent_verification_only_counts_accepted_codes(self, random_mock):
        first = self.gate.send_verification_code(CLIENT_ID, self.milestone.pk, Decimal('50'))
        random_mock.return_value = '777777'
        second = self.gate.send_verification_code(CLIENT_ID, self.milestone.pk, Decimal('50'))
        self.gate.verify_code(CLIENT_ID, self.milestone.pk, '777777')

        self.assertFalse(self.gate.has_recent_verification(CLIENT_ID, first.otp_id))
        self.assertTrue(self.gate.has_recent_verification(CLIENT_ID, second.otp_id))
        self.assertFalse(self.gate.has_recent_verification('someone-else', second.otp_id))


class DeviceTrackingTests(PlatformTestCase):
    def test_trust_device_grants_thirty_days(self):
        device = self.platform.gate.trust_device(CLIENT_ID, 'device-9', self.known_context('device-9'))
        remaining = device.trusted_until - timezone.now()
        self.assertGreater(remaining, timedelta(days=29, hours=23))
        self.assertLessEqual(remaining, timedelta(days=30))
        self.assertTrue(AuditEvent.objects.filter(event_type=EventType.DEVICE_TRUSTED).exists())

    def test_trust_requires_device_id(self):
        with self.assertRaises(ValidationError):
            self.platform.gate.trust_device(CLIENT_ID, '')

    def test_sightings_are_fingerprinted(self):
        context = self.known_context()
        self.platform.gate.record_sighting(CLIENT_ID, context)
        self.platform.gate.record_sighting(CLIENT_ID, context)
        sighting = DeviceSighting.objects.get(user_id=CLIENT_ID)
        self.assertEqual(sighting.fingerprint, device_fingerprint(context.user_agent, KNOWN_IP))
        self.assertTrue(self.platform.gate.is_known_location(CLIENT_ID, KNOWN_IP))

    def test_system_initiated_charges_leave_no_sighting(self):
        self.platform.gate.record_sighting(CLIENT_ID, ChargeContext(system_initiated=True))
        self.assertFalse(DeviceSighting.objects.exists())


class RateLimiterTests(PlatformTestCase):
    def test_sliding_window(self):
        limiter = SlidingWindowRateLimiter(2, timedelta(minutes=15))
        start = timezone.now()
        with patch('django.utils.timezone.now', return_value=start):
            self.assertTrue(limiter.allow('k'))
            self.assertTrue(limiter.allow('k'))
            self.assertFalse(limiter.allow('k'))
            self.assertTrue(limiter.allow('other'))
        with patch('django.utils.timezone.now', return_value=start + timedelta(minutes=15, seconds=1)):
            self.assertTrue(limiter.allow('k'))


class SecuritySettingsTests(PlatformTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.gate = self.platform.gate
        self.gate.update_security_settings(CLIENT_ID, always_2fa=True)

    def test_tightening_needs_no_code(self):
        current = self.gate.change_security_settings(CLIENT_ID, tfa_threshold=Decimal('25'))
        self.assertEqual(current.tfa_threshold, Decimal('25'))

    def test_lowering_without_code_is_refused(self):
        with self.assertRaises(VerificationRequiredError):
            self.gate.change_security_settings(CLIENT_ID, always_2fa=False)
        with self.assertRaises(VerificationRequiredError):
            self.gate.change_security_settings(CLIENT_ID, tfa_threshold=Decimal('1000000'))
        self.assertTrue(self.gate.get_security_settings(CLIENT_ID).always_2fa)

    def test_admin_may_lower(self):
        current = self.gate.change_security_settings(CLIENT_ID, always_2fa=False, admin_id='ops')
        self.assertFalse(current.always_2fa)
        event = AuditEvent.objects.filter(event_type=EventType.SECURITY_SETTINGS_CHANGED).latest('sequence')
        self.assertEqual(event.details['changedBy'], 'ops')
        self.assertEqual(event.details['before']['always2FA'], True)

    def test_every_change_is_audited(self):
        self.assertEqual(AuditEvent.objects.filter(event_type=EventType.SECURITY_SETTINGS_CHANGED).count(), 1)
        self.gate.update_security_settings(CLIENT_ID, always_2fa=True)
        self.assertEqual(AuditEvent.objects.filter(event_type=EventType.SECURITY_SETTINGS_CHANGED).count(), 1)

    def test_threshold_must_be_a_finite_number(self):
        for value in ('NaN', 'Infinity', '-1'):
            with self.assertRaises(ValidationError):
                self.gate.change_security_settings(CLIENT_ID, tfa_threshold=value)
