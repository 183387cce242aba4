import json
from datetime import timedelta
from decimal import Decimal
from unittest.mock import patch

from django.contrib.auth import get_user_model
from django.urls import reverse
from django.utils import timezone

from milestonepay.models import AuditEvent, Authorization, Charge, Dispute, Milestone
from milestonepay.testing import BROWSER_UA, CLIENT_ID, KNOWN_IP, PlatformTestCase


class PlatformViewTestCase(PlatformTestCase):
    def setUp(self) -> None:
        super().setUp()
        patcher = patch('milestonepay.views.get_platform', return_value=self.platform)
        patcher.start()
        self.addCleanup(patcher.stop)

    def post_json(self, url: str, payload: dict, **extra):
        extra.setdefault('REMOTE_ADDR', KNOWN_IP)
        extra.setdefault('HTTP_USER_AGENT', BROWSER_UA)
        return self.client.post(url, data=json.dumps(payload), content_type='application/json', **extra)

    def login_admin(self):
        admin = get_user_model().objects.create_user('ops', password='secret', is_staff=True)
        self.client.force_login(admin)
        return admin


class AuthorizationViewTests(PlatformViewTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.contract = self.make_contract()
        self.url = reverse('milestonepay:authorization-create')

    def _payload(self, **overrides) -> dict:
        payload = {
            'contractId': self.contract.pk,
            'clientId': CLIENT_ID,
            'method': 'card',
            'maxPerMilestone': '2000',
            'totalAuthorized': '5000',
            'paymentMethodRef': 'pm_card_visa',
            'termsVersion': '2024-01',
        }
        payload.update(overrides)
        return payload

    def test_create_authorization(self):
        response = self.post_json(self.url, self._payload())

        self.assertEqual(response.status_code, 201)
        body = response.json()
        self.assertEqual(body['status'], 'active')
        self.assertEqual(Decimal(body['totalCharged']), Decimal('0'))
        self.assertEqual(Decimal(body['remaining']), Decimal('5000'))
        authorization = Authorization.objects.get(authorization_id=body['authorizationId'])
        self.assertEqual(authorization.ip_address, KNOWN_IP)
        self.assertEqual(authorization.user_agent, BROWSER_UA)

    def test_forwarded_address_wins(self):
        response = self.post_json(self.url, self._payload(), HTTP_X_FORWARDED_FOR='198.51.100.4, 10.0.0.1')
        self.assertEqual(response.status_code, 201)
        self.assertEqual(Authorization.objects.get().ip_address, '198.51.100.4')

    def test_invalid_body(self):
        payload = self._payload()
        del payload['termsVersion']
        response = self.post_json(self.url, payload)

        self.assertEqual(response.status_code, 400)
        body = response.json()
        self.assertEqual(body['error'], 'validation_error')
        self.assertIn('termsVersion', body['details']['fields'])

    def test_duplicate_authorization(self):
        self.post_json(self.url, self._payload())
        response = self.post_json(self.url, self._payload())
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()['error'], 'validation_error')

    def test_revoke(self):
        authorization = self.authorize(self.contract)
        url = reverse('milestonepay:authorization-revoke', args=[authorization.authorization_id])

        response = self.post_json(url, {'reason': 'Project paused'})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['status'], 'revoked')
        self.assertIsNotNone(response.json()['revokedAt'])

    def test_revoke_unknown(self):
        url = reverse('milestonepay:authorization-revoke', args=['1b4e28ba-2fa1-11d2-883f-0016d3cca427'])
        response = self.post_json(url, {})
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()['error'], 'not_found')


class ApprovalViewTests(PlatformViewTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.contract = self.make_contract()

    def _approve(self, milestone, **payload):
        payload.setdefault('userId', CLIENT_ID)
        payload.setdefault('deviceId', 'device-1')
        return self.post_json(reverse('milestonepay:milestone-approve', args=[milestone.pk]), payload)

    def test_approve_and_pay(self):
        self.establish_history()
        self.authorize(self.contract)
        milestone = self.make_milestone(self.contract, '1500', status=Milestone.Status.SUBMITTED)
        self.set_threshold(threshold='2000')

        response = self._approve(milestone)

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body['status'], 'succeeded')
        self.assertEqual(body['fees']['netToFreelancer'], '1439.70')
        self.assertIsNotNone(body['disputeDeadline'])

    def test_first_payment_needs_code(self):
        self.authorize(self.contract)
        milestone = self.make_milestone(self.contract, '50', status=Milestone.Status.SUBMITTED)

        response = self._approve(milestone)

        self.assertEqual(response.status_code, 403)
        body = response.json()
        self.assertEqual(body['error'], 'verification_required')
        self.assertEqual(body['details']['reason'], 'First payment requires verification')

    def test_over_cap(self):
        self.establish_history()
        self.authorize(self.contract)
        milestone = self.make_milestone(self.contract, '2500', status=Milestone.Status.SUBMITTED)

        response = self._approve(milestone)

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()['error'], 'cap_exceeded')

    def test_unknown_processor_outcome_is_accepted_for_later(self):
        self.establish_history()
        self.set_threshold(threshold='2000')
        self.authorize(self.contract, ref='timeout_card')
        milestone = self.make_milestone(self.contract, '50', status=Milestone.Status.SUBMITTED)

        response = self._approve(milestone)

        self.assertEqual(response.status_code, 202)
        body = response.json()
        self.assertEqual(body['error'], 'payment_pending')
        charge = Charge.objects.get(milestone=milestone)
        self.assertEqual(body['details']['paymentId'], str(charge.payment_id))

        retried = self._approve(milestone)

        self.assertEqual(retried.status_code, 200)
        self.assertEqual(retried.json()['status'], 'succeeded')
        self.assertEqual(Charge.objects.filter(milestone=milestone).count(), 1)

    def test_processor_decline_hides_reason(self):
        self.establish_history()
        self.authorize(self.contract, ref='decline_card')
        milestone = self.make_milestone(self.contract, '50', status=Milestone.Status.SUBMITTED)

        response = self._approve(milestone)

        self.assertEqual(response.status_code, 502)
        self.assertEqual(response.json(), {
            'error': 'payment_failed',
            'message': 'Payment processing failed.',
            'declineCategory': 'declined',
        })

    @patch('milestonepay.two_factor.get_random_string', return_value='123456')
    def test_batch_approve(self, _):
        self.authorize(self.contract)
        first = self.make_milestone(self.contract, '50', status=Milestone.Status.SUBMITTED)
        second = self.make_milestone(self.contract, '2500', status=Milestone.Status.SUBMITTED)
        self.platform.gate.send_verification_code(CLIENT_ID, first.pk, Decimal('2550'))

        response = self.post_json(reverse('milestonepay:milestone-batch-approve'), {
            'userId': CLIENT_ID, 'milestoneIds': [first.pk, second.pk], 'code': '123456',
        })

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual((body['succeeded'], body['failed']), (1, 1))
        self.assertEqual(body['results'][1]['error'], 'cap_exceeded')
        self.assertIsNone(body['results'][1]['payment'])


@patch('milestonepay.two_factor.get_random_string', return_value='123456')
class VerificationViewTests(PlatformViewTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.milestone = self.make_milestone(self.make_contract(), '50')

    def _send(self):
        return self.post_json(reverse('milestonepay:verification-send'), {
            'userId': CLIENT_ID, 'milestoneId': self.milestone.pk, 'amount': '50'})

    def test_send_verify_and_trust_device(self, _):
        otp_id = self._send().json()['otpId']

        verified = self.post_json(reverse('milestonepay:verification-verify'), {
            'userId': CLIENT_ID, 'milestoneId': self.milestone.pk, 'code': '123456'})
        self.assertEqual(verified.json(), {'valid': True})

        trusted = self.post_json(reverse('milestonepay:device-trust'), {
            'userId': CLIENT_ID, 'deviceId': 'laptop-1', 'otpId': otp_id})
        self.assertEqual(trusted.status_code, 200)
        self.assertEqual(trusted.json()['deviceId'], 'laptop-1')

    def test_trust_requires_verified_code(self, _):
        otp_id = self._send().json()['otpId']
        response = self.post_json(reverse('milestonepay:device-trust'), {
            'userId': CLIENT_ID, 'deviceId': 'laptop-1', 'otpId': otp_id})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()['error'], 'validation_error')

    def test_wrong_code_is_not_an_error_status(self, _):
        self._send()
        response = self.post_json(reverse('milestonepay:verification-verify'), {
            'userId': CLIENT_ID, 'milestoneId': self.milestone.pk, 'code': '999999'})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {'valid': False})

    def test_amount_must_be_positive(self, _):
        response = self.post_json(reverse('milestonepay:verification-send'), {
            'userId': CLIENT_ID, 'milestoneId': self.milestone.pk, 'amount': '0'})
        self.assertEqual(response.status_code, 400)


class SettingsAndFeesViewTests(PlatformViewTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.url = reverse('milestonepay:security-settings', args=[CLIENT_ID])

    def test_security_settings(self):
        self.assertEqual(Decimal(self.client.get(self.url).json()['tfaThreshold']), Decimal('100'))

        response = self.post_json(self.url, {'always2FA': True, 'tfaThreshold': '50'})

        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.json()['always2FA'])
        self.assertEqual(Decimal(self.client.get(self.url).json()['tfaThreshold']), Decimal('50'))
        event = AuditEvent.objects.get(event_type='security_settings_changed')
        self.assertEqual(event.user_id, CLIENT_ID)
        self.assertEqual(event.details['after']['always2FA'], True)

    def test_lowering_settings_needs_a_verified_code(self):
        self.post_json(self.url, {'always2FA': True})

        response = self.post_json(self.url, {'always2FA': False, 'tfaThreshold': '1000000'})

        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()['error'], 'verification_required')
        current = self.client.get(self.url).json()
        self.assertTrue(current['always2FA'])
        self.assertEqual(Decimal(current['tfaThreshold']), Decimal('100'))
        self.assertEqual(AuditEvent.objects.filter(event_type='security_settings_changed').count(), 1)

    def test_unverified_code_does_not_lower_settings(self):
        with patch('milestonepay.two_factor.get_random_string', return_value='123456'):
            otp_id = self.post_json(reverse('milestonepay:verification-send'), {
                'userId': CLIENT_ID, 'milestoneId': self.make_milestone(self.make_contract(), '50').pk,
                'amount': '50'}).json()['otpId']

        response = self.post_json(self.url, {'tfaThreshold': '500', 'otpId': otp_id})

        self.assertEqual(response.status_code, 403)

    @patch('milestonepay.two_factor.get_random_string', return_value='123456')
    def test_verified_code_lowers_settings(self, _):
        milestone = self.make_milestone(self.make_contract(), '50')
        otp_id = self.post_json(reverse('milestonepay:verification-send'), {
            'userId': CLIENT_ID, 'milestoneId': milestone.pk, 'amount': '50'}).json()['otpId']
        self.post_json(reverse('milestonepay:verification-verify'), {
            'userId': CLIENT_ID, 'milestoneId': milestone.pk, 'code': '123456'})

        response = self.post_json(self.url, {'tfaThreshold': '500', 'otpId': otp_id})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(Decimal(response.json()['tfaThreshold']), Decimal('500'))

    def test_admin_lowers_settings(self):
        self.login_admin()

        response = self.post_json(self.url, {'always2FA': False, 'tfaThreshold': '500'})

        self.assertEqual(response.status_code, 200)
        event = AuditEvent.objects.get(event_type='security_settings_changed')
        self.assertEqual(event.details['changedBy'], 'ops')

    def test_fee_quote(self):
        response = self.client.get(reverse('milestonepay:fee-quote'), {'amount': '1500', 'method': 'card'})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['processorFee'], '52.80')

        unknown = self.client.get(reverse('milestonepay:fee-quote'), {'amount': '1500', 'method': 'cash'})
        self.assertEqual(unknown.status_code, 400)


class DisputeViewTests(PlatformViewTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.establish_history()
        self.set_threshold(threshold='2000')
        contract = self.make_contract()
        self.authorize(contract)
        milestone = self.make_milestone(contract, '1500')
        self.charge = self.platform.executor.execute_charge(milestone.pk, context=self.known_context())

    def _open(self):
        return self.post_json(reverse('milestonepay:dispute-open'), {
            'paymentId': str(self.charge.payment_id), 'clientId': CLIENT_ID, 'reason': 'Incomplete work'})

    def test_open_dispute(self):
        response = self._open()
        self.assertEqual(response.status_code, 201)
        self.assertTrue(response.json()['payoutFrozen'])
        self.assertEqual(response.json()['status'], 'open')

    def test_window_closed(self):
        Charge.objects.filter(pk=self.charge.pk).update(settled_at=timezone.now() - timedelta(hours=49))
        response = self._open()
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()['error'], 'dispute_window_closed')

    def test_admin_endpoints_require_staff(self):
        dispute_id = self._open().json()['disputeId']
        url = reverse('milestonepay:dispute-resolve', args=[dispute_id])

        response = self.post_json(url, {'resolution': 'Refund', 'refundAmount': '750'})

        self.assertIn(response.status_code, (401, 403))
        self.assertEqual(Dispute.objects.get().status, Dispute.Status.OPEN)

    def test_admin_resolves_with_refund(self):
        dispute_id = self._open().json()['disputeId']
        self.login_admin()

        investigating = self.post_json(reverse('milestonepay:dispute-investigate', args=[dispute_id]), {})
        self.assertEqual(investigating.json()['status'], 'investigating')

        response = self.post_json(reverse('milestonepay:dispute-resolve', args=[dispute_id]),
                                  {'resolution': 'Refund half', 'refundAmount': '750'})

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body['status'], 'resolved')
        self.assertEqual(Decimal(body['refundAmount']), Decimal('750'))
        self.assertFalse(body['payoutFrozen'])
        self.assertEqual(Dispute.objects.get().resolved_by, 'ops')

        again = self.post_json(reverse('milestonepay:dispute-resolve', args=[dispute_id]),
                               {'resolution': 'Refund again', 'refundAmount': '10'})
        self.assertEqual(again.status_code, 409)

    def test_admin_closes_dispute(self):
        dispute_id = self._open().json()['disputeId']
        self.login_admin()

        response = self.post_json(reverse('milestonepay:dispute-close', args=[dispute_id]),
                                  {'notes': 'Delivered after all'})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['status'], 'closed')
        self.assertFalse(response.json()['payoutFrozen'])


class AdminReportViewTests(PlatformViewTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.login_admin()
        self.contract = self.make_contract()
        self.authorization = self.authorize(self.contract)

    def test_compliance_report(self):
        now = timezone.now()
        response = self.client.get(reverse('milestonepay:compliance-report'), {
            'periodStart': (now - timedelta(days=1)).isoformat(),
            'periodEnd': (now + timedelta(minutes=1)).isoformat(),
        })

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body['authorizations']['created'], 1)
        self.assertTrue(body['auditIntegrity']['valid'])
        self.assertEqual(body['generatedBy'], 'ops')

    def test_compliance_report_needs_valid_period(self):
        response = self.client.get(reverse('milestonepay:compliance-report'), {'periodStart': 'yesterday'})
        self.assertEqual(response.status_code, 400)

    def test_audit_trail_and_chain(self):
        self.platform.ledger.revoke_authorization(self.authorization.authorization_id, 'Done')
        url = reverse('milestonepay:audit-trail', args=[str(self.contract.pk)])

        everything = self.client.get(url).json()
        self.assertEqual([e['eventType'] for e in everything['events']],
                         ['authorization_created', 'authorization_revoked'])
        filtered = self.client.get(url, {'eventTypes': 'authorization_revoked'}).json()
        self.assertEqual(len(filtered['events']), 1)

        chain = self.client.get(reverse('milestonepay:audit-verify')).json()
        self.assertTrue(chain['valid'])
        self.assertEqual(chain['checked'], 2)

    def test_monitoring_stats(self):
        response = self.client.get(reverse('milestonepay:monitoring-stats'))
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['activeAuthorizations'], 1)


class CoreViewTests(PlatformTestCase):
    def test_health(self):
        response = self.client.get('/health')
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {'status': 'ok'})

    def test_home_lists_endpoints(self):
        response = self.client.get('/')
        self.assertEqual(response.status_code, 200)
        self.assertIn('/api/milestones/&lt;id&gt;/approve', response.content.decode())
