"""
Shared fixtures for the milestonepay test modules.
"""
import json
from datetime import timedelta
from decimal import Decimal
from typing import Optional

import httpx
from django.test import TestCase, TransactionTestCase, override_settings
from django.utils import timezone

from milestonepay.ledger import AuthorizationCaps, ConsentMetadata
from milestonepay.models import Authorization, Charge, Contract, Milestone
from milestonepay.rails import RailFactory
from milestonepay.services import build_platform
from milestonepay.two_factor import ChargeContext

CLIENT_ID = 'client-1'
FREELANCER_ID = 'freelancer-1'
KNOWN_IP = '203.0.113.10'
BROWSER_UA = 'Mozilla/5.0 (Macintosh; Intel Mac OS X 14_0) AppleWebKit/605.1.15'


TEST_SETTINGS = dict(
    PASSWORD_HASHERS=['django.contrib.auth.hashers.MD5PasswordHasher'],
    EMAIL_BACKEND='django.core.mail.backends.locmem.EmailBackend',
    MILESTONEPAY_SECURITY_ALERT_EMAILS=['security@example.com'],
    MILESTONEPAY_ALERT_RULES={},
    MILESTONEPAY_AUTO_REMEDIATION=True,
    APP_ENV='local',
)


class PlatformFixtures:
    def setUp(self) -> None:
        super().setUp()
        self.platform = build_platform(rail_factory=RailFactory(backend='sandbox'))

    def make_contract(self, client_id: str = CLIENT_ID, title: str = 'Website redesign') -> Contract:
        return Contract.objects.create(
            title=title,
            client_id=client_id,
            client_email=f'{client_id}@example.com',
            freelancer_id=FREELANCER_ID,
            freelancer_email=f'{FREELANCER_ID}@example.com',
        )

    def make_milestone(self, contract: Contract, amount, status: str = Milestone.Status.APPROVED,
                       title: str = 'Milestone', submitted_at=None) -> Milestone:
        return Milestone.objects.create(
            contract=contract,
            title=title,
            amount=Decimal(str(amount)),
            status=status,
            submitted_at=submitted_at,
        )

    def authorize(self, contract: Contract, max_per_milestone='2000', total_authorized='5000',
                  method: str = 'card', ref: str = 'pm_card_visa', expires_at=None) -> Authorization:
        return self.platform.ledger.create_authorization(
            contract.pk,
            contract.client_id,
            method,
            AuthorizationCaps(Decimal(max_per_milestone), Decimal(total_authorized)),
            ConsentMetadata(payment_method_ref=ref, terms_version='2024-01',
                            ip_address=KNOWN_IP, user_agent=BROWSER_UA, expires_at=expires_at),
        )

    def known_context(self, device_id: Optional[str] = 'device-1') -> ChargeContext:
        return ChargeContext(ip_address=KNOWN_IP, user_agent=BROWSER_UA, device_id=device_id)

    def establish_history(self, client_id: str = CLIENT_ID, amount='1000') -> Charge:
        """A settled payment on another contract, plus a sighting of the usual device."""
        contract = self.make_contract(client_id, title='Earlier work')
        authorization = self.authorize(contract, max_per_milestone=amount, total_authorized=amount)
        milestone = self.make_milestone(contract, amount, status=Milestone.Status.PAID)
        settled_at = timezone.now() - timedelta(days=5)
        charge = Charge.objects.create(
            contract=contract,
            milestone=milestone,
            authorization=authorization,
            amount=Decimal(amount),
            method=authorization.method,
            status=Charge.Status.SUCCEEDED,
            external_charge_id='sbx_ch_history',
            settled_amount=Decimal(amount),
            created_at=settled_at,
            settled_at=settled_at,
        )
        self.platform.gate.record_sighting(client_id, self.known_context())
        return charge

    def set_threshold(self, client_id: str = CLIENT_ID, threshold='2000') -> None:
        self.platform.gate.update_security_settings(client_id, tfa_threshold=Decimal(threshold))


@override_settings(**TEST_SETTINGS)
class PlatformTestCase(PlatformFixtures, TestCase):
    pass


@override_settings(**TEST_SETTINGS)
class PlatformTransactionTestCase(PlatformFixtures, TransactionTestCase):
    """For tests that need commits visible across threads."""


class FakeProcessor:
    """
    PSP stand-in for ``httpx.MockTransport``. Charges and refunds are stored
    under their Idempotency-Key, so a repeated key returns the first result.
    Set ``drop_next_reply`` to capture a charge and then time out.
    """

    def __init__(self):
        self.captures = {}
        self.refunds = {}
        self.drop_next_reply = False

    def __call__(self, request: httpx.Request) -> httpx.Response:
        key = request.headers['Idempotency-Key']
        body = json.loads(request.content)
        if request.url.path == '/v1/refunds':
            refund = self.refunds.setdefault(key, {'id': f're_{len(self.refunds) + 1}', 'amount': body['amount']})
            return httpx.Response(200, json=refund)

        capture = self.captures.setdefault(key, {
            'id': f'ch_{len(self.captures) + 1}', 'status': 'succeeded', 'amount': body['amount']})
        if self.drop_next_reply:
            self.drop_next_reply = False
            raise httpx.ReadTimeout('reply lost', request=request)
        return httpx.Response(200, json=capture)

    def rails(self) -> RailFactory:
        return RailFactory(backend='live', config={'card': {
            'base_url': 'https://psp.test',
            'api_key': 'sk_test',
            'transport': httpx.MockTransport(self),
        }})
