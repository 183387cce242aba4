import json
from decimal import Decimal
from unittest.mock import MagicMock, patch

import httpx
from django.test import SimpleTestCase, override_settings
from web3.exceptions import TransactionNotFound

from milestonepay.rails import (
    CardRail,
    DeclineCategory,
    PaymentRail,
    RailFactory,
    SandboxRail,
    StablecoinRail,
)
from milestonepay.rails.card import to_cents
from milestonepay.rails.stablecoin import StablecoinPendingError

PAYER = '0x' + 'ab' * 20
TREASURY = '0x' + 'cd' * 20


def card_rail(handler, **config) -> CardRail:
    options = {
        'method': 'card',
        'base_url': 'https://psp.test',
        'api_key': 'sk_test',
        'transport': httpx.MockTransport(handler),
    }
    options.update(config)
    return CardRail(options)


class CardRailTests(SimpleTestCase):
    def test_successful_charge(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen['path'] = request.url.path
            seen['key'] = request.headers['Idempotency-Key']
            seen['auth'] = request.headers['Authorization']
            seen['body'] = json.loads(request.content)
            return httpx.Response(200, json={'id': 'ch_123', 'status': 'succeeded', 'amount': 150000})

        result = card_rail(handler).charge(Decimal('1500.00'), 'pm_card_visa', 'pay-1', {'milestoneId': 3})

        self.assertTrue(result.success)
        self.assertEqual(result.charge_id, 'ch_123')
        self.assertEqual(result.settled_amount, Decimal('1500.00'))
        self.assertEqual(seen['path'], '/v1/charges')
        self.assertEqual(seen['key'], 'pay-1')
        self.assertEqual(seen['auth'], 'Bearer sk_test')
        self.assertEqual(seen['body']['amount'], 150000)
        self.assertEqual(seen['body']['payment_method'], 'pm_card_visa')

    def test_decline_codes_map_to_categories(self):
        cases = {
            'card_declined': DeclineCategory.DECLINED,
            'expired_card': DeclineCategory.EXPIRED_METHOD,
            'mandate_invalid': DeclineCategory.INSUFFICIENT_AUTHORIZATION,
            'something_new': DeclineCategory.DECLINED,
        }
        for code, category in cases.items():
            with self.subTest(code=code):
                rail = card_rail(lambda request, code=code: httpx.Response(
                    402, json={'error': {'code': code, 'message': f'{code} happened'}}))
                result = rail.charge(Decimal('10'), 'pm_card_visa', 'pay-2')
                self.assertFalse(result.success)
                self.assertEqual(result.decline_category, category)
                self.assertEqual(result.error_reason, f'{code} happened')

    def test_client_error_without_body_is_processor_error(self):
        result = card_rail(lambda request: httpx.Response(400, text='bad')).charge(
            Decimal('10'), 'pm_card_visa', 'pay-3')
        self.assertFalse(result.success)
        self.assertEqual(result.decline_category, DeclineCategory.PROCESSOR_ERROR)

    def test_server_error_leaves_outcome_unknown(self):
        result = card_rail(lambda request: httpx.Response(503)).charge(Decimal('10'), 'pm_card_visa', 'pay-4')
        self.assertFalse(result.success)
        self.assertTrue(result.outcome_unknown)
        self.assertEqual(result.decline_category, DeclineCategory.PROCESSOR_ERROR)
        self.assertIn('503', result.error_reason)

    def test_read_timeout_leaves_outcome_unknown(self):
        def handler(request):
            raise httpx.ReadTimeout('slow', request=request)

        result = card_rail(handler).charge(Decimal('10'), 'pm_card_visa', 'pay-5')
        self.assertFalse(result.success)
        self.assertTrue(result.outcome_unknown)
        self.assertEqual(result.error_reason, 'Payment processor timed out')

    def test_connect_error_is_a_definite_failure(self):
        def handler(request):
            raise httpx.ConnectError('refused', request=request)

        result = card_rail(handler).charge(Decimal('10'), 'pm_card_visa', 'pay-5')
        self.assertFalse(result.success)
        self.assertFalse(result.outcome_unknown)
        self.assertEqual(result.decline_category, DeclineCategory.PROCESSOR_ERROR)

    def test_unreadable_success_reply_leaves_outcome_unknown(self):
        rail = card_rail(lambda request: httpx.Response(200, text='<html>gateway</html>'))
        result = rail.charge(Decimal('10'), 'pm_card_visa', 'pay-6')
        self.assertFalse(result.success)
        self.assertTrue(result.outcome_unknown)

    def test_unsettled_status_leaves_outcome_unknown(self):
        rail = card_rail(lambda request: httpx.Response(200, json={'id': 'ch_9', 'status': 'pending'}))
        result = rail.charge(Decimal('10'), 'pm_card_visa', 'pay-6')
        self.assertFalse(result.success)
        self.assertTrue(result.outcome_unknown)
        self.assertEqual(result.charge_id, 'ch_9')

    def test_failed_status_is_a_decline(self):
        rail = card_rail(lambda request: httpx.Response(200, json={
            'id': 'ch_9', 'status': 'failed', 'failure_code': 'expired_card'}))
        result = rail.charge(Decimal('10'), 'pm_card_visa', 'pay-6')
        self.assertFalse(result.success)
        self.assertFalse(result.outcome_unknown)
        self.assertEqual(result.decline_category, DeclineCategory.EXPIRED_METHOD)

    def test_replay_after_timeout_returns_the_captured_charge(self):
        captured = {}

        def handler(request):
            key = request.headers['Idempotency-Key']
            first = key not in captured
            captured.setdefault(key, f'ch_{len(captured) + 1}')
            if first:
                raise httpx.ReadTimeout('reply lost', request=request)
            return httpx.Response(200, json={'id': captured[key], 'status': 'succeeded', 'amount': 1000})

        rail = card_rail(handler)
        self.assertTrue(rail.charge(Decimal('10'), 'pm_card_visa', 'milestone-1-attempt-1').outcome_unknown)

        result = rail.check_charge(Decimal('10'), 'pm_card_visa', 'milestone-1-attempt-1')

        self.assertTrue(result.success)
        self.assertEqual(result.charge_id, 'ch_1')
        self.assertEqual(len(captured), 1)

    @override_settings(MILESTONEPAY_PSP_BASE_URL='')
    def test_missing_configuration(self):
        rail = CardRail({'method': 'card'})
        self.assertFalse(rail.charge(Decimal('10'), 'pm_card_visa', 'pay-7').success)
        self.assertFalse(rail.refund('ch_1', Decimal('5'), 'pm_card_visa', 'refund-1').success)

    def test_refund(self):
        def handler(request):
            body = json.loads(request.content)
            self.assertEqual(request.url.path, '/v1/refunds')
            self.assertEqual(request.headers['Idempotency-Key'], 'refund-1')
            self.assertEqual(body, {'charge': 'ch_1', 'amount': 75000})
            return httpx.Response(200, json={'id': 're_1', 'amount': 75000})

        result = card_rail(handler).refund('ch_1', Decimal('750'), 'pm_card_visa', 'refund-1')
        self.assertTrue(result.success)
        self.assertEqual(result.refund_id, 're_1')
        self.assertEqual(result.amount, Decimal('750.00'))

    def test_refund_rejected(self):
        rail = card_rail(lambda request: httpx.Response(
            400, json={'error': {'message': 'Charge already refunded'}}))
        result = rail.refund('ch_1', Decimal('750'), 'pm_card_visa', 'refund-1')
        self.assertFalse(result.success)
        self.assertEqual(result.error_reason, 'Charge already refunded')

    def test_reference_format_and_cents(self):
        rail = card_rail(lambda request: httpx.Response(200))
        self.assertTrue(rail.validate_reference('pm_card_visa'))
        self.assertFalse(rail.validate_reference('pm card'))
        self.assertFalse(rail.validate_reference(''))
        self.assertEqual(to_cents(Decimal('10.005')), 1001)


class SandboxRailTests(SimpleTestCase):
    def setUp(self) -> None:
        self.rail = SandboxRail({'method': 'card'})

    def test_charge_is_idempotent(self):
        first = self.rail.charge(Decimal('20'), 'pm_card_visa', 'key-1')
        replay = self.rail.charge(Decimal('20'), 'pm_card_visa', 'key-1')
        self.assertEqual(first.charge_id, replay.charge_id)
        self.assertTrue(replay.details['replayed'])

    def test_failing_prefixes(self):
        self.assertEqual(self.rail.charge(Decimal('1'), 'expired_pm', 'k').decline_category,
                         DeclineCategory.EXPIRED_METHOD)
        self.assertEqual(self.rail.charge(Decimal('1'), 'error_pm', 'k').decline_category,
                         DeclineCategory.PROCESSOR_ERROR)

    def test_refunds_cannot_exceed_charge(self):
        charge = self.rail.charge(Decimal('20'), 'pm_card_visa', 'key-2')
        self.assertTrue(self.rail.refund(charge.charge_id, Decimal('15'), 'pm_card_visa', 'r-1').success)
        self.assertFalse(self.rail.refund(charge.charge_id, Decimal('6'), 'pm_card_visa', 'r-2').success)
        self.assertFalse(self.rail.refund('sbx_ch_unknown', Decimal('1'), 'pm_card_visa', 'r-3').success)

    def test_refund_key_is_replayed_not_repeated(self):
        charge = self.rail.charge(Decimal('20'), 'pm_card_visa', 'key-3')
        first = self.rail.refund(charge.charge_id, Decimal('5'), 'pm_card_visa', 'r-1')
        replay = self.rail.refund(charge.charge_id, Decimal('5'), 'pm_card_visa', 'r-1')
        other = self.rail.refund(charge.charge_id, Decimal('5'), 'pm_card_visa', 'r-2')
        self.assertEqual(first.refund_id, replay.refund_id)
        self.assertNotEqual(first.refund_id, other.refund_id)
        self.assertEqual(self.rail.charges[charge.charge_id]['refunded'], Decimal('10'))

    def test_timeout_prefix_captures_then_replays(self):
        lost = self.rail.charge(Decimal('20'), 'timeout_pm', 'key-4')
        self.assertTrue(lost.outcome_unknown)
        replay = self.rail.check_charge(Decimal('20'), 'timeout_pm', 'key-4')
        self.assertTrue(replay.success)
        self.assertEqual(len(self.rail.charges), 1)


@override_settings(
    MILESTONEPAY_STABLECOIN_RPC_URL='',
    MILESTONEPAY_STABLECOIN_SIGNER_PRIVATE_KEY='',
    MILESTONEPAY_STABLECOIN_TREASURY_ADDRESS='',
)
class StablecoinRailTests(SimpleTestCase):
    def configured(self) -> StablecoinRail:
        return StablecoinRail({
            'rpc_url': 'http://localhost:8545',
            'signer_private_key': '0x' + '11' * 32,
            'token_contract': '0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913',
            'treasury_address': TREASURY,
        })

    def test_missing_configuration(self):
        result = StablecoinRail({}).charge(Decimal('10'), PAYER, 'pay-1')
        self.assertFalse(result.success)
        self.assertEqual(result.error_reason, 'RPC URL not configured')
        self.assertEqual(result.decline_category, DeclineCategory.PROCESSOR_ERROR)

    def test_reference_must_be_an_address(self):
        rail = self.configured()
        self.assertTrue(rail.validate_reference(PAYER))
        self.assertFalse(rail.validate_reference('not-an-address'))
        result = rail.charge(Decimal('10'), 'not-an-address', 'pay-2')
        self.assertEqual(result.decline_category, DeclineCategory.INSUFFICIENT_AUTHORIZATION)

    def test_base_units(self):
        rail = self.configured()
        self.assertEqual(rail.to_base_units(Decimal('12.5')), 12500000)
        self.assertEqual(rail.from_base_units(12500000), Decimal('12.50'))

    def _web3(self) -> MagicMock:
        web3 = MagicMock()
        web3.eth.account.from_key.return_value.address = TREASURY
        return web3

    def _token(self, allowance: int, balance: int) -> MagicMock:
        token = MagicMock()
        token.functions.allowance.return_value.call.return_value = allowance
        token.functions.balanceOf.return_value.call.return_value = balance
        return token

    def test_low_allowance_is_insufficient_authorization(self):
        rail = self.configured()
        with patch.object(StablecoinRail, '_connect', return_value=self._web3()), \
                patch.object(StablecoinRail, '_token', return_value=self._token(5_000_000, 50_000_000)):
            result = rail.charge(Decimal('10'), PAYER, 'pay-3')
        self.assertFalse(result.success)
        self.assertEqual(result.decline_category, DeclineCategory.INSUFFICIENT_AUTHORIZATION)

    def test_low_balance_is_declined(self):
        rail = self.configured()
        with patch.object(StablecoinRail, '_connect', return_value=self._web3()), \
                patch.object(StablecoinRail, '_token', return_value=self._token(50_000_000, 1)):
            result = rail.charge(Decimal('10'), PAYER, 'pay-4')
        self.assertEqual(result.decline_category, DeclineCategory.DECLINED)

    def test_successful_transfer(self):
        rail = self.configured()
        with patch.object(StablecoinRail, '_connect', return_value=self._web3()), \
                patch.object(StablecoinRail, '_token', return_value=self._token(50_000_000, 50_000_000)), \
                patch.object(StablecoinRail, '_submit', return_value='0xfeed') as submit:
            result = rail.charge(Decimal('10'), PAYER, 'pay-5')
        self.assertTrue(result.success)
        self.assertEqual(result.charge_id, '0xfeed')
        self.assertEqual(result.settled_amount, Decimal('10.00'))
        submit.assert_called_once()

    def test_broadcast_without_receipt_leaves_outcome_unknown(self):
        rail = self.configured()
        with patch.object(StablecoinRail, '_connect', return_value=self._web3()), \
                patch.object(StablecoinRail, '_token', return_value=self._token(50_000_000, 50_000_000)), \
                patch.object(StablecoinRail, '_submit', side_effect=StablecoinPendingError('0xbeef')):
            result = rail.charge(Decimal('10'), PAYER, 'pay-6')
        self.assertFalse(result.success)
        self.assertTrue(result.outcome_unknown)
        self.assertEqual(result.charge_id, '0xbeef')

    def test_check_charge_reads_the_receipt(self):
        rail = self.configured()
        web3 = self._web3()
        web3.eth.get_transaction_receipt.return_value = MagicMock(status=1)
        with patch.object(StablecoinRail, '_connect', return_value=web3):
            settled = rail.check_charge(Decimal('10'), PAYER, 'pay-6', charge_id='0xbeef')
            web3.eth.get_transaction_receipt.return_value = MagicMock(status=0)
            reverted = rail.check_charge(Decimal('10'), PAYER, 'pay-6', charge_id='0xbeef')
            web3.eth.get_transaction_receipt.side_effect = TransactionNotFound('not mined')
            pending = rail.check_charge(Decimal('10'), PAYER, 'pay-6', charge_id='0xbeef')

        self.assertTrue(settled.success)
        self.assertEqual(settled.settled_amount, Decimal('10.00'))
        self.assertFalse(reverted.success)
        self.assertFalse(reverted.outcome_unknown)
        self.assertEqual(reverted.decline_category, DeclineCategory.DECLINED)
        self.assertTrue(pending.outcome_unknown)

    def test_check_charge_never_resends_a_transfer(self):
        rail = self.configured()
        with patch.object(StablecoinRail, 'charge') as charge:
            result = rail.check_charge(Decimal('10'), PAYER, 'pay-7')
        self.assertTrue(result.outcome_unknown)
        charge.assert_not_called()


class RailFactoryTests(SimpleTestCase):
    def test_create_known_methods(self):
        self.assertIsInstance(RailFactory.create('card', {'base_url': 'https://psp.test'}), CardRail)
        self.assertIsInstance(RailFactory.create(' Stablecoin '), StablecoinRail)
        self.assertEqual(RailFactory.create('bank_transfer').rail_name, 'bank_transfer')

    def test_unknown_method(self):
        with self.assertRaises(ValueError):
            RailFactory.create('cheque')

    def test_register(self):
        class WireRail(SandboxRail):
            @property
            def rail_name(self) -> str:
                return 'wire'

        RailFactory.register('wire', WireRail)
        self.addCleanup(RailFactory._rails.pop, 'wire')
        self.assertIn('wire', RailFactory.get_supported_methods())
        self.assertIsInstance(RailFactory.create('wire'), PaymentRail)

    def test_sandbox_backend_serves_every_method(self):
        factory = RailFactory(backend='sandbox')
        rail = factory.rail_for('card')
        self.assertIsInstance(rail, SandboxRail)
        self.assertEqual(rail.method, 'card')
        self.assertIs(factory.rail_for('card'), rail)
        self.assertIsNot(factory.rail_for('stablecoin'), rail)

    def test_live_backend_uses_method_rail(self):
        factory = RailFactory(backend='live', config={'card': {'base_url': 'https://psp.test'}})
        rail = factory.rail_for('card')
        self.assertIsInstance(rail, CardRail)
        self.assertEqual(rail.base_url, 'https://psp.test')
