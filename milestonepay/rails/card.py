"""
Card and bank-transfer rail backed by a PSP gateway over HTTPS.
"""
import re
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Optional

import httpx
from loguru import logger

from .base import ChargeResult, DeclineCategory, PaymentRail, RefundResult

REFERENCE_PATTERN = re.compile(r'^[A-Za-z0-9_\-]{3,128}$')

DECLINE_CODES = {
    'card_declined': DeclineCategory.DECLINED,
    'insufficient_funds': DeclineCategory.DECLINED,
    'do_not_honor': DeclineCategory.DECLINED,
    'fraudulent': DeclineCategory.DECLINED,
    'expired_card': DeclineCategory.EXPIRED_METHOD,
    'payment_method_expired': DeclineCategory.EXPIRED_METHOD,
    'account_closed': DeclineCategory.EXPIRED_METHOD,
    'authentication_required': DeclineCategory.INSUFFICIENT_AUTHORIZATION,
    'mandate_invalid': DeclineCategory.INSUFFICIENT_AUTHORIZATION,
    'authorization_revoked': DeclineCategory.INSUFFICIENT_AUTHORIZATION,
}


def to_cents(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal('1'), rounding=ROUND_HALF_UP))


def from_cents(cents: int) -> Decimal:
    return (Decimal(int(cents)) / 100).quantize(Decimal('0.01'))


class CardRail(PaymentRail):
    """Handler for card and ACH payments through the PSP gateway."""

    def __init__(self, config: Dict[str, Any]):
        super().__init__(config)
        from django.conf import settings
        self.method = config.get('method', 'card')
        self.base_url = config.get('base_url') or getattr(
            settings, 'MILESTONEPAY_PSP_BASE_URL', '')
        self.api_key = config.get('api_key') or getattr(
            settings, 'MILESTONEPAY_PSP_API_KEY', '')
        self.timeout = config.get('timeout_seconds') or getattr(
            settings, 'MILESTONEPAY_PSP_TIMEOUT_SECONDS', 15.0)
        self.currency = config.get('currency', 'usd')
        # Injected by tests (httpx.MockTransport).
        self.transport = config.get('transport')

    @property
    def rail_name(self) -> str:
        return self.method

    def validate_reference(self, authorization_ref: str) -> bool:
        return bool(authorization_ref) and bool(REFERENCE_PATTERN.match(authorization_ref))

    def _client(self) -> httpx.Client:
        return httpx.Client(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self.transport,
            headers={'Authorization': f'Bearer {self.api_key}'},
        )

    @staticmethod
    def _error_body(response: httpx.Response) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            return {}
        error = body.get('error') if isinstance(body, dict) else None
        return error if isinstance(error, dict) else {}

    def charge(
        self,
        amount: Decimal,
        authorization_ref: str,
        idempotency_key: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ChargeResult:
        if not self.base_url:
            return ChargeResult(
                success=False,
                error_reason='PSP base URL not configured',
                decline_category=DeclineCategory.PROCESSOR_ERROR,
            )

        payload = {
            'amount': to_cents(amount),
            'currency': self.currency,
            'payment_method': authorization_ref,
            'payment_method_type': self.method,
            'metadata': metadata or {},
        }

        try:
            with self._client() as client:
                response = client.post(
                    '/v1/charges',
                    json=payload,
                    headers={'Idempotency-Key': idempotency_key},
                )
        except (httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout) as exc:
            # Never left this process, so the attempt definitely failed.
            logger.error('{} rail could not reach the processor: {}', self.method, exc)
            return ChargeResult(
                success=False,
                error_reason=f'Payment processor unreachable: {exc}',
                decline_category=DeclineCategory.PROCESSOR_ERROR,
            )
        except httpx.TimeoutException as exc:
            logger.error('{} rail charge {} timed out: {}', self.method, idempotency_key, exc)
            return self._unknown('Payment processor timed out')
        except httpx.HTTPError as exc:
            logger.error('{} rail charge {} lost its connection: {}', self.method, idempotency_key, exc)
            return self._unknown(f'Payment processor connection lost: {exc}')

        if 400 <= response.status_code < 500:
            error = self._error_body(response)
            code = error.get('code', '')
            fallback = (DeclineCategory.DECLINED if response.status_code == 402
                        else DeclineCategory.PROCESSOR_ERROR)
            category = DECLINE_CODES.get(code, fallback)
            logger.info('{} rail declined charge: status={} code={}',
                        self.method, response.status_code, code)
            return ChargeResult(
                success=False,
                error_reason=error.get('message') or f'Charge declined ({code or response.status_code})',
                decline_category=category,
                details={'status_code': response.status_code, 'code': code},
            )

        if response.status_code >= 500:
            logger.error('{} rail processor error: status={}', self.method, response.status_code)
            return self._unknown(f'Payment processor error ({response.status_code})')

        try:
            body = response.json()
        except ValueError:
            body = None
        if not isinstance(body, dict):
            logger.error('{} rail got an unreadable reply for {}', self.method, idempotency_key)
            return self._unknown('Unreadable payment processor reply')

        status = body.get('status')
        if status == 'succeeded':
            return ChargeResult(
                success=True,
                charge_id=body['id'],
                settled_amount=from_cents(body.get('amount', to_cents(amount))),
                details={'processor_status': status},
            )
        if status == 'failed':
            code = body.get('failure_code', '')
            return ChargeResult(
                success=False,
                error_reason=body.get('failure_message') or f'Charge declined ({code or status})',
                decline_category=DECLINE_CODES.get(code, DeclineCategory.DECLINED),
                details={'charge_id': body.get('id'), 'code': code},
            )
        return self._unknown(f'Charge not settled (status {status})', charge_id=body.get('id'))

    @staticmethod
    def _unknown(reason: str, charge_id: Optional[str] = None) -> ChargeResult:
        return ChargeResult(
            success=False,
            charge_id=charge_id,
            error_reason=reason,
            decline_category=DeclineCategory.PROCESSOR_ERROR,
            outcome_unknown=True,
        )

    def refund(
        self,
        charge_id: str,
        amount: Decimal,
        authorization_ref: str,
        idempotency_key: str,
    ) -> RefundResult:
        if not self.base_url:
            return RefundResult(success=False, error_reason='PSP base URL not configured')

        try:
            with self._client() as client:
                response = client.post(
                    '/v1/refunds',
                    json={'charge': charge_id, 'amount': to_cents(amount)},
                    headers={'Idempotency-Key': idempotency_key},
                )
        except httpx.HTTPError as exc:
            logger.error('{} rail refund failed for {}: {}', self.method, charge_id, exc)
            return RefundResult(success=False, error_reason=f'Refund request failed: {exc}')

        if response.status_code >= 400:
            error = self._error_body(response)
            return RefundResult(
                success=False,
                error_reason=error.get('message') or f'Refund rejected ({response.status_code})',
            )

        body = response.json()
        return RefundResult(
            success=True,
            refund_id=body.get('id'),
            amount=from_cents(body.get('amount', to_cents(amount))),
        )
