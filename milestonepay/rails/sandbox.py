"""
In-memory rail for local development and tests.
"""
import threading
import uuid
from decimal import Decimal
from typing import Any, Dict, Optional

from loguru import logger

from .base import ChargeResult, DeclineCategory, PaymentRail, RefundResult

FAILING_PREFIXES = {
    'decline_': DeclineCategory.DECLINED,
    'expired_': DeclineCategory.EXPIRED_METHOD,
    'error_': DeclineCategory.PROCESSOR_ERROR,
}

# Captures the charge but loses the first reply, like a processor timeout.
TIMEOUT_PREFIX = 'timeout_'


class SandboxRail(PaymentRail):
    """
    Settles every charge immediately unless the payment method reference
    starts with one of ``FAILING_PREFIXES``. References starting with
    ``TIMEOUT_PREFIX`` are captured but the first call reports an unknown
    outcome; a replay with the same key returns the capture.
    """

    def __init__(self, config: Dict[str, Any]):
        super().__init__(config)
        self.method = config.get('method', 'sandbox')
        self._lock = threading.Lock()
        self.charges: Dict[str, Dict[str, Any]] = {}
        self.idempotency: Dict[str, str] = {}
        self.refunds: Dict[str, RefundResult] = {}

    @property
    def rail_name(self) -> str:
        return 'sandbox'

    def validate_reference(self, authorization_ref: str) -> bool:
        return bool(authorization_ref and authorization_ref.strip())

    def charge(
        self,
        amount: Decimal,
        authorization_ref: str,
        idempotency_key: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ChargeResult:
        for prefix, category in FAILING_PREFIXES.items():
            if authorization_ref.startswith(prefix):
                logger.info('sandbox rail failing charge for {} ({})', authorization_ref, category)
                return ChargeResult(
                    success=False,
                    error_reason=f'Sandbox {category}',
                    decline_category=category,
                )

        with self._lock:
            existing = self.idempotency.get(idempotency_key)
            if existing is not None:
                record = self.charges[existing]
                return ChargeResult(success=True, charge_id=existing, settled_amount=record['amount'],
                                    details={'replayed': True})

            charge_id = f'sbx_ch_{uuid.uuid4().hex[:24]}'
            self.charges[charge_id] = {
                'amount': Decimal(amount),
                'refunded': Decimal('0'),
                'reference': authorization_ref,
                'method': self.method,
                'metadata': metadata or {},
            }
            self.idempotency[idempotency_key] = charge_id

        if authorization_ref.startswith(TIMEOUT_PREFIX):
            logger.info('sandbox rail dropping reply for {}', idempotency_key)
            return ChargeResult(
                success=False,
                error_reason='Sandbox timeout',
                decline_category=DeclineCategory.PROCESSOR_ERROR,
                outcome_unknown=True,
            )

        return ChargeResult(success=True, charge_id=charge_id, settled_amount=Decimal(amount))

    def refund(
        self,
        charge_id: str,
        amount: Decimal,
        authorization_ref: str,
        idempotency_key: str,
    ) -> RefundResult:
        with self._lock:
            replayed = self.refunds.get(idempotency_key)
            if replayed is not None:
                return replayed
            record = self.charges.get(charge_id)
            if record is None:
                return RefundResult(success=False, error_reason=f'Unknown charge {charge_id}')
            if record['refunded'] + Decimal(amount) > record['amount']:
                return RefundResult(success=False, error_reason='Refund exceeds charged amount')
            record['refunded'] += Decimal(amount)
            result = RefundResult(success=True, refund_id=f'sbx_re_{uuid.uuid4().hex[:24]}',
                                  amount=Decimal(amount))
            self.refunds[idempotency_key] = result

        return result
