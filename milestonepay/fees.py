"""
Fee schedule per payment method.

Fees are informational: they appear on receipts and compliance reports and
never change the authorization math.
"""
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Optional

from milestonepay.errors import ValidationError
from milestonepay.models import PaymentMethod

CENT = Decimal('0.01')
ZERO = Decimal('0.00')


@dataclass(frozen=True)
class FeeRule:
    processor_rate: Decimal = ZERO
    processor_fixed: Decimal = ZERO
    platform_rate: Decimal = ZERO
    platform_cap: Optional[Decimal] = None


@dataclass(frozen=True)
class FeeBreakdown:
    amount: Decimal
    processor_fee: Decimal
    platform_fee: Decimal

    @property
    def total_fee(self) -> Decimal:
        return self.processor_fee + self.platform_fee

    @property
    def net_to_freelancer(self) -> Decimal:
        return self.amount - self.total_fee

    def as_dict(self) -> Dict[str, str]:
        return {
            'amount': str(self.amount),
            'processorFee': str(self.processor_fee),
            'platformFee': str(self.platform_fee),
            'totalFee': str(self.total_fee),
            'netToFreelancer': str(self.net_to_freelancer),
        }


FEE_SCHEDULE: Dict[str, FeeRule] = {
    PaymentMethod.CARD: FeeRule(
        processor_rate=Decimal('0.035'),
        processor_fixed=Decimal('0.30'),
        platform_rate=Decimal('0.005'),
    ),
    PaymentMethod.BANK_TRANSFER: FeeRule(
        platform_rate=Decimal('0.02'),
        platform_cap=Decimal('200.00'),
    ),
    PaymentMethod.STABLECOIN: FeeRule(
        platform_rate=Decimal('0.015'),
        platform_cap=Decimal('100.00'),
    ),
}


def _cents(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def calculate_fees(amount: Decimal, method: str) -> FeeBreakdown:
    rule = FEE_SCHEDULE.get(method)
    if rule is None:
        raise ValidationError(f'Unsupported payment method: {method}')

    amount = _cents(Decimal(amount))
    processor_fee = _cents(amount * rule.processor_rate + rule.processor_fixed)
    platform_fee = _cents(amount * rule.platform_rate)
    if rule.platform_cap is not None:
        platform_fee = min(platform_fee, rule.platform_cap)

    return FeeBreakdown(amount=amount, processor_fee=processor_fee, platform_fee=platform_fee)
