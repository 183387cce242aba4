"""
Base payment rail interface.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional


class DeclineCategory:
    DECLINED = 'declined'
    EXPIRED_METHOD = 'expired_method'
    INSUFFICIENT_AUTHORIZATION = 'insufficient_authorization'
    PROCESSOR_ERROR = 'processor_error'


@dataclass
class ChargeResult:
    """Result of a charge attempt."""
    success: bool
    charge_id: Optional[str] = None
    settled_amount: Optional[Decimal] = None
    error_reason: Optional[str] = None
    decline_category: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    # The request may have reached the processor; only a replay can tell.
    outcome_unknown: bool = False


@dataclass
class RefundResult:
    """Result of a refund attempt."""
    success: bool
    refund_id: Optional[str] = None
    amount: Optional[Decimal] = None
    error_reason: Optional[str] = None
    details: Optional[Dict[str, Any]] = None


class PaymentRail(ABC):
    """
    Abstract base class for payment processors.
    Each payment method (card, bank transfer, stablecoin) is served by one rail.

    Rails do not raise for declines or transport failures; they return a
    result with ``success=False`` so the caller can record the outcome. When
    the processor may have acted on the request (a read timeout, an unreadable
    reply, a broadcast transfer without a receipt) the result carries
    ``outcome_unknown=True`` instead of a decline.
    """

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize the rail.

        Args:
            config: Rail-specific configuration (endpoint, credentials, timeouts)
        """
        self.config = config

    @property
    @abstractmethod
    def rail_name(self) -> str:
        """Return the rail name (e.g., 'card', 'stablecoin')."""
        pass

    @abstractmethod
    def charge(
        self,
        amount: Decimal,
        authorization_ref: str,
        idempotency_key: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ChargeResult:
        """
        Charge the authorized payment method.

        Args:
            amount: Amount in dollars
            authorization_ref: The stored payment method reference
            idempotency_key: Key that makes retries of one attempt safe
            metadata: Free-form data forwarded to the processor

        Returns:
            ChargeResult with the processor charge id and settled amount
        """
        pass

    @abstractmethod
    def refund(
        self,
        charge_id: str,
        amount: Decimal,
        authorization_ref: str,
        idempotency_key: str,
    ) -> RefundResult:
        """
        Refund part or all of a settled charge.

        Args:
            charge_id: Processor charge id returned by ``charge``
            amount: Amount in dollars to return
            authorization_ref: The payment method the charge was made against
            idempotency_key: Unique per refund; replays of it never refund twice

        Returns:
            RefundResult with the processor refund id
        """
        pass

    @abstractmethod
    def validate_reference(self, authorization_ref: str) -> bool:
        """
        Validate if the payment method reference is well formed for this rail.

        Args:
            authorization_ref: Reference to validate

        Returns:
            True if valid, False otherwise
        """
        pass

    def check_charge(
        self,
        amount: Decimal,
        authorization_ref: str,
        idempotency_key: str,
        charge_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ChargeResult:
        """
        Find out what happened to a charge whose outcome was unknown.

        The default replays the original request under the same idempotency
        key, so a processor that already captured it answers with that charge.
        """
        return self.charge(amount, authorization_ref, idempotency_key, metadata=metadata)
