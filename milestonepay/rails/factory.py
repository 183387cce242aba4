"""
Factory for creating payment rails.
"""
from typing import Any, Dict, Optional, Type

from .base import PaymentRail
from .card import CardRail
from .sandbox import SandboxRail
from .stablecoin import StablecoinRail

SANDBOX_BACKEND = 'sandbox'


class RailFactory:
    """Factory to create payment rails based on payment method."""

    _rails: Dict[str, Type[PaymentRail]] = {
        'card': CardRail,
        'bank_transfer': CardRail,
        'stablecoin': StablecoinRail,
        'sandbox': SandboxRail,
    }

    def __init__(self, backend: Optional[str] = None, config: Optional[Dict[str, Dict[str, Any]]] = None):
        from django.conf import settings
        self.backend = backend or getattr(settings, 'MILESTONEPAY_RAIL_BACKEND', SANDBOX_BACKEND)
        self.config = config or {}
        self._instances: Dict[str, PaymentRail] = {}

    @classmethod
    def create(cls, method: str, config: Dict[str, Any] = None) -> PaymentRail:
        """
        Create a rail for the specified payment method.

        Args:
            method: Payment method ('card', 'bank_transfer', 'stablecoin', 'sandbox')
            config: Optional configuration dict (endpoint, credentials, timeouts)

        Returns:
            PaymentRail instance

        Raises:
            ValueError: If method is not supported
        """
        method_lower = method.lower().strip()

        rail_class = cls._rails.get(method_lower)
        if rail_class is None:
            supported = ', '.join(cls._rails.keys())
            raise ValueError(
                f"Unsupported payment method: {method}. "
                f"Supported methods: {supported}"
            )

        config = dict(config or {})
        config.setdefault('method', method_lower)
        return rail_class(config)

    @classmethod
    def register(cls, method: str, rail_class: Type[PaymentRail]) -> None:
        """
        Register a new payment rail.

        Args:
            method: Payment method name
            rail_class: PaymentRail subclass
        """
        cls._rails[method.lower().strip()] = rail_class

    @classmethod
    def get_supported_methods(cls) -> list[str]:
        """Get list of supported payment method names."""
        return list(cls._rails.keys())

    def rail_for(self, method: str) -> PaymentRail:
        """Return the rail serving ``method``, reusing one instance per method."""
        rail = self._instances.get(method)
        if rail is None:
            config = dict(self.config.get(method, {}))
            config['method'] = method
            name = SANDBOX_BACKEND if self.backend == SANDBOX_BACKEND else method
            rail = self.create(name, config)
            self._instances[method] = rail
        return rail
