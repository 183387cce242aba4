"""
Payment rails for milestone charge settlement.
"""
from .base import ChargeResult, DeclineCategory, PaymentRail, RefundResult
from .card import CardRail
from .sandbox import SandboxRail
from .stablecoin import StablecoinRail
from .factory import RailFactory

__all__ = [
    'ChargeResult',
    'DeclineCategory',
    'PaymentRail',
    'RefundResult',
    'CardRail',
    'SandboxRail',
    'StablecoinRail',
    'RailFactory',
]
