"""
Transaction risk scoring.

Pure and side-effect free: the caller gathers the context, this module only
adds up points. A score of ``HIGH_RISK_SCORE`` or more is high risk.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Tuple

MAX_SCORE = 10
HIGH_RISK_SCORE = 8

HIGH_AMOUNT = Decimal('500')
ELEVATED_AMOUNT = Decimal('200')

SUSPICIOUS_AGENT_MARKERS = ('bot', 'crawler', 'spider')


@dataclass(frozen=True)
class RiskContext:
    amount: Decimal
    is_first_payment: bool = False
    has_known_device: bool = True
    recent_failure_count: int = 0
    has_known_location: bool = True
    user_agent_suspicious: bool = False


@dataclass(frozen=True)
class RiskAssessment:
    score: int
    triggers: Tuple[str, ...]

    @property
    def is_high_risk(self) -> bool:
        return self.score >= HIGH_RISK_SCORE


def is_user_agent_suspicious(user_agent: Optional[str]) -> bool:
    """A missing or crawler-like user agent is suspicious."""
    if not user_agent:
        return True
    lowered = user_agent.lower()
    return any(marker in lowered for marker in SUSPICIOUS_AGENT_MARKERS)


def score_transaction(context: RiskContext) -> RiskAssessment:
    score = 0
    triggers = []

    if context.is_first_payment:
        score += 2
        triggers.append('first_payment')

    amount = Decimal(context.amount)
    if amount > HIGH_AMOUNT:
        score += 3
        triggers.append('high_amount')
    elif amount > ELEVATED_AMOUNT:
        score += 1
        triggers.append('elevated_amount')

    if not context.has_known_device:
        score += 2
        triggers.append('unknown_device')

    failures = max(int(context.recent_failure_count or 0), 0)
    if failures:
        score += failures
        triggers.append('recent_failures')

    if not context.has_known_location:
        score += 1
        triggers.append('unknown_location')

    if context.user_agent_suspicious:
        score += 2
        triggers.append('suspicious_user_agent')

    return RiskAssessment(score=min(max(score, 0), MAX_SCORE), triggers=tuple(triggers))
