import unittest
from dataclasses import replace
from decimal import Decimal

from milestonepay.risk import (
    MAX_SCORE,
    RiskContext,
    is_user_agent_suspicious,
    score_transaction,
)


class ScoreTransactionTests(unittest.TestCase):
    def test_clean_context_scores_zero(self):
        assessment = score_transaction(RiskContext(amount=Decimal('50')))
        self.assertEqual(assessment.score, 0)
        self.assertEqual(assessment.triggers, ())
        self.assertFalse(assessment.is_high_risk)

    def test_each_trigger_adds_its_points(self):
        cases = [
            (dict(is_first_payment=True), 2, 'first_payment'),
            (dict(amount=Decimal('500.01')), 3, 'high_amount'),
            (dict(amount=Decimal('250')), 1, 'elevated_amount'),
            (dict(has_known_device=False), 2, 'unknown_device'),
            (dict(recent_failure_count=3), 3, 'recent_failures'),
            (dict(has_known_location=False), 1, 'unknown_location'),
            (dict(user_agent_suspicious=True), 2, 'suspicious_user_agent'),
        ]
        for changes, points, trigger in cases:
            with self.subTest(trigger=trigger):
                context = replace(RiskContext(amount=Decimal('50')), **changes)
                assessment = score_transaction(context)
                self.assertEqual(assessment.score, points)
                self.assertEqual(assessment.triggers, (trigger,))

    def test_amount_boundaries_are_exclusive(self):
        self.assertEqual(score_transaction(RiskContext(amount=Decimal('500'))).triggers, ('elevated_amount',))
        self.assertEqual(score_transaction(RiskContext(amount=Decimal('200'))).triggers, ())

    def test_score_is_clamped_to_max(self):
        context = RiskContext(
            amount=Decimal('1000'),
            is_first_payment=True,
            has_known_device=False,
            recent_failure_count=6,
            has_known_location=False,
            user_agent_suspicious=True,
        )
        assessment = score_transaction(context)
        self.assertEqual(assessment.score, MAX_SCORE)
        self.assertTrue(assessment.is_high_risk)

    def test_negative_failure_count_is_ignored(self):
        assessment = score_transaction(RiskContext(amount=Decimal('10'), recent_failure_count=-4))
        self.assertEqual(assessment.score, 0)

    def test_adding_a_trigger_never_lowers_the_score(self):
        base = RiskContext(amount=Decimal('300'), recent_failure_count=1)
        baseline = score_transaction(base).score
        for changes in (
            dict(is_first_payment=True),
            dict(amount=Decimal('900')),
            dict(has_known_device=False),
            dict(recent_failure_count=2),
            dict(has_known_location=False),
            dict(user_agent_suspicious=True),
        ):
            with self.subTest(changes=changes):
                self.assertGreaterEqual(score_transaction(replace(base, **changes)).score, baseline)

    def test_high_risk_starts_at_eight(self):
        seven = RiskContext(amount=Decimal('600'), is_first_payment=True, has_known_device=False)
        self.assertEqual(score_transaction(seven).score, 7)
        self.assertFalse(score_transaction(seven).is_high_risk)
        eight = replace(seven, has_known_location=False)
        self.assertTrue(score_transaction(eight).is_high_risk)


class UserAgentTests(unittest.TestCase):
    def test_missing_agent_is_suspicious(self):
        self.assertTrue(is_user_agent_suspicious(None))
        self.assertTrue(is_user_agent_suspicious(''))

    def test_crawler_markers(self):
        self.assertTrue(is_user_agent_suspicious('Googlebot/2.1'))
        self.assertTrue(is_user_agent_suspicious('SomeCrawler 1.0'))
        self.assertFalse(is_user_agent_suspicious('Mozilla/5.0 (X11; Linux x86_64)'))
