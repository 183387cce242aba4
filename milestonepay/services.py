from dataclasses import dataclass
from typing import Optional

from milestonepay.approvals import MilestoneApprovals
from milestonepay.audit import AuditLogger
from milestonepay.charges import ChargeExecutor
from milestonepay.compliance import ComplianceReporter
from milestonepay.disputes import DisputeManager
from milestonepay.ledger import AuthorizationLedger
from milestonepay.monitoring import PaymentMonitor
from milestonepay.notifications import Notifier
from milestonepay.rails import RailFactory
from milestonepay.two_factor import TwoFactorGate


@dataclass
class PaymentPlatform:
    audit: AuditLogger
    notifier: Notifier
    rails: RailFactory
    ledger: AuthorizationLedger
    gate: TwoFactorGate
    executor: ChargeExecutor
    approvals: MilestoneApprovals
    disputes: DisputeManager
    monitor: PaymentMonitor
    compliance: ComplianceReporter


def build_platform(rail_factory: Optional[RailFactory] = None,
                   notifier: Optional[Notifier] = None) -> PaymentPlatform:
    audit = AuditLogger()
    notifier = notifier or Notifier()
    rails = rail_factory or RailFactory()
    ledger = AuthorizationLedger(audit, notifier, rails)
    gate = TwoFactorGate(audit, notifier)
    monitor = PaymentMonitor(ledger, audit, notifier)
    executor = ChargeExecutor(ledger, gate, rails, audit, notifier, on_high_risk=monitor.report_high_risk)
    return PaymentPlatform(
        audit=audit,
        notifier=notifier,
        rails=rails,
        ledger=ledger,
        gate=gate,
        executor=executor,
        approvals=MilestoneApprovals(executor, gate, audit, notifier),
        disputes=DisputeManager(rails, audit, notifier),
        monitor=monitor,
        compliance=ComplianceReporter(audit),
    )
