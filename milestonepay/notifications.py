"""
Best-effort notification delivery.

``Notifier.notify`` renders a named template and hands it to a channel. It
never raises: a delivery failure is logged and reported as ``False`` so that
no charge, dispute or sweep ever fails because an email did not go out.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from django.conf import settings
from django.core.mail import send_mail
from loguru import logger


@dataclass(frozen=True)
class Template:
    subject: str
    body: str


TEMPLATES: Dict[str, Template] = {
    'verification_code': Template(
        subject='Your payment verification code',
        body=(
            'Your verification code is {code}.\n\n'
            'It confirms a payment of ${amount} for milestone "{milestone}" and '
            'expires at {expires_at}. If you did not request it, do not share it '
            'and contact support.'
        ),
    ),
    'verification_required': Template(
        subject='Action needed: verify payment for "{milestone}"',
        body=(
            'Milestone "{milestone}" (${amount}) was approved, but the payment needs '
            'a verification code before it can be charged.\n\n'
            'Open the milestone and request a code to complete the payment.'
        ),
    ),
    'payment_pending': Template(
        subject='Upcoming payment for "{milestone}"',
        body=(
            'Milestone "{milestone}" will be approved automatically and ${amount} '
            'charged to your {method} on {charge_at}.\n\n'
            'Review the work before then if you want to approve it yourself or raise '
            'a concern.'
        ),
    ),
    'payment_receipt': Template(
        subject='Payment receipt: ${amount} for "{milestone}"',
        body=(
            'We charged ${amount} to your {method} on {processed_at}.\n\n'
            'Processor fee: ${processor_fee}\n'
            'Platform fee: ${platform_fee}\n'
            'Paid to freelancer: ${net_to_freelancer}\n'
            'Reference: {payment_id}\n\n'
            'You can dispute this charge until {dispute_deadline}.'
        ),
    ),
    'payment_failed': Template(
        subject='Payment failed for "{milestone}"',
        body=(
            'We could not charge ${amount} for milestone "{milestone}".\n'
            'Reason: {reason}\n\n'
            '{guidance}'
        ),
    ),
    'authorization_created': Template(
        subject='Payment authorization confirmed',
        body=(
            'You authorized automatic milestone payments for "{contract}".\n'
            'Per milestone limit: ${max_per_milestone}\n'
            'Total limit: ${total_authorized}\n\n'
            'You can revoke this authorization at any time.'
        ),
    ),
    'authorization_revoked': Template(
        subject='Payment authorization revoked',
        body=(
            'Your payment authorization for "{contract}" was revoked.\n'
            'Reason: {reason}\n'
            'Remaining uncharged balance: ${remaining}\n\n'
            'Next steps: reauthorize a payment method, pay milestones manually, or '
            'terminate the contract.'
        ),
    ),
    'authorization_expiring': Template(
        subject='Your payment method expires soon',
        body=(
            'The payment method authorized for "{contract}" expires on {expires_at}.\n\n'
            'Update it to keep milestone payments running.'
        ),
    ),
    'authorization_expired': Template(
        subject='Payment authorization expired',
        body=(
            'The payment authorization for "{contract}" expired on {expires_at}. '
            'No further milestone charges can be made.\n\n'
            'Reauthorize a payment method to continue.'
        ),
    ),
    'authorization_usage': Template(
        subject='Payment authorization {usage_percent}% used',
        body=(
            '${total_charged} of the ${total_authorized} authorized for "{contract}" '
            'has been charged.\n\n'
            'Increase the authorization if more milestones remain.'
        ),
    ),
    'authorization_suspended': Template(
        subject='Payment authorization paused',
        body=(
            'We paused automatic payments for "{contract}" after unusual activity.\n'
            'Reason: {reason}\n\n'
            'Contact support to review and restore the authorization.'
        ),
    ),
    'dispute_opened': Template(
        subject='Dispute opened for ${amount}',
        body=(
            'A dispute was opened for payment {payment_id} on "{contract}".\n'
            'Reason: {reason}\n\n'
            'The related payout is on hold until the dispute is resolved.'
        ),
    ),
    'dispute_resolved': Template(
        subject='Dispute {status}',
        body=(
            'The dispute on payment {payment_id} was {status}.\n'
            'Resolution: {resolution}\n'
            'Refund: ${refund_amount}\n\n'
            'The payout hold has been lifted.'
        ),
    ),
    'payout_released': Template(
        subject='Payout released: ${amount}',
        body=(
            '${net_to_freelancer} for milestone "{milestone}" has been released to you.\n'
            'Reference: {payment_id}'
        ),
    ),
    'security_alert': Template(
        subject='[{severity}] {title}',
        body='{description}\n\nRule: {rule_id}\nDetails: {metadata}',
    ),
    'alert_digest': Template(
        subject='{count} monitoring alerts',
        body='{lines}',
    ),
}


class _TemplateData(dict):
    def __missing__(self, key: str) -> str:
        return ''


def render(template: str, data: Optional[Dict[str, Any]] = None):
    found = TEMPLATES.get(template)
    if found is None:
        raise KeyError(f'Unknown notification template: {template}')
    values = _TemplateData(data or {})
    return found.subject.format_map(values), found.body.format_map(values)


class NotificationChannel(ABC):
    @property
    @abstractmethod
    def channel_name(self) -> str:
        pass

    @abstractmethod
    def send(self, recipient: str, subject: str, body: str) -> None:
        """Deliver one message; raise on failure."""
        pass


class EmailChannel(NotificationChannel):
    def __init__(self, from_email: Optional[str] = None):
        self.from_email = from_email or getattr(
            settings, 'MILESTONEPAY_FROM_EMAIL', 'payments@milestonepay.local')

    @property
    def channel_name(self) -> str:
        return 'email'

    def send(self, recipient: str, subject: str, body: str) -> None:
        send_mail(subject, body, self.from_email, [recipient], fail_silently=False)


class Notifier:
    def __init__(self, channel: Optional[NotificationChannel] = None):
        self.channel = channel or EmailChannel()

    def notify(self, recipient: Optional[str], template: str, data: Optional[Dict[str, Any]] = None) -> bool:
        if not recipient:
            logger.warning('notification {} skipped: no recipient', template)
            return False
        try:
            subject, body = render(template, data)
            self.channel.send(recipient, subject, body)
        except Exception as exc:
            logger.error('notification {} to {} via {} failed: {}',
                         template, recipient, self.channel.channel_name, exc)
            return False
        logger.debug('notification {} sent to {}', template, recipient)
        return True

    def notify_many(self, recipients: List[str], template: str, data: Optional[Dict[str, Any]] = None) -> int:
        return sum(1 for recipient in recipients if self.notify(recipient, template, data))

    def deliver(self, recipient: Optional[str], template: str, data: Optional[Dict[str, Any]] = None) -> None:
        """Send a template whose delivery the caller must know about; raises on failure."""
        if not recipient:
            raise ValueError(f'No recipient for {template}')
        subject, body = render(template, data)
        self.channel.send(recipient, subject, body)
