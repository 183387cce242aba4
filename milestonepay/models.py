import uuid
from decimal import Decimal
from typing import Optional

from django.db import models
from django.db.models import Q
from django.utils import timezone


def money_field(**kwargs):
    return models.DecimalField(max_digits=12, decimal_places=2, **kwargs)


class PaymentMethod(models.TextChoices):
    CARD = 'card', 'Card'
    BANK_TRANSFER = 'bank_transfer', 'Bank transfer'
    STABLECOIN = 'stablecoin', 'Stablecoin'


class Severity(models.TextChoices):
    INFO = 'info', 'Info'
    LOW = 'low', 'Low'
    MEDIUM = 'medium', 'Medium'
    WARNING = 'warning', 'Warning'
    HIGH = 'high', 'High'
    ERROR = 'error', 'Error'
    CRITICAL = 'critical', 'Critical'


class Contract(models.Model):
    """Contract record owned by the contract CRUD layer; only status is core-observed."""

    class Status(models.TextChoices):
        DRAFT = 'draft', 'Draft'
        ACTIVE = 'active', 'Active'
        AUTHORIZATION_EXPIRED = 'payment_authorization_expired', 'Payment authorization expired'
        COMPLETED = 'completed', 'Completed'
        TERMINATED = 'terminated', 'Terminated'

    title = models.CharField(max_length=255)
    client_id = models.CharField(max_length=64, db_index=True)
    client_email = models.EmailField()
    freelancer_id = models.CharField(max_length=64, db_index=True)
    freelancer_email = models.EmailField()
    status = models.CharField(
        max_length=40, choices=Status.choices, default=Status.ACTIVE)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['-created_at']

    def __str__(self) -> str:
        return f'Contract #{self.pk} {self.title}'


class Milestone(models.Model):
    class Status(models.TextChoices):
        PENDING = 'pending', 'Pending'
        IN_PROGRESS = 'in_progress', 'In progress'
        SUBMITTED = 'submitted', 'Submitted'
        APPROVED = 'approved', 'Approved'
        PAID = 'paid', 'Paid'

    contract = models.ForeignKey(
        Contract, on_delete=models.PROTECT, related_name='milestones')
    title = models.CharField(max_length=255)
    amount = money_field()
    status = models.CharField(
        max_length=16, choices=Status.choices, default=Status.PENDING)
    payment_released = models.BooleanField(default=False)
    submitted_at = models.DateTimeField(blank=True, null=True)
    approved_at = models.DateTimeField(blank=True, null=True)
    approved_by = models.CharField(max_length=64, blank=True, default='')
    paid_at = models.DateTimeField(blank=True, null=True)
    pending_notice_sent_at = models.DateTimeField(blank=True, null=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['created_at']
        indexes = [models.Index(fields=['status', 'submitted_at'], name='milestonepa_status_2d1c0e_idx')]

    def __str__(self) -> str:
        return f'Milestone #{self.pk} {self.title} ({self.status})'


class Authorization(models.Model):
    """A client's standing consent to be charged for one contract."""

    class Status(models.TextChoices):
        ACTIVE = 'active', 'Active'
        SUSPENDED = 'suspended', 'Suspended'
        REVOKED = 'revoked', 'Revoked'
        EXPIRED = 'expired', 'Expired'

    TERMINAL_STATUSES = (Status.REVOKED, Status.EXPIRED)
    LIVE_STATUSES = (Status.ACTIVE, Status.SUSPENDED)

    authorization_id = models.UUIDField(default=uuid.uuid4, unique=True, editable=False)
    contract = models.ForeignKey(
        Contract, on_delete=models.PROTECT, related_name='authorizations')
    client_id = models.CharField(max_length=64, db_index=True)
    payment_method_ref = models.CharField(max_length=128)
    method = models.CharField(max_length=16, choices=PaymentMethod.choices)
    max_per_milestone = money_field()
    total_authorized = money_field()
    total_charged = money_field(default=Decimal('0.00'))
    terms_version = models.CharField(max_length=32)
    ip_address = models.GenericIPAddressField(blank=True, null=True)
    user_agent = models.TextField(blank=True, default='')
    status = models.CharField(
        max_length=16, choices=Status.choices, default=Status.ACTIVE)
    authorized_at = models.DateTimeField(default=timezone.now)
    expires_at = models.DateTimeField(blank=True, null=True)
    revoked_at = models.DateTimeField(blank=True, null=True)
    revoked_reason = models.CharField(max_length=255, blank=True, default='')
    last_used_at = models.DateTimeField(blank=True, null=True)
    expiry_warning_sent_at = models.DateTimeField(blank=True, null=True)
    usage_alert_sent_at = models.DateTimeField(blank=True, null=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['-authorized_at']
        constraints = [
            models.UniqueConstraint(
                fields=['contract'],
                condition=Q(status__in=['active', 'suspended']),
                name='one_live_authorization_per_contract',
            ),
        ]
        indexes = [models.Index(fields=['status', 'expires_at'], name='milestonepa_status_8f3a41_idx')]

    def __str__(self) -> str:
        return f'Authorization {self.authorization_id} ({self.status})'

    @property
    def remaining(self) -> Decimal:
        return self.total_authorized - self.total_charged

    @property
    def is_terminal(self) -> bool:
        return self.status in self.TERMINAL_STATUSES


class Charge(models.Model):
    """One attempted or completed transfer for one milestone."""

    class Status(models.TextChoices):
        PENDING = 'pending', 'Pending'
        PROCESSING = 'processing', 'Processing'
        SUCCEEDED = 'succeeded', 'Succeeded'
        FAILED = 'failed', 'Failed'
        REFUNDED = 'refunded', 'Refunded'

    payment_id = models.UUIDField(default=uuid.uuid4, unique=True, editable=False)
    contract = models.ForeignKey(
        Contract, on_delete=models.PROTECT, related_name='charges')
    milestone = models.ForeignKey(
        Milestone, on_delete=models.PROTECT, related_name='charges')
    authorization = models.ForeignKey(
        Authorization, on_delete=models.PROTECT, related_name='charges')
    amount = money_field()
    method = models.CharField(max_length=16, choices=PaymentMethod.choices)
    status = models.CharField(
        max_length=16, choices=Status.choices, default=Status.PENDING)
    external_charge_id = models.CharField(max_length=128, blank=True, null=True)
    idempotency_key = models.CharField(max_length=96, unique=True, blank=True, null=True)
    # Processor outcome unknown (timeout, unreadable reply, unconfirmed transfer).
    needs_reconciliation = models.BooleanField(default=False)
    settled_amount = money_field(blank=True, null=True)
    processor_fee = money_field(default=Decimal('0.00'))
    platform_fee = money_field(default=Decimal('0.00'))
    failure_reason = models.CharField(max_length=255, blank=True, default='')
    decline_category = models.CharField(max_length=32, blank=True, default='')
    refunded_amount = money_field(default=Decimal('0.00'))
    payout_frozen = models.BooleanField(default=False)
    payout_released_at = models.DateTimeField(blank=True, null=True)
    created_at = models.DateTimeField(default=timezone.now)
    settled_at = models.DateTimeField(blank=True, null=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['-created_at']
        constraints = [
            models.UniqueConstraint(
                fields=['milestone'],
                condition=~Q(status='failed'),
                name='one_open_charge_per_milestone',
            ),
        ]
        indexes = [
            models.Index(fields=['status', 'created_at'], name='milestonepa_status_5b7e90_idx'),
            models.Index(fields=['status', 'settled_at'], name='milestonepa_status_c41d2a_idx'),
        ]

    def __str__(self) -> str:
        return f'Charge {self.payment_id} {self.amount} ({self.status})'

    def _finish(self, **changes) -> bool:
        """Apply ``changes`` only while the charge is still processing."""
        now = timezone.now()
        changes.setdefault('updated_at', now)
        updated = Charge.objects.filter(pk=self.pk, status=self.Status.PROCESSING).update(**changes)
        self.refresh_from_db()
        return bool(updated)

    def mark_succeeded(self, external_charge_id: str, settled_amount: Decimal) -> bool:
        return self._finish(
            status=self.Status.SUCCEEDED,
            external_charge_id=external_charge_id or self.external_charge_id,
            settled_amount=settled_amount,
            settled_at=timezone.now(),
            needs_reconciliation=False,
        )

    def mark_failed(self, reason: str, decline_category: str) -> bool:
        return self._finish(
            status=self.Status.FAILED,
            failure_reason=reason[:255],
            decline_category=decline_category,
            needs_reconciliation=False,
        )

    def mark_unconfirmed(self, reason: str, external_charge_id: Optional[str] = None) -> bool:
        """Flag for reconciliation; True only the first time."""
        changes = {'failure_reason': reason[:255]}
        if external_charge_id:
            changes['external_charge_id'] = external_charge_id
        changes['updated_at'] = timezone.now()
        first = Charge.objects.filter(
            pk=self.pk, status=self.Status.PROCESSING, needs_reconciliation=False,
        ).update(needs_reconciliation=True, **changes)
        if not first:
            Charge.objects.filter(pk=self.pk, status=self.Status.PROCESSING).update(**changes)
        self.refresh_from_db()
        return bool(first)


class VerificationCode(models.Model):
    """Hashed one-time code gating a milestone charge."""

    user_id = models.CharField(max_length=64)
    milestone = models.ForeignKey(
        Milestone, on_delete=models.CASCADE, related_name='verification_codes')
    hashed_code = models.CharField(max_length=256)
    amount = money_field()
    expires_at = models.DateTimeField()
    used = models.BooleanField(default=False)
    used_at = models.DateTimeField(blank=True, null=True)
    verified_at = models.DateTimeField(blank=True, null=True)
    failed_attempts = models.PositiveIntegerField(default=0)
    ip_address = models.GenericIPAddressField(blank=True, null=True)
    user_agent = models.TextField(blank=True, default='')
    created_at = models.DateTimeField(default=timezone.now)

    class Meta:
        ordering = ['-created_at']
        indexes = [models.Index(fields=['user_id', 'milestone', 'used'], name='milestonepa_user_id_9e0b7c_idx')]


class TrustedDevice(models.Model):
    user_id = models.CharField(max_length=64)
    device_fingerprint = models.CharField(max_length=128)
    trusted_until = models.DateTimeField()
    ip_address = models.GenericIPAddressField(blank=True, null=True)
    user_agent = models.TextField(blank=True, default='')
    created_at = models.DateTimeField(default=timezone.now)

    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=['user_id', 'device_fingerprint'], name='unique_trusted_device'),
        ]


class DeviceSighting(models.Model):
    user_id = models.CharField(max_length=64)
    fingerprint = models.CharField(max_length=64)
    ip_address = models.GenericIPAddressField(blank=True, null=True)
    first_seen_at = models.DateTimeField(default=timezone.now)
    last_seen_at = models.DateTimeField(default=timezone.now)

    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=['user_id', 'fingerprint'], name='unique_device_sighting'),
        ]


class SecuritySettings(models.Model):
    user_id = models.CharField(max_length=64, unique=True)
    always_2fa = models.BooleanField(default=False)
    tfa_threshold = money_field(blank=True, null=True)
    tfa_method = models.CharField(max_length=16, default='email')
    updated_at = models.DateTimeField(auto_now=True)


class Dispute(models.Model):
    class Status(models.TextChoices):
        OPEN = 'open', 'Open'
        INVESTIGATING = 'investigating', 'Investigating'
        RESOLVED = 'resolved', 'Resolved'
        CLOSED = 'closed', 'Closed'

    OPEN_STATUSES = (Status.OPEN, Status.INVESTIGATING)

    dispute_id = models.UUIDField(default=uuid.uuid4, unique=True, editable=False)
    charge = models.ForeignKey(
        Charge, on_delete=models.PROTECT, related_name='disputes')
    contract = models.ForeignKey(
        Contract, on_delete=models.PROTECT, related_name='disputes')
    client_id = models.CharField(max_length=64)
    freelancer_id = models.CharField(max_length=64)
    amount = money_field()
    reason = models.TextField()
    status = models.CharField(
        max_length=16, choices=Status.choices, default=Status.OPEN)
    opened_at = models.DateTimeField(default=timezone.now)
    resolved_at = models.DateTimeField(blank=True, null=True)
    resolution = models.TextField(blank=True, default='')
    refund_amount = money_field(blank=True, null=True)
    refund_reference = models.CharField(max_length=128, blank=True, default='')
    resolved_by = models.CharField(max_length=64, blank=True, default='')
    admin_notes = models.TextField(blank=True, default='')

    class Meta:
        ordering = ['-opened_at']
        constraints = [
            models.UniqueConstraint(
                fields=['charge'],
                condition=Q(status__in=['open', 'investigating']),
                name='one_open_dispute_per_charge',
            ),
        ]

    @property
    def is_open(self) -> bool:
        return self.status in self.OPEN_STATUSES


class AuditEvent(models.Model):
    """Append-only, hash-chained audit record."""

    audit_id = models.UUIDField(default=uuid.uuid4, unique=True, editable=False)
    sequence = models.PositiveBigIntegerField(unique=True)
    user_id = models.CharField(max_length=64, db_index=True)
    contract_id = models.CharField(max_length=64, blank=True, default='', db_index=True)
    entity_id = models.CharField(max_length=64, blank=True, default='', db_index=True)
    event_type = models.CharField(max_length=48, db_index=True)
    action = models.CharField(max_length=255)
    details = models.JSONField(default=dict)
    ip_address = models.GenericIPAddressField(blank=True, null=True)
    user_agent = models.TextField(blank=True, default='')
    severity = models.CharField(
        max_length=16, choices=Severity.choices, default=Severity.INFO)
    compliance_relevant = models.BooleanField(default=True)
    retention_years = models.PositiveSmallIntegerField(default=7)
    timestamp = models.DateTimeField()
    previous_hash = models.CharField(max_length=64, blank=True, default='')
    integrity_hash = models.CharField(max_length=64)

    class Meta:
        ordering = ['-sequence']
        indexes = [models.Index(fields=['event_type', 'timestamp'], name='milestonepa_event_t_6a2f13_idx')]

    def __str__(self) -> str:
        return f'{self.event_type} #{self.sequence}'


class Alert(models.Model):
    rule_id = models.CharField(max_length=48, db_index=True)
    subject_key = models.CharField(max_length=128, blank=True, default='')
    severity = models.CharField(max_length=16, choices=Severity.choices)
    title = models.CharField(max_length=255)
    description = models.TextField()
    metadata = models.JSONField(default=dict)
    user_id = models.CharField(max_length=64, blank=True, default='')
    contract_id = models.CharField(max_length=64, blank=True, default='')
    ip_address = models.GenericIPAddressField(blank=True, null=True)
    created_at = models.DateTimeField(default=timezone.now)
    notified_at = models.DateTimeField(blank=True, null=True)
    remediation = models.CharField(max_length=255, blank=True, default='')

    class Meta:
        ordering = ['-created_at']
        indexes = [models.Index(fields=['rule_id', 'subject_key', 'created_at'], name='milestonepa_rule_id_3c8e55_idx')]

    def __str__(self) -> str:
        return f'[{self.severity}] {self.title}'
