from django.contrib import admin

from milestonepay.models import (
    Alert,
    AuditEvent,
    Authorization,
    Charge,
    Contract,
    Dispute,
    Milestone,
    TrustedDevice,
)


@admin.register(Contract)
class ContractAdmin(admin.ModelAdmin):
    list_display = ("id", "title", "client_id", "freelancer_id", "status", "created_at")
    list_filter = ("status",)
    search_fields = ("title", "client_id", "freelancer_id")


@admin.register(Milestone)
class MilestoneAdmin(admin.ModelAdmin):
    list_display = ("id", "contract", "title", "amount", "status", "payment_released", "submitted_at")
    list_filter = ("status", "payment_released")


@admin.register(Authorization)
class AuthorizationAdmin(admin.ModelAdmin):
    list_display = ("authorization_id", "contract", "method", "total_charged", "total_authorized", "status")
    list_filter = ("status", "method")
    search_fields = ("authorization_id", "client_id", "payment_method_ref")
    readonly_fields = ("total_charged",)


@admin.register(Charge)
class ChargeAdmin(admin.ModelAdmin):
    list_display = ("payment_id", "milestone", "amount", "method", "status", "payout_frozen", "settled_at")
    list_filter = ("status", "method", "payout_frozen", "needs_reconciliation")
    search_fields = ("payment_id", "external_charge_id", "idempotency_key")
    readonly_fields = ("refunded_amount", "payout_frozen", "payout_released_at", "idempotency_key")


@admin.register(Dispute)
class DisputeAdmin(admin.ModelAdmin):
    list_display = ("dispute_id", "charge", "amount", "status", "opened_at", "resolved_at")
    list_filter = ("status",)
    search_fields = ("dispute_id", "client_id", "freelancer_id")


@admin.register(TrustedDevice)
class TrustedDeviceAdmin(admin.ModelAdmin):
    list_display = ("user_id", "device_fingerprint", "trusted_until")
    search_fields = ("user_id", "device_fingerprint")


@admin.register(Alert)
class AlertAdmin(admin.ModelAdmin):
    list_display = ("rule_id", "severity", "title", "subject_key", "created_at", "notified_at")
    list_filter = ("severity", "rule_id")


@admin.register(AuditEvent)
class AuditEventAdmin(admin.ModelAdmin):
    list_display = ("sequence", "event_type", "user_id", "severity", "timestamp")
    list_filter = ("event_type", "severity", "compliance_relevant")
    search_fields = ("audit_id", "user_id", "entity_id", "contract_id")

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False
