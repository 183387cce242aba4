"""
HTTP endpoints for the milestone payment core.

Domain errors map to ``{"error": code, "message": ...}`` with the status the
error declares. Client endpoints carry identity in the body; admin endpoints
need a staff user.
"""
from datetime import datetime
from typing import Any, Dict, Optional, Type, TypeVar

from django.apps import apps
from django.utils import timezone
from loguru import logger
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from rest_framework import status
from rest_framework.permissions import IsAdminUser
from rest_framework.response import Response
from rest_framework.views import APIView

from milestonepay.errors import PaymentPlatformError, RailError, ValidationError
from milestonepay.fees import calculate_fees
from milestonepay.ledger import AuthorizationCaps, ConsentMetadata
from milestonepay.models import AuditEvent, Authorization, Charge, Dispute
from milestonepay.schemas import (
    ApproveMilestoneRequest,
    AuditTrailQuery,
    BatchApproveRequest,
    CloseDisputeRequest,
    ComplianceReportQuery,
    CreateAuthorizationRequest,
    FeeQuoteQuery,
    OpenDisputeRequest,
    ResolveDisputeRequest,
    RevokeAuthorizationRequest,
    SecuritySettingsRequest,
    SendCodeRequest,
    TrustDeviceRequest,
    VerifyCodeRequest,
)
from milestonepay.services import PaymentPlatform
from milestonepay.two_factor import ChargeContext

Schema = TypeVar('Schema', bound=BaseModel)


def get_platform() -> PaymentPlatform:
    return apps.get_app_config('milestonepay').platform


def _parse(schema: Type[Schema], data) -> Schema:
    try:
        return schema.model_validate(dict(data.items()) if hasattr(data, 'items') else data)
    except PydanticValidationError as exc:
        logger.debug('pydantic validation failed: {}', exc)
        fields = sorted({'.'.join(str(part) for part in error['loc']) for error in exc.errors()})
        raise ValidationError(
            f'Invalid request: {", ".join(fields) or "body"}', details={'fields': fields}) from exc


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and timezone.is_naive(value):
        return timezone.make_aware(value)
    return value


def _client_ip(request) -> Optional[str]:
    forwarded = request.META.get('HTTP_X_FORWARDED_FOR', '')
    if forwarded:
        return forwarded.split(',')[0].strip()
    return request.META.get('REMOTE_ADDR') or None


def charge_context(request, device_id: Optional[str] = None) -> ChargeContext:
    return ChargeContext(
        ip_address=_client_ip(request),
        user_agent=request.META.get('HTTP_USER_AGENT', ''),
        device_id=device_id or request.META.get('HTTP_X_DEVICE_ID') or None,
    )


def error_response(exc: PaymentPlatformError) -> Response:
    body: Dict[str, Any] = {'error': exc.code, 'message': exc.public_message}
    if exc.details and not isinstance(exc, RailError):
        body['details'] = exc.details
    if isinstance(exc, RailError):
        body['declineCategory'] = exc.decline_category
    return Response(body, status=exc.http_status)


def authorization_payload(authorization: Authorization) -> Dict[str, Any]:
    return {
        'authorizationId': str(authorization.authorization_id),
        'contractId': authorization.contract_id,
        'clientId': authorization.client_id,
        'method': authorization.method,
        'maxPerMilestone': str(authorization.max_per_milestone),
        'totalAuthorized': str(authorization.total_authorized),
        'totalCharged': str(authorization.total_charged),
        'remaining': str(authorization.remaining),
        'status': authorization.status,
        'authorizedAt': authorization.authorized_at,
        'expiresAt': authorization.expires_at,
        'revokedAt': authorization.revoked_at,
    }


def charge_payload(charge: Charge, dispute_deadline=None) -> Dict[str, Any]:
    return {
        'paymentId': str(charge.payment_id),
        'contractId': charge.contract_id,
        'milestoneId': charge.milestone_id,
        'amount': str(charge.amount),
        'method': charge.method,
        'status': charge.status,
        'externalChargeId': charge.external_charge_id,
        'fees': calculate_fees(charge.amount, charge.method).as_dict(),
        'createdAt': charge.created_at,
        'settledAt': charge.settled_at,
        'disputeDeadline': dispute_deadline,
    }


def dispute_payload(dispute: Dispute) -> Dict[str, Any]:
    return {
        'disputeId': str(dispute.dispute_id),
        'paymentId': str(dispute.charge.payment_id),
        'contractId': dispute.contract_id,
        'amount': str(dispute.amount),
        'reason': dispute.reason,
        'status': dispute.status,
        'openedAt': dispute.opened_at,
        'resolvedAt': dispute.resolved_at,
        'resolution': dispute.resolution or None,
        'refundAmount': str(dispute.refund_amount) if dispute.refund_amount is not None else None,
        'payoutFrozen': Charge.objects.filter(pk=dispute.charge_id, payout_frozen=True).exists(),
    }


def audit_payload(event: AuditEvent) -> Dict[str, Any]:
    return {
        'auditId': str(event.audit_id),
        'sequence': event.sequence,
        'userId': event.user_id,
        'eventType': event.event_type,
        'action': event.action,
        'details': event.details,
        'severity': event.severity,
        'entityId': event.entity_id,
        'contractId': event.contract_id,
        'timestamp': event.timestamp,
        'integrityHash': event.integrity_hash,
    }


class PlatformAPIView(APIView):
    authentication_classes: list = []
    permission_classes: list = []

    @property
    def platform(self) -> PaymentPlatform:
        return get_platform()

    def handle_exception(self, exc):
        if isinstance(exc, PaymentPlatformError):
            if exc.http_status >= 500:
                logger.error('{} {} failed: {} {}', self.request.method, self.request.path, exc.code, exc.message)
            else:
                logger.info('{} {} rejected: {} {}', self.request.method, self.request.path, exc.code, exc.message)
            return error_response(exc)
        return super().handle_exception(exc)


class AdminAPIView(PlatformAPIView):
    authentication_classes = APIView.authentication_classes
    permission_classes = [IsAdminUser]

    def admin_id(self) -> str:
        return self.request.user.get_username() or str(self.request.user.pk)


# Authorizations

class AuthorizationCreateView(PlatformAPIView):
    def post(self, request, *args, **kwargs):
        body = _parse(CreateAuthorizationRequest, request.data)
        authorization = self.platform.ledger.create_authorization(
            body.contract_id,
            body.client_id,
            body.method,
            AuthorizationCaps(max_per_milestone=body.max_per_milestone,
                              total_authorized=body.total_authorized),
            ConsentMetadata(
                payment_method_ref=body.payment_method_ref,
                terms_version=body.terms_version,
                ip_address=_client_ip(request),
                user_agent=request.META.get('HTTP_USER_AGENT', ''),
                expires_at=_aware(body.expires_at),
            ),
        )
        return Response(authorization_payload(authorization), status=status.HTTP_201_CREATED)


class AuthorizationRevokeView(PlatformAPIView):
    def post(self, request, authorization_id, *args, **kwargs):
        body = _parse(RevokeAuthorizationRequest, request.data)
        authorization = self.platform.ledger.revoke_authorization(
            authorization_id, body.reason, revoked_by=body.revoked_by)
        return Response(authorization_payload(authorization), status=status.HTTP_200_OK)


# Approval and charging

class MilestoneApproveView(PlatformAPIView):
    def post(self, request, milestone_id, *args, **kwargs):
        body = _parse(ApproveMilestoneRequest, request.data)
        charge = self.platform.approvals.approve_milestone(
            milestone_id, body.user_id, otp_code=body.otp_code,
            context=charge_context(request, body.device_id))
        return Response(
            charge_payload(charge, self.platform.executor.dispute_deadline(charge)),
            status=status.HTTP_200_OK,
        )


class BatchApproveView(PlatformAPIView):
    def post(self, request, *args, **kwargs):
        body = _parse(BatchApproveRequest, request.data)
        results = self.platform.approvals.batch_approve(
            body.user_id, body.milestone_ids, body.code, context=charge_context(request, body.device_id))
        return Response(
            {
                'results': [
                    {
                        'milestoneId': result.milestone_id,
                        'success': result.success,
                        'payment': charge_payload(result.charge) if result.charge else None,
                        'error': result.error,
                        'message': result.message,
                    }
                    for result in results
                ],
                'succeeded': sum(1 for result in results if result.success),
                'failed': sum(1 for result in results if not result.success),
            },
            status=status.HTTP_200_OK,
        )


# Verification

class SendVerificationCodeView(PlatformAPIView):
    def post(self, request, *args, **kwargs):
        body = _parse(SendCodeRequest, request.data)
        issued = self.platform.gate.send_verification_code(
            body.user_id, body.milestone_id, body.amount, context=charge_context(request))
        return Response({'otpId': issued.otp_id, 'expiresAt': issued.expires_at}, status=status.HTTP_200_OK)


class VerifyCodeView(PlatformAPIView):
    def post(self, request, *args, **kwargs):
        body = _parse(VerifyCodeRequest, request.data)
        result = self.platform.gate.verify_code(
            body.user_id, body.milestone_id, body.code, context=charge_context(request))
        return Response({'valid': result.valid}, status=status.HTTP_200_OK)


class TrustDeviceView(PlatformAPIView):
    def post(self, request, *args, **kwargs):
        body = _parse(TrustDeviceRequest, request.data)
        gate = self.platform.gate
        if not gate.has_recent_verification(body.user_id, body.otp_id):
            return error_response(ValidationError('A recent successful verification is required.'))
        device = gate.trust_device(body.user_id, body.device_id, charge_context(request, body.device_id))
        return Response({'deviceId': device.device_fingerprint, 'trustedUntil': device.trusted_until},
                        status=status.HTTP_200_OK)


class SecuritySettingsView(PlatformAPIView):
    # Optional session or basic auth; a staff user may lower settings without a code.
    authentication_classes = APIView.authentication_classes

    @staticmethod
    def _payload(current) -> Dict[str, Any]:
        return {
            'userId': current.user_id,
            'always2FA': current.always_2fa,
            'tfaThreshold': str(current.tfa_threshold) if current.tfa_threshold is not None else None,
            'tfaMethod': current.tfa_method,
        }

    def get(self, request, user_id, *args, **kwargs):
        return Response(self._payload(self.platform.gate.get_security_settings(user_id)))

    def post(self, request, user_id, *args, **kwargs):
        body = _parse(SecuritySettingsRequest, request.data)
        user = request.user
        admin_id = user.get_username() if user.is_authenticated and user.is_staff else None
        current = self.platform.gate.change_security_settings(
            user_id,
            always_2fa=body.always_2fa,
            tfa_threshold=body.tfa_threshold,
            otp_id=body.otp_id,
            admin_id=admin_id,
            context=charge_context(request),
        )
        return Response(self._payload(current))


class FeeQuoteView(PlatformAPIView):
    def get(self, request, *args, **kwargs):
        query = _parse(FeeQuoteQuery, request.query_params)
        return Response(calculate_fees(query.amount, query.method).as_dict())


# Disputes

class DisputeOpenView(PlatformAPIView):
    def post(self, request, *args, **kwargs):
        body = _parse(OpenDisputeRequest, request.data)
        dispute = self.platform.disputes.open_dispute(body.payment_id, body.reason, body.client_id)
        return Response(dispute_payload(dispute), status=status.HTTP_201_CREATED)


class DisputeInvestigateView(AdminAPIView):
    def post(self, request, dispute_id, *args, **kwargs):
        dispute = self.platform.disputes.mark_investigating(dispute_id, self.admin_id())
        return Response(dispute_payload(dispute))


class DisputeResolveView(AdminAPIView):
    def post(self, request, dispute_id, *args, **kwargs):
        body = _parse(ResolveDisputeRequest, request.data)
        dispute = self.platform.disputes.resolve_dispute(
            dispute_id, body.resolution, refund_amount=body.refund_amount, admin_id=self.admin_id())
        return Response(dispute_payload(dispute))


class DisputeCloseView(AdminAPIView):
    def post(self, request, dispute_id, *args, **kwargs):
        body = _parse(CloseDisputeRequest, request.data)
        dispute = self.platform.disputes.close_dispute(dispute_id, self.admin_id(), notes=body.notes)
        return Response(dispute_payload(dispute))


# Compliance and audit

class ComplianceReportView(AdminAPIView):
    def get(self, request, *args, **kwargs):
        query = _parse(ComplianceReportQuery, request.query_params)
        report = self.platform.compliance.generate_report(
            _aware(query.period_start), _aware(query.period_end), generated_by=self.admin_id())
        return Response(report)


class AuditTrailView(AdminAPIView):
    def get(self, request, entity_id, *args, **kwargs):
        event_types = [
            event_type
            for value in request.query_params.getlist('eventTypes')
            for event_type in value.split(',') if event_type
        ]
        query = _parse(AuditTrailQuery, {
            'eventTypes': event_types,
            'start': request.query_params.get('start'),
            'end': request.query_params.get('end'),
        })
        events = self.platform.audit.get_audit_trail(
            entity_id, event_types=query.event_types, start=_aware(query.start), end=_aware(query.end))
        return Response({'entityId': entity_id, 'events': [audit_payload(event) for event in events]})


class AuditChainView(AdminAPIView):
    def get(self, request, *args, **kwargs):
        report = self.platform.audit.verify_chain()
        return Response({'valid': report.valid, 'checked': report.checked,
                         'brokenAt': report.broken_at, 'reason': report.reason})


class MonitoringStatsView(AdminAPIView):
    def get(self, request, *args, **kwargs):
        return Response(self.platform.monitor.get_monitoring_stats())
