"""
Request bodies and query strings accepted by the API, in camelCase.
"""
from datetime import datetime
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class RequestModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)


class CreateAuthorizationRequest(RequestModel):
    contract_id: int = Field(alias='contractId')
    client_id: str = Field(alias='clientId', min_length=1)
    method: str
    max_per_milestone: Decimal = Field(alias='maxPerMilestone')
    total_authorized: Decimal = Field(alias='totalAuthorized')
    payment_method_ref: str = Field(alias='paymentMethodRef', min_length=1)
    terms_version: str = Field(alias='termsVersion', min_length=1)
    expires_at: Optional[datetime] = Field(default=None, alias='expiresAt')


class RevokeAuthorizationRequest(RequestModel):
    reason: str = ''
    revoked_by: Optional[str] = Field(default=None, alias='revokedBy')


class ApproveMilestoneRequest(RequestModel):
    user_id: str = Field(alias='userId', min_length=1)
    otp_code: Optional[str] = Field(default=None, alias='otpCode')
    device_id: Optional[str] = Field(default=None, alias='deviceId')


class BatchApproveRequest(RequestModel):
    user_id: str = Field(alias='userId', min_length=1)
    milestone_ids: List[int] = Field(alias='milestoneIds', min_length=1)
    code: str
    device_id: Optional[str] = Field(default=None, alias='deviceId')


class SendCodeRequest(RequestModel):
    user_id: str = Field(alias='userId', min_length=1)
    milestone_id: int = Field(alias='milestoneId')
    amount: Decimal = Field(gt=0)


class VerifyCodeRequest(RequestModel):
    user_id: str = Field(alias='userId', min_length=1)
    milestone_id: int = Field(alias='milestoneId')
    code: str


class TrustDeviceRequest(RequestModel):
    user_id: str = Field(alias='userId', min_length=1)
    device_id: str = Field(alias='deviceId', min_length=1)
    otp_id: int = Field(alias='otpId')


class OpenDisputeRequest(RequestModel):
    payment_id: UUID = Field(alias='paymentId')
    client_id: str = Field(alias='clientId', min_length=1)
    reason: str = Field(min_length=1)


class ResolveDisputeRequest(RequestModel):
    resolution: str = Field(min_length=1)
    refund_amount: Optional[Decimal] = Field(default=None, alias='refundAmount', gt=0)


class CloseDisputeRequest(RequestModel):
    notes: str = ''


class SecuritySettingsRequest(RequestModel):
    always_2fa: Optional[bool] = Field(default=None, alias='always2FA')
    tfa_threshold: Optional[Decimal] = Field(default=None, alias='tfaThreshold', ge=0)
    otp_id: Optional[int] = Field(default=None, alias='otpId')


class ComplianceReportQuery(RequestModel):
    period_start: datetime = Field(alias='periodStart')
    period_end: datetime = Field(alias='periodEnd')


class AuditTrailQuery(RequestModel):
    event_types: List[str] = Field(default_factory=list, alias='eventTypes')
    start: Optional[datetime] = None
    end: Optional[datetime] = None


class FeeQuoteQuery(RequestModel):
    amount: Decimal = Field(gt=0)
    method: str
