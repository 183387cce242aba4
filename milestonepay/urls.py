from django.urls import path

from milestonepay import views

app_name = 'milestonepay'

urlpatterns = [
    path('authorizations', views.AuthorizationCreateView.as_view(), name='authorization-create'),
    path('authorizations/<uuid:authorization_id>/revoke', views.AuthorizationRevokeView.as_view(),
         name='authorization-revoke'),
    path('milestones/batch-approve', views.BatchApproveView.as_view(), name='milestone-batch-approve'),
    path('milestones/<int:milestone_id>/approve', views.MilestoneApproveView.as_view(), name='milestone-approve'),
    path('verification/send', views.SendVerificationCodeView.as_view(), name='verification-send'),
    path('verification/verify', views.VerifyCodeView.as_view(), name='verification-verify'),
    path('devices/trust', views.TrustDeviceView.as_view(), name='device-trust'),
    path('security-settings/<str:user_id>', views.SecuritySettingsView.as_view(), name='security-settings'),
    path('fees', views.FeeQuoteView.as_view(), name='fee-quote'),
    path('disputes', views.DisputeOpenView.as_view(), name='dispute-open'),
    path('disputes/<uuid:dispute_id>/investigate', views.DisputeInvestigateView.as_view(),
         name='dispute-investigate'),
    path('disputes/<uuid:dispute_id>/resolve', views.DisputeResolveView.as_view(), name='dispute-resolve'),
    path('disputes/<uuid:dispute_id>/close', views.DisputeCloseView.as_view(), name='dispute-close'),
    path('compliance/report', views.ComplianceReportView.as_view(), name='compliance-report'),
    path('audit/verify', views.AuditChainView.as_view(), name='audit-verify'),
    path('audit/<str:entity_id>', views.AuditTrailView.as_view(), name='audit-trail'),
    path('monitoring/stats', views.MonitoringStatsView.as_view(), name='monitoring-stats'),
]
