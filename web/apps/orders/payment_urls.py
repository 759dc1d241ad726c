from django.urls import path

from .views import MobileInitiateView, MobileReconcileView, MobileRetryView, MobileStatusView, MobileWebhookView

app_name = "payments"

urlpatterns = [
    path("mobile/initiate/", MobileInitiateView.as_view(), name="mobile-initiate"),
    path("mobile/status/", MobileStatusView.as_view(), name="mobile-status"),
    path("mobile/retry/", MobileRetryView.as_view(), name="mobile-retry"),
    path("mobile/webhook/", MobileWebhookView.as_view(), name="mobile-webhook"),
    path("mobile/reconcile/", MobileReconcileView.as_view(), name="mobile-reconcile"),
]
