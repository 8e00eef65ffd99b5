from django.urls import path

from .views import InitiatePaymentView, MpesaCallbackView, PaymentStatusView, VerifyPaymentView

app_name = "payments"

urlpatterns = [
    path("initiate/", InitiatePaymentView.as_view(), name="initiate"),
    path("callback/", MpesaCallbackView.as_view(), name="callback"),
    path("status/<str:checkout_id>/", PaymentStatusView.as_view(), name="status"),
    path("verify/", VerifyPaymentView.as_view(), name="verify"),
]
