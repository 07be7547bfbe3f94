from django.urls import path
from . import views
app_name = "payments"
urlpatterns = [
    path("vnpay/return", views.vnpay_return_view, name="vnpay_return"),
    path("vnpay/ipn", views.vnpay_ipn_view, name="vnpay_ipn"),  # configured in the VNPay merchant portal
    path("health/sweeper", views.sweeper_health_view, name="sweeper_health"),
    path("orders/<str:order_code>", views.order_payments_view, name="order_payments"),
    path("orders/<str:order_code>/pay", views.create_payment_view, name="create_payment"),
    path("txn/<str:txn_ref>", views.payment_by_txn_ref_view, name="by_txn_ref"),  # staff only
    path("<str:payment_code>", views.payment_detail_view, name="payment_detail"),
    path("<str:payment_code>/refund", views.refund_view, name="refund"),
    path("<str:payment_code>/status", views.status_check_view, name="status_check"),
]
