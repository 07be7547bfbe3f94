import logging

from django.contrib.admin.views.decorators import staff_member_required
from django.contrib.auth.decorators import login_required
from django.http import JsonResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_GET, require_http_methods, require_POST

from orders.exceptions import (
    AmountMismatch,
    CallbackRejected,
    SettlementError,
    SignatureInvalid,
    UnknownTransaction,
)
from . import services
from .utils import client_ip, error_response, json_body

logger = logging.getLogger(__name__)

# VNPay IPN acknowledgement codes
IPN_OK = ("00", "Confirm Success")
IPN_ALREADY_CONFIRMED = ("02", "Order already confirmed")
IPN_UNKNOWN = ("01", "Order not found")
IPN_INVALID_AMOUNT = ("04", "Invalid amount")
IPN_BAD_SIGNATURE = ("97", "Invalid signature")
IPN_ERROR = ("99", "Unknown error")


def _ipn(reply):
    code, message = reply
    return JsonResponse({"RspCode": code, "Message": message})


@require_GET
def vnpay_return_view(request):
    """Browser lands here after the gateway page. Shows the outcome, never internals."""
    try:
        outcome = services.process_callback(request.GET.dict(), "return")
    except CallbackRejected:
        return JsonResponse({"ok": False, "error": "invalid_callback", "detail": "Payment result could not be verified"}, status=400)

    payment = outcome.payment
    return JsonResponse({
        "ok": outcome.succeeded,
        "status": payment.status,
        "order_code": payment.order.order_code,
        "payment_code": payment.payment_code,
    })


@csrf_exempt
@require_http_methods(["GET", "POST"])
def vnpay_ipn_view(request):
    params = request.GET.dict() if request.method == "GET" else (request.POST.dict() or request.GET.dict())
    try:
        outcome = services.process_callback(params, "ipn")
    except SignatureInvalid:
        return _ipn(IPN_BAD_SIGNATURE)
    except UnknownTransaction:
        return _ipn(IPN_UNKNOWN)
    except AmountMismatch:
        return _ipn(IPN_INVALID_AMOUNT)
    except Exception:
        logger.exception("IPN processing crashed txn_ref=%s", params.get("vnp_TxnRef", ""))
        return _ipn(IPN_ERROR)
    return _ipn(IPN_ALREADY_CONFIRMED if outcome.duplicate else IPN_OK)


@login_required
@require_POST
def create_payment_view(request, order_code: str):
    """Start (or retry) paying for one of the caller's orders."""
    body = json_body(request) or {}
    try:
        payment = services.start_payment(order_code, request.user, client_ip(request), locale=body.get("locale"))
    except SettlementError as e:
        return error_response(e)
    return JsonResponse({
        "ok": True,
        "payment_code": payment.payment_code,
        "payment_url": payment.payment_url,
        "expires_at": payment.expires_at.isoformat(),
    }, status=201)


def _payment_json(payment):
    return {
        "payment_code": payment.payment_code,
        "order_code": payment.order.order_code,
        "status": payment.status,
        "amount": str(payment.amount),
        "currency": payment.currency,
        "expires_at": payment.expires_at.isoformat(),
        "paid_at": payment.paid_at.isoformat() if payment.paid_at else None,
    }


@login_required
@require_GET
def payment_detail_view(request, payment_code: str):
    try:
        payment = services.get_payment(payment_code, user=request.user)
    except SettlementError as e:
        return error_response(e)
    return JsonResponse(_payment_json(payment))


@login_required
@require_GET
def order_payments_view(request, order_code: str):
    """All payment attempts for one of the caller's orders, newest first."""
    try:
        payments = list(services.list_order_payments(order_code, user=request.user))
    except SettlementError as e:
        return error_response(e)
    return JsonResponse({"order_code": order_code, "payments": [_payment_json(p) for p in payments]})


@staff_member_required
@require_GET
def payment_by_txn_ref_view(request, txn_ref: str):
    try:
        payment = services.get_payment_by_txn_ref(txn_ref)
    except SettlementError as e:
        return error_response(e)
    return JsonResponse({**_payment_json(payment), "txn_ref": payment.txn_ref,
                         "gateway_transaction_no": payment.gateway_transaction_no})


@staff_member_required
@require_POST
def refund_view(request, payment_code: str):
    body = json_body(request)
    if body is None:
        return JsonResponse({"ok": False, "error": "validation_error", "detail": "Invalid JSON body"}, status=400)
    try:
        payment = services.refund_payment(
            payment_code,
            reason=body.get("reason", ""),
            amount=body.get("amount"),
            requested_by=request.user.get_username(),
            client_ip=client_ip(request),
        )
    except SettlementError as e:
        return error_response(e)
    return JsonResponse({
        "ok": True,
        "payment_code": payment.payment_code,
        "status": payment.status,
        "refunded_amount": str(payment.refunded_amount),
        "order_status": payment.order.status,
        "order_payment_status": payment.order.payment_status,
    })


@staff_member_required
@require_GET
def status_check_view(request, payment_code: str):
    try:
        result = services.check_payment_status(payment_code, client_ip=client_ip(request))
    except SettlementError as e:
        return error_response(e)
    return JsonResponse({"ok": True, **result})


@require_GET
def sweeper_health_view(request):
    health = services.sweeper_health()
    return JsonResponse(health, status=503 if health["stale"] else 200)
