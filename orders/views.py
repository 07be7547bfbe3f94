from django.conf import settings
from django.contrib.admin.views.decorators import staff_member_required
from django.contrib.auth.decorators import login_required
from django.http import JsonResponse
from django.views.decorators.http import require_GET, require_POST

from payments.utils import client_ip, error_response, json_body
from . import services
from .exceptions import SettlementError


def _payment_json(payment):
    return {
        "payment_code": payment.payment_code,
        "status": payment.status,
        "amount": str(payment.amount),
        "expires_at": payment.expires_at.isoformat(),
        # only an open attempt can still be paid
        "payment_url": payment.payment_url if payment.is_pending else None,
    }


def _page_number(request) -> int:
    try:
        page = int(request.GET.get("page", "1"))
    except ValueError:
        return 1
    return max(page, 1)


def _order_json(order, with_items=True):
    data = {
        "order_code": order.order_code,
        "status": order.status,
        "payment_status": order.payment_status,
        "sub_total": str(order.sub_total),
        "shipping_fee": str(order.shipping_fee),
        "discount": str(order.discount),
        "tax": str(order.tax),
        "total": str(order.total),
        "currency": order.currency,
        "shipping_address": order.shipping_address,
        "created_at": order.created_at.isoformat(),
    }
    if with_items:
        data["items"] = [
            {
                "book_id": item.book_id,
                "title": item.title,
                "quantity": item.quantity,
                "unit_price": str(item.unit_price),
                "line_total": str(item.line_total),
            }
            for item in order.items.all()
        ]
        data["payments"] = [
            _payment_json(p) for p in sorted(order.payments.all(), key=lambda p: p.created_at, reverse=True)
        ]
    return data


@login_required
@require_GET
def totals_view(request):
    return JsonResponse(services.calculate_order_totals(request.user))


@login_required
@require_POST
def checkout_view(request):
    body = json_body(request)
    if body is None:
        return JsonResponse({"ok": False, "error": "validation_error", "detail": "Invalid JSON body"}, status=400)
    try:
        order, payment = services.checkout(
            request.user,
            body.get("shipping") or {},
            client_ip=client_ip(request),
            note=body.get("note", ""),
            locale=body.get("locale"),
        )
    except SettlementError as e:
        return error_response(e)
    return JsonResponse({
        "ok": True,
        "order": _order_json(order),
        "payment_code": payment.payment_code,
        "payment_url": payment.payment_url,
        "expires_at": payment.expires_at.isoformat(),
    }, status=201)


@login_required
@require_GET
def order_list_view(request):
    """Order history for the caller, paged. ``?current=1`` lists only orders still in flight."""
    qs = services.list_orders(
        request.user,
        status=request.GET.get("status"),
        current=request.GET.get("current") in ("1", "true"),
    )
    page = _page_number(request)
    page_size = getattr(settings, "ORDER_PAGE_SIZE", 10)
    start = (page - 1) * page_size
    end = start + page_size
    total = qs.count()
    return JsonResponse({
        "orders": [_order_json(o, with_items=False) for o in qs[start:end]],
        "page": page,
        "total": total,
        "has_next": end < total,
        "has_prev": start > 0,
    })


@login_required
@require_GET
def order_detail_view(request, order_code: str):
    try:
        order = services.get_order(order_code, user=request.user)
    except SettlementError as e:
        return error_response(e)
    return JsonResponse(_order_json(order))


@login_required
@require_POST
def cancel_view(request, order_code: str):
    try:
        order = services.cancel_order(order_code, user=request.user)
    except SettlementError as e:
        return error_response(e)
    return JsonResponse({"ok": True, "order_code": order.order_code, "status": order.status})


@login_required
@require_POST
def reorder_view(request, order_code: str):
    try:
        preview = services.reorder(order_code, request.user)
    except SettlementError as e:
        return error_response(e)
    return JsonResponse(preview)


@staff_member_required
@require_POST
def advance_view(request, order_code: str):
    body = json_body(request) or {}
    try:
        order = services.advance_order(order_code, body.get("status", ""))
    except SettlementError as e:
        return error_response(e)
    return JsonResponse({"ok": True, "order_code": order.order_code, "status": order.status})
