from django.contrib.auth.decorators import login_required
from django.http import JsonResponse
from django.views.decorators.http import require_GET, require_http_methods, require_POST

from orders.exceptions import SettlementError, ValidationError
from payments.utils import error_response, json_body
from . import cart


def _cart_json(items, changes=None):
    data = {
        "items": [
            {
                "book_id": item.book_id,
                "title": item.book.title,
                "quantity": item.quantity,
                "unit_price": str(item.unit_price),
                "line_total": str(item.line_total),
                "stale": item.is_stale,
            }
            for item in items
        ]
    }
    if changes is not None:
        data["changes"] = changes
    return data


def _int(body, key, default=None) -> int:
    try:
        return int(body.get(key, default))
    except (TypeError, ValueError):
        raise ValidationError(f"{key} must be an integer")


@login_required
@require_GET
def cart_view(request):
    return JsonResponse(_cart_json(cart.get_cart(request.user)))


@login_required
@require_POST
def cart_add_view(request):
    body = json_body(request) or {}
    try:
        cart.add_to_cart(request.user, _int(body, "book_id"), _int(body, "quantity", 1))
    except SettlementError as e:
        return error_response(e)
    return JsonResponse(_cart_json(cart.get_cart(request.user)), status=201)


@login_required
@require_http_methods(["POST", "DELETE"])
def cart_item_view(request, book_id: int):
    try:
        if request.method == "DELETE":
            cart.remove_from_cart(request.user, book_id)
        else:
            cart.update_quantity(request.user, book_id, _int(json_body(request) or {}, "quantity"))
    except SettlementError as e:
        return error_response(e)
    return JsonResponse(_cart_json(cart.get_cart(request.user)))


@login_required
@require_POST
def cart_sync_view(request):
    changes = cart.sync_cart(request.user)
    return JsonResponse(_cart_json(cart.get_cart(request.user), changes))
