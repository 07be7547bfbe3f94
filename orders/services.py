import logging
from typing import Any, Dict, Optional

from django.conf import settings
from django.db import transaction

from catalog import inventory
from catalog.models import Book, CartItem
from .exceptions import InvalidTransition, NotFound, OrderLimitExceeded, ValidationError
from .models import Order, OrderItem, OrderStatus, SETTLED_PAYMENT_STATUSES
from .totals import PricingPolicy, calculate_totals
from .utils import generate_order_code

logger = logging.getLogger(__name__)

REQUIRED_SHIPPING_FIELDS = ("address_line1", "city")
FULFILMENT_STATUSES = {OrderStatus.PROCESSING, OrderStatus.SHIPPED, OrderStatus.DELIVERED}
REORDERABLE_STATUSES = {OrderStatus.DELIVERED, OrderStatus.CANCELLED, OrderStatus.REFUNDED}
CURRENT_STATUSES = (OrderStatus.PENDING_PAYMENT, OrderStatus.PAID, OrderStatus.PROCESSING, OrderStatus.SHIPPED)


def _line_errors(items) -> list[str]:
    errors = []
    max_qty = getattr(settings, "MAX_ITEM_QUANTITY", 50)
    for item in items:
        book = item.book
        if not book.is_sellable:
            errors.append(f"Book not available for sale: {book.title}")
        if item.quantity > max_qty:
            errors.append(f"Cannot order more than {max_qty} copies of {book.title}")
        if item.unit_price != book.price:
            errors.append(f"Price changed for {book.title}: {item.unit_price} -> {book.price}")
    return errors


def _clean_shipping(shipping: Optional[Dict[str, Any]]) -> Dict[str, str]:
    shipping = {k: str(v).strip() for k, v in (shipping or {}).items() if v is not None}
    missing = [k for k in REQUIRED_SHIPPING_FIELDS if not shipping.get(k)]
    if missing:
        raise ValidationError(f"Missing shipping fields: {', '.join(missing)}")
    return {
        "shipping_address_line1": shipping["address_line1"][:255],
        "shipping_address_line2": shipping.get("address_line2", "")[:255],
        "shipping_city": shipping["city"][:128],
        "shipping_postal_code": shipping.get("postal_code", "")[:20],
        "shipping_country": (shipping.get("country") or "VN")[:2].upper(),
    }


def _check_pending_limit(user) -> None:
    limit = getattr(settings, "MAX_PENDING_ORDERS", 0)
    if limit and Order.objects.filter(user=user, status=OrderStatus.PENDING_PAYMENT).count() >= limit:
        raise OrderLimitExceeded(limit)


def calculate_order_totals(user) -> Dict[str, Any]:
    """Checkout preview for the user's cart. Never mutates anything."""
    items = list(CartItem.objects.filter(user=user).select_related("book"))
    if not items:
        return {"items": [], "totals": None, "errors": ["Cart is empty"], "can_checkout": False}

    errors = _line_errors(items)
    for item in items:
        if item.quantity > item.book.stock_for_sale:
            errors.append(f"Insufficient stock for: {item.book.title}")
    totals = calculate_totals(items, PricingPolicy.from_settings())
    return {
        "items": [
            {
                "book_id": item.book_id,
                "title": item.book.title,
                "quantity": item.quantity,
                "unit_price": str(item.unit_price),
                "current_price": str(item.book.price),
                "stale": item.is_stale,
                "line_total": str(item.line_total),
            }
            for item in items
        ],
        "totals": totals.as_dict(),
        "errors": errors,
        "can_checkout": not errors,
    }


@transaction.atomic
def create_order_from_cart(user, shipping: Dict[str, Any], note: str = "") -> Order:
    """Turn the user's cart into a PENDING_PAYMENT order.

    Stock for every line is reserved in the same transaction as the order
    row. Any failure (empty cart, stale prices, out of stock) rolls back the
    whole thing and leaves the cart as it was.
    """
    items = list(
        CartItem.objects.select_for_update(of=("self",))
        .select_related("book")
        .filter(user=user)
        .order_by("book_id")
    )
    if not items:
        raise ValidationError("Cart is empty")
    _check_pending_limit(user)

    errors = _line_errors(items)
    if errors:
        raise ValidationError("Cart cannot be checked out", errors)

    address = _clean_shipping(shipping)
    policy = PricingPolicy.from_settings()
    totals = calculate_totals(items, policy)

    inventory.reserve_lines([(item.book_id, item.quantity) for item in items])

    order = Order.objects.create(
        order_code=generate_order_code(),
        user=user,
        sub_total=totals.sub_total,
        shipping_fee=totals.shipping_fee,
        discount=totals.discount,
        tax=totals.tax,
        total=totals.total,
        currency=totals.currency,
        customer_note=(note or "")[:2000],
        **address,
    )
    OrderItem.objects.bulk_create([
        OrderItem(
            order=order,
            book=item.book,
            title=item.book.title,
            isbn=item.book.isbn,
            quantity=item.quantity,
            unit_price=item.unit_price,
            line_total=item.unit_price * item.quantity,
        )
        for item in items
    ])
    CartItem.objects.filter(pk__in=[item.pk for item in items]).delete()

    logger.info("Order %s created user=%s total=%s %s", order.order_code, user.pk, order.total, order.currency)
    return order


def checkout(user, shipping: Dict[str, Any], client_ip: str, note: str = "", locale: Optional[str] = None):
    """Create the order and its first payment attempt atomically.

    Returns ``(order, payment)``; ``payment.payment_url`` is the signed
    gateway redirect.
    """
    from payments.services import create_payment

    with transaction.atomic():
        order = create_order_from_cart(user, shipping, note=note)
        payment = create_payment(order, client_ip=client_ip, locale=locale)
    return order, payment


def get_order(order_code: str, user=None) -> Order:
    qs = Order.objects.filter(order_code=order_code)
    if user is not None:
        qs = qs.filter(user=user)
    order = qs.prefetch_related("items", "payments").first()
    if order is None:
        raise NotFound(f"Order not found: {order_code}")
    return order


def list_orders(user, status: Optional[str] = None, current: bool = False):
    """The user's orders, newest first. ``current`` keeps only orders still in flight."""
    qs = Order.objects.filter(user=user)
    if current:
        qs = qs.filter(status__in=CURRENT_STATUSES)
    if status:
        qs = qs.filter(status=status)
    return qs.order_by("-created_at", "-id").prefetch_related("items")


def _lock_order(order_code: str, user=None) -> Order:
    qs = Order.objects.select_for_update().filter(order_code=order_code)
    if user is not None:
        qs = qs.filter(user=user)
    order = qs.first()
    if order is None:
        raise NotFound(f"Order not found: {order_code}")
    return order


def release_order_stock(order: Order) -> None:
    inventory.release_lines([(item.book_id, item.quantity) for item in order.items.all()])


@transaction.atomic
def cancel_order(order_code: str, user=None) -> Order:
    from payments.models import PaymentStatus

    order = _lock_order(order_code, user)
    if order.payment_status in SETTLED_PAYMENT_STATUSES or order.payments.filter(
        status__in=[PaymentStatus.COMPLETED, PaymentStatus.REFUNDED]
    ).exists():
        raise InvalidTransition(
            "Order", order.status, OrderStatus.CANCELLED, "order has been paid, use a refund instead"
        )
    pending = order.payments.filter(status=PaymentStatus.PENDING).first()
    if pending is not None:
        raise InvalidTransition(
            "Order", order.status, OrderStatus.CANCELLED,
            f"payment {pending.payment_code} is in progress until {pending.expires_at:%Y-%m-%d %H:%M:%S}",
        )

    order.transition_to(OrderStatus.CANCELLED)
    release_order_stock(order)
    logger.info("Order %s cancelled", order.order_code)
    return order


@transaction.atomic
def advance_order(order_code: str, new_status: str) -> Order:
    """Fulfilment transitions: PAID -> PROCESSING -> SHIPPED -> DELIVERED."""
    if new_status not in FULFILMENT_STATUSES:
        raise ValidationError(f"Unsupported fulfilment status: {new_status}")
    order = _lock_order(order_code)
    previous = order.status
    order.transition_to(new_status)
    logger.info("Order %s %s -> %s", order.order_code, previous, new_status)
    return order


@transaction.atomic
def reorder(order_code: str, user) -> Dict[str, Any]:
    """Refill the cart from a finished order at today's prices."""
    order = get_order(order_code, user)
    if order.status not in REORDERABLE_STATUSES:
        raise ValidationError(f"Order {order_code} cannot be reordered while {order.status}")

    max_qty = getattr(settings, "MAX_ITEM_QUANTITY", 50)
    CartItem.objects.filter(user=user).delete()
    books = Book.objects.in_bulk([item.book_id for item in order.items.all()])
    for item in order.items.all():
        book = books.get(item.book_id)
        if book is None or not book.is_sellable or book.stock_for_sale <= 0:
            continue
        CartItem.objects.create(
            user=user,
            book=book,
            quantity=min(item.quantity, book.stock_for_sale, max_qty),
            unit_price=book.price,
        )
    return calculate_order_totals(user)
