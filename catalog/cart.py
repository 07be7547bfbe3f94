import logging

from django.conf import settings
from django.db import transaction

from orders.exceptions import NotFound, OutOfStock, ValidationError
from .models import Book, CartItem

logger = logging.getLogger(__name__)


def _max_qty() -> int:
    return getattr(settings, "MAX_ITEM_QUANTITY", 50)


def _sellable_book(book_id: int) -> Book:
    book = Book.objects.filter(pk=book_id).first()
    if book is None:
        raise NotFound(f"Book not found: {book_id}")
    if not book.is_sellable:
        raise ValidationError(f"Book is not available for sale: {book.title}")
    return book


def _check_quantity(book: Book, qty: int) -> None:
    if qty < 1:
        raise ValidationError("Quantity must be at least 1")
    if qty > _max_qty():
        raise ValidationError(f"Cannot add more than {_max_qty()} copies per item")
    if qty > book.stock_for_sale:
        raise OutOfStock(book.pk, qty, book.stock_for_sale)


def get_cart(user):
    return list(CartItem.objects.filter(user=user).select_related("book"))


@transaction.atomic
def add_to_cart(user, book_id: int, qty: int = 1) -> CartItem:
    book = _sellable_book(book_id)
    item = CartItem.objects.select_for_update().filter(user=user, book=book).first()
    new_qty = qty + (item.quantity if item else 0)
    _check_quantity(book, new_qty)
    if item is None:
        item = CartItem.objects.create(user=user, book=book, quantity=new_qty, unit_price=book.price)
    else:
        # quantity only; a stale price stays stale until sync_cart
        item.quantity = new_qty
        item.save(update_fields=["quantity", "updated_at"])
    logger.info("Cart user=%s book=%s qty=%s", user.pk, book.pk, new_qty)
    return item


@transaction.atomic
def update_quantity(user, book_id: int, qty: int) -> CartItem:
    item = CartItem.objects.select_for_update().select_related("book").filter(user=user, book_id=book_id).first()
    if item is None:
        raise NotFound(f"Cart item not found: {book_id}")
    _check_quantity(item.book, qty)
    item.quantity = qty
    item.save(update_fields=["quantity", "updated_at"])
    return item


def remove_from_cart(user, book_id: int) -> None:
    deleted, _ = CartItem.objects.filter(user=user, book_id=book_id).delete()
    if not deleted:
        raise NotFound(f"Cart item not found: {book_id}")


def clear_cart(user) -> None:
    CartItem.objects.filter(user=user).delete()


@transaction.atomic
def sync_cart(user) -> list[str]:
    """Bring the cart in line with the catalog and report what changed.

    Unsellable or sold-out lines are dropped, quantities are capped at the
    current stock and stale price snapshots take the current price.
    """
    changes = []
    for item in CartItem.objects.select_for_update().select_related("book").filter(user=user):
        book = item.book
        if not book.is_sellable or book.stock_for_sale <= 0:
            item.delete()
            changes.append(f"Removed unavailable item: {book.title}")
            continue
        fields = []
        if item.quantity > book.stock_for_sale:
            item.quantity = book.stock_for_sale
            fields.append("quantity")
            changes.append(f"Reduced {book.title} to {book.stock_for_sale}")
        if item.unit_price != book.price:
            changes.append(f"Price of {book.title} changed from {item.unit_price} to {book.price}")
            item.unit_price = book.price
            fields.append("unit_price")
        if fields:
            item.save(update_fields=fields + ["updated_at"])
    if changes:
        logger.info("Cart synced user=%s changes=%s", user.pk, len(changes))
    return changes
