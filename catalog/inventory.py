"""Atomic stock reservation for sellable books.

Every stock mutation is a single conditional UPDATE built from an ``F()``
expression, e.g. ``UPDATE book SET stock_for_sale = stock_for_sale - 2
WHERE id = 7 AND stock_for_sale >= 2``. The row count tells us whether the
reservation succeeded; stock is never read into Python and written back.
"""

import logging
from decimal import Decimal
from typing import Iterable, Tuple

from django.db import transaction
from django.db.models import F

from orders.exceptions import OutOfStock, ValidationError
from .models import Book

logger = logging.getLogger(__name__)


def get_sellable_price(book_id: int) -> Decimal:
    book = Book.objects.filter(pk=book_id).only("price", "is_sellable").first()
    if book is None or not book.is_sellable:
        raise ValidationError(f"Book {book_id} is not available for sale")
    return book.price


def get_stock(book_id: int) -> int:
    stock = Book.objects.filter(pk=book_id).values_list("stock_for_sale", flat=True).first()
    return int(stock or 0)


def adjust_stock(book_id: int, delta: int) -> bool:
    """Apply ``delta`` to the book's stock in one statement.

    Returns False when the book does not exist or when the change would take
    stock below zero; nothing is written in that case.
    """
    qs = Book.objects.filter(pk=book_id)
    if delta < 0:
        qs = qs.filter(stock_for_sale__gte=-delta)
    return qs.update(stock_for_sale=F("stock_for_sale") + delta) == 1


def reserve(book_id: int, qty: int) -> None:
    if qty < 1:
        raise ValidationError(f"Quantity must be at least 1 (got {qty})")
    if not adjust_stock(book_id, -qty):
        available = get_stock(book_id)
        logger.info("Reservation rejected book=%s requested=%s available=%s", book_id, qty, available)
        raise OutOfStock(book_id, qty, available)


def release(book_id: int, qty: int) -> None:
    if qty < 1:
        return
    if not adjust_stock(book_id, qty):
        # book row gone; nothing to give the stock back to
        logger.warning("Stock release skipped, book %s not found (qty=%s)", book_id, qty)


def _sorted(lines: Iterable[Tuple[int, int]]):
    # consistent lock order across concurrent multi-line checkouts
    return sorted(lines, key=lambda line: line[0])


@transaction.atomic
def reserve_lines(lines: Iterable[Tuple[int, int]]) -> None:
    """Reserve every ``(book_id, qty)`` line or none of them."""
    for book_id, qty in _sorted(lines):
        reserve(book_id, qty)


@transaction.atomic
def release_lines(lines: Iterable[Tuple[int, int]]) -> None:
    for book_id, qty in _sorted(lines):
        release(book_id, qty)
