"""Small builders shared by the catalog, orders and payments tests."""

import itertools
import threading
from decimal import Decimal

from django.conf import settings
from django.contrib.auth import get_user_model
from django.db import connections

from catalog.models import Book, CartItem
from payments.integrations import vnpay

_isbn = itertools.count(9780000000001)

SHIPPING = {
    "address_line1": "12 Ly Thuong Kiet",
    "city": "Hanoi",
    "postal_code": "100000",
    "country": "vn",
}


def make_user(username="reader", **extra):
    return get_user_model().objects.create_user(
        username=username, email=f"{username}@example.com", password="pw-12345", **extra
    )


def make_book(title="Dune", price="50.00", stock=10, **extra):
    return Book.objects.create(
        title=title, isbn=str(next(_isbn)), price=Decimal(price), stock_for_sale=stock, **extra
    )


def add_line(user, book, qty=1, unit_price=None):
    return CartItem.objects.create(
        user=user, book=book, quantity=qty, unit_price=book.price if unit_price is None else Decimal(unit_price)
    )


def signed_callback(payment, response_code="00", transaction_status="00", amount=None, **extra):
    """Build callback params the way the gateway would sign them."""
    params = {
        "vnp_TmnCode": settings.VNPAY["TMN_CODE"],
        "vnp_TxnRef": payment.txn_ref,
        "vnp_Amount": vnpay.to_minor_units(payment.amount if amount is None else amount),
        "vnp_ResponseCode": response_code,
        "vnp_TransactionStatus": transaction_status,
        "vnp_TransactionNo": "14212345",
        "vnp_BankCode": "NCB",
        "vnp_PayDate": "20261019101500",
        "vnp_OrderInfo": payment.order_info,
    }
    params.update(extra)
    params["vnp_SecureHash"] = vnpay.sign(params, settings.VNPAY["HASH_SECRET"])
    return params


def run_concurrently(target, calls):
    """Call ``target(*args)`` for every entry of ``calls``, each on its own thread and connection.

    All threads are released together. Returns ``(results, errors)``.
    """
    barrier = threading.Barrier(len(calls), timeout=10)
    results, errors = [], []

    def worker(args):
        try:
            barrier.wait()
            results.append(target(*args))
        except Exception as e:
            errors.append(e)
        finally:
            connections.close_all()

    threads = [threading.Thread(target=worker, args=(args,)) for args in calls]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)
    return results, errors


def first_query(sql, *fragments):
    """Index of the first captured SQL statement containing every fragment, or None."""
    return next((i for i, q in enumerate(sql) if all(f in q for f in fragments)), None)
