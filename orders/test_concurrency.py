from django.test import TransactionTestCase

from catalog.models import Book, CartItem
from payments.models import Payment
from . import services
from .exceptions import OutOfStock
from .factories import SHIPPING, add_line, make_book, make_user, run_concurrently
from .models import Order


class ConcurrentCheckoutTests(TransactionTestCase):
    def test_last_copy_sells_exactly_once(self):
        book = make_book(title="Last copy", stock=1)
        buyers = [make_user(f"buyer{i}") for i in range(4)]
        for user in buyers:
            add_line(user, book, 1)

        def buy(user):
            order, _ = services.checkout(user, SHIPPING, client_ip="10.0.0.1")
            return order

        orders, errors = run_concurrently(buy, [(user,) for user in buyers])

        self.assertEqual(len(orders), 1)
        self.assertEqual(len(errors), 3)
        self.assertTrue(all(isinstance(e, OutOfStock) for e in errors), errors)
        self.assertEqual(Book.objects.get(pk=book.pk).stock_for_sale, 0)
        self.assertEqual(Order.objects.count(), 1)
        self.assertEqual(Payment.objects.count(), 1)
        # the losing buyers keep their carts
        self.assertEqual(CartItem.objects.count(), 3)
