from django.test import TransactionTestCase

from orders.exceptions import OutOfStock
from orders.factories import make_book, run_concurrently
from . import inventory


class ConcurrentReservationTests(TransactionTestCase):
    def _reserve(self, book_id, qty):
        inventory.reserve(book_id, qty)
        return qty

    def test_equal_requests_never_oversell(self):
        book = make_book(stock=5)

        taken, errors = run_concurrently(self._reserve, [(book.pk, 2)] * 8)

        self.assertTrue(all(isinstance(e, OutOfStock) for e in errors), errors)
        self.assertEqual(len(taken), 2)
        self.assertEqual(len(errors), 6)
        self.assertEqual(inventory.get_stock(book.pk), 1)

    def test_mixed_requests_sum_within_stock(self):
        book = make_book(stock=6)
        requests = [(book.pk, qty) for qty in (1, 2, 3, 1, 2, 3, 4)]

        taken, errors = run_concurrently(self._reserve, requests)

        self.assertTrue(all(isinstance(e, OutOfStock) for e in errors), errors)
        self.assertEqual(len(taken) + len(errors), len(requests))
        self.assertLessEqual(sum(taken), 6)
        stock = inventory.get_stock(book.pk)
        self.assertGreaterEqual(stock, 0)
        self.assertEqual(stock, 6 - sum(taken))
