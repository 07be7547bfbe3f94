from decimal import Decimal

from django.test import TestCase
from django.urls import reverse

from orders.exceptions import NotFound, OutOfStock, ValidationError
from orders.factories import add_line, make_book, make_user
from . import cart, inventory
from .models import Book, CartItem


class InventoryTests(TestCase):
    def setUp(self):
        self.book = make_book(stock=3)

    def test_reserve_decrements_stock(self):
        inventory.reserve(self.book.pk, 2)
        self.assertEqual(inventory.get_stock(self.book.pk), 1)

    def test_reserve_more_than_available_leaves_stock_alone(self):
        with self.assertRaises(OutOfStock) as ctx:
            inventory.reserve(self.book.pk, 4)
        self.assertEqual(ctx.exception.available, 3)
        self.assertEqual(inventory.get_stock(self.book.pk), 3)

    def test_last_unit_goes_to_exactly_one_buyer(self):
        book = make_book(title="Last copy", stock=1)
        inventory.reserve(book.pk, 1)
        with self.assertRaises(OutOfStock):
            inventory.reserve(book.pk, 1)
        self.assertEqual(inventory.get_stock(book.pk), 0)

    def test_release_restores_stock(self):
        inventory.reserve(self.book.pk, 3)
        inventory.release(self.book.pk, 3)
        self.assertEqual(inventory.get_stock(self.book.pk), 3)

    def test_release_of_missing_book_is_a_no_op(self):
        inventory.release(999999, 2)

    def test_reserve_lines_is_all_or_nothing(self):
        other = make_book(title="Emma", stock=1)
        with self.assertRaises(OutOfStock):
            inventory.reserve_lines([(self.book.pk, 2), (other.pk, 2)])
        self.assertEqual(inventory.get_stock(self.book.pk), 3)
        self.assertEqual(inventory.get_stock(other.pk), 1)

    def test_non_positive_quantity_rejected(self):
        with self.assertRaises(ValidationError):
            inventory.reserve(self.book.pk, 0)

    def test_sellable_price(self):
        self.assertEqual(inventory.get_sellable_price(self.book.pk), Decimal("50.00"))
        Book.objects.filter(pk=self.book.pk).update(is_sellable=False)
        with self.assertRaises(ValidationError):
            inventory.get_sellable_price(self.book.pk)


class CartTests(TestCase):
    def setUp(self):
        self.user = make_user()
        self.book = make_book(stock=5)

    def test_add_snapshots_price_and_merges_lines(self):
        cart.add_to_cart(self.user, self.book.pk, 2)
        item = cart.add_to_cart(self.user, self.book.pk, 1)
        self.assertEqual(item.quantity, 3)
        self.assertEqual(item.unit_price, Decimal("50.00"))
        self.assertEqual(CartItem.objects.filter(user=self.user).count(), 1)

    def test_add_beyond_stock_rejected(self):
        with self.assertRaises(OutOfStock):
            cart.add_to_cart(self.user, self.book.pk, 6)

    def test_add_unknown_book(self):
        with self.assertRaises(NotFound):
            cart.add_to_cart(self.user, 424242, 1)

    def test_update_and_remove(self):
        cart.add_to_cart(self.user, self.book.pk, 1)
        self.assertEqual(cart.update_quantity(self.user, self.book.pk, 4).quantity, 4)
        with self.assertRaises(ValidationError):
            cart.update_quantity(self.user, self.book.pk, 0)
        cart.remove_from_cart(self.user, self.book.pk)
        self.assertEqual(cart.get_cart(self.user), [])
        with self.assertRaises(NotFound):
            cart.remove_from_cart(self.user, self.book.pk)

    def test_sync_refreshes_stale_price_and_caps_quantity(self):
        add_line(self.user, self.book, 4)
        sold_out = make_book(title="Gone", stock=0)
        add_line(self.user, sold_out, 1)
        Book.objects.filter(pk=self.book.pk).update(price=Decimal("55.00"), stock_for_sale=2)

        changes = cart.sync_cart(self.user)

        self.assertEqual(len(changes), 3)
        item = CartItem.objects.get(user=self.user)
        self.assertEqual(item.book_id, self.book.pk)
        self.assertEqual(item.quantity, 2)
        self.assertEqual(item.unit_price, Decimal("55.00"))


class CartViewTests(TestCase):
    def setUp(self):
        self.user = make_user()
        self.book = make_book(stock=5)
        self.client.force_login(self.user)

    def test_add_and_list(self):
        resp = self.client.post(
            reverse("catalog:cart_add"), data={"book_id": self.book.pk, "quantity": 2}, content_type="application/json"
        )
        self.assertEqual(resp.status_code, 201)
        body = self.client.get(reverse("catalog:cart")).json()
        self.assertEqual(body["items"][0]["quantity"], 2)
        self.assertEqual(body["items"][0]["line_total"], "100.00")

    def test_out_of_stock_maps_to_409(self):
        resp = self.client.post(
            reverse("catalog:cart_add"), data={"book_id": self.book.pk, "quantity": 9}, content_type="application/json"
        )
        self.assertEqual(resp.status_code, 409)
        self.assertEqual(resp.json()["error"], "out_of_stock")

    def test_delete_line(self):
        add_line(self.user, self.book, 1)
        resp = self.client.delete(reverse("catalog:cart_item", args=[self.book.pk]))
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["items"], [])
