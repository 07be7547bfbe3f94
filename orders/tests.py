from datetime import timedelta
from decimal import Decimal
from unittest import mock

from django.test import TestCase, override_settings
from django.utils import timezone
from django.urls import reverse

from catalog.models import Book, CartItem
from payments.models import Payment, PaymentStatus
from payments.services import create_payment
from . import services
from .exceptions import InvalidTransition, NotFound, OrderLimitExceeded, OutOfStock, ValidationError
from .factories import SHIPPING, add_line, make_book, make_user
from .models import Order, OrderPaymentStatus, OrderStatus

PRICING = {
    "FREE_SHIPPING_THRESHOLD": Decimal("100"),
    "SHIPPING_FEE": Decimal("30"),
    "DISCOUNT_THRESHOLD": Decimal("1000000"),
    "DISCOUNT_RATE": Decimal("0.05"),
    "TAX_RATE": Decimal("0.10"),
    "CURRENCY": "VND",
}


@override_settings(ORDER_PRICING=PRICING, MAX_PENDING_ORDERS=3)
class CheckoutTests(TestCase):
    def setUp(self):
        self.user = make_user()
        self.book = make_book(price="50.00", stock=5)

    def test_checkout_creates_order_payment_and_reserves_stock(self):
        add_line(self.user, self.book, 3)

        order, payment = services.checkout(self.user, SHIPPING, client_ip="10.0.0.1")

        self.assertEqual(order.status, OrderStatus.PENDING_PAYMENT)
        self.assertEqual(order.payment_status, OrderPaymentStatus.UNPAID)
        self.assertEqual(order.total, Decimal("165.00"))
        self.assertEqual(order.shipping_country, "VN")
        self.assertEqual(order.items.get().line_total, Decimal("150.00"))
        self.assertEqual(Book.objects.get(pk=self.book.pk).stock_for_sale, 2)
        self.assertFalse(CartItem.objects.filter(user=self.user).exists())

        self.assertEqual(payment.status, PaymentStatus.PENDING)
        self.assertEqual(payment.amount, order.total)
        self.assertIn("vnp_SecureHash=", payment.payment_url)
        self.assertTrue(order.order_code.startswith("ORD-"))

    def test_out_of_stock_rolls_back_everything(self):
        other = make_book(title="Emma", stock=1)
        add_line(self.user, self.book, 2)
        add_line(self.user, other, 2)

        with self.assertRaises(OutOfStock):
            services.checkout(self.user, SHIPPING, client_ip="10.0.0.1")

        self.assertFalse(Order.objects.exists())
        self.assertFalse(Payment.objects.exists())
        self.assertEqual(Book.objects.get(pk=self.book.pk).stock_for_sale, 5)
        self.assertEqual(CartItem.objects.filter(user=self.user).count(), 2)

    def test_second_checkout_for_last_unit_fails(self):
        last = make_book(title="Last copy", stock=1)
        rival = make_user("rival")
        add_line(self.user, last, 1)
        add_line(rival, last, 1)

        services.checkout(self.user, SHIPPING, client_ip="10.0.0.1")
        with self.assertRaises(OutOfStock):
            services.checkout(rival, SHIPPING, client_ip="10.0.0.2")

        self.assertEqual(Order.objects.count(), 1)
        self.assertEqual(Book.objects.get(pk=last.pk).stock_for_sale, 0)

    def test_stale_price_rejected(self):
        add_line(self.user, self.book, 1, unit_price="45.00")
        with self.assertRaises(ValidationError) as ctx:
            services.checkout(self.user, SHIPPING, client_ip="10.0.0.1")
        self.assertIn("Price changed", ctx.exception.errors[0])
        self.assertEqual(Book.objects.get(pk=self.book.pk).stock_for_sale, 5)

    def test_empty_cart_rejected(self):
        with self.assertRaises(ValidationError):
            services.create_order_from_cart(self.user, SHIPPING)

    def test_missing_address_rejected(self):
        add_line(self.user, self.book, 1)
        with self.assertRaises(ValidationError):
            services.create_order_from_cart(self.user, {"city": "Hanoi"})
        self.assertEqual(Book.objects.get(pk=self.book.pk).stock_for_sale, 5)

    @override_settings(MAX_PENDING_ORDERS=1)
    def test_pending_order_limit(self):
        add_line(self.user, self.book, 1)
        services.create_order_from_cart(self.user, SHIPPING)
        add_line(self.user, self.book, 1)
        with self.assertRaises(OrderLimitExceeded):
            services.create_order_from_cart(self.user, SHIPPING)

    def test_totals_preview_reports_problems_without_mutating(self):
        add_line(self.user, self.book, 6)
        preview = services.calculate_order_totals(self.user)
        self.assertFalse(preview["can_checkout"])
        self.assertEqual(preview["totals"]["sub_total"], "300.00")
        self.assertEqual(Book.objects.get(pk=self.book.pk).stock_for_sale, 5)


class OrderStateMachineTests(TestCase):
    def setUp(self):
        self.user = make_user()
        self.book = make_book(stock=5)
        add_line(self.user, self.book, 2)
        self.order = services.create_order_from_cart(self.user, SHIPPING)

    def test_cancel_unpaid_order_releases_stock(self):
        order = services.cancel_order(self.order.order_code, user=self.user)
        self.assertEqual(order.status, OrderStatus.CANCELLED)
        self.assertIsNotNone(order.cancelled_at)
        self.assertEqual(Book.objects.get(pk=self.book.pk).stock_for_sale, 5)

    def test_cancel_twice_rejected(self):
        services.cancel_order(self.order.order_code)
        with self.assertRaises(InvalidTransition):
            services.cancel_order(self.order.order_code)
        self.assertEqual(Book.objects.get(pk=self.book.pk).stock_for_sale, 5)

    def test_paid_order_cannot_be_cancelled(self):
        Order.objects.filter(pk=self.order.pk).update(
            status=OrderStatus.PAID, payment_status=OrderPaymentStatus.PAID
        )
        with self.assertRaises(InvalidTransition) as ctx:
            services.cancel_order(self.order.order_code)
        self.assertIn("refund", str(ctx.exception))

    def test_cancel_blocked_while_payment_in_flight(self):
        create_payment(self.order, client_ip="10.0.0.1")
        with self.assertRaises(InvalidTransition):
            services.cancel_order(self.order.order_code)
        self.assertEqual(Order.objects.get(pk=self.order.pk).status, OrderStatus.PENDING_PAYMENT)

    def test_other_users_order_is_not_found(self):
        with self.assertRaises(NotFound):
            services.cancel_order(self.order.order_code, user=make_user("someone"))

    def test_fulfilment_path(self):
        Order.objects.filter(pk=self.order.pk).update(
            status=OrderStatus.PAID, payment_status=OrderPaymentStatus.PAID
        )
        for status in (OrderStatus.PROCESSING, OrderStatus.SHIPPED, OrderStatus.DELIVERED):
            order = services.advance_order(self.order.order_code, status)
        self.assertEqual(order.status, OrderStatus.DELIVERED)
        self.assertIsNotNone(order.shipped_at)
        self.assertIsNotNone(order.delivered_at)
        self.assertTrue(order.is_terminal)

    def test_cannot_skip_payment(self):
        with self.assertRaises(InvalidTransition):
            services.advance_order(self.order.order_code, OrderStatus.PROCESSING)
        with self.assertRaises(ValidationError):
            services.advance_order(self.order.order_code, OrderStatus.PAID)

    def test_terminal_states_have_no_exits(self):
        order = services.cancel_order(self.order.order_code)
        for target in OrderStatus.values:
            self.assertFalse(order.can_transition_to(target))

    def test_reorder_refills_cart_at_current_price(self):
        services.cancel_order(self.order.order_code)
        Book.objects.filter(pk=self.book.pk).update(price=Decimal("60.00"))
        preview = services.reorder(self.order.order_code, self.user)
        item = CartItem.objects.get(user=self.user)
        self.assertEqual(item.quantity, 2)
        self.assertEqual(item.unit_price, Decimal("60.00"))
        self.assertTrue(preview["can_checkout"])

    def test_reorder_of_open_order_rejected(self):
        with self.assertRaises(ValidationError):
            services.reorder(self.order.order_code, self.user)


@override_settings(ORDER_PRICING=PRICING)
class OrderViewTests(TestCase):
    def setUp(self):
        self.user = make_user()
        self.book = make_book(stock=5)
        self.client.force_login(self.user)

    def test_checkout_view(self):
        add_line(self.user, self.book, 3)
        resp = self.client.post(
            reverse("orders:checkout"), data={"shipping": SHIPPING}, content_type="application/json",
            REMOTE_ADDR="203.0.113.9",
        )
        self.assertEqual(resp.status_code, 201)
        body = resp.json()
        self.assertEqual(body["order"]["total"], "165.00")
        self.assertTrue(body["payment_url"].startswith("https://sandbox.vnpayment.vn/"))
        self.assertEqual(Payment.objects.get().client_ip, "203.0.113.9")

    def test_checkout_view_maps_errors(self):
        resp = self.client.post(reverse("orders:checkout"), data={"shipping": SHIPPING}, content_type="application/json")
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["error"], "validation_error")

    def test_detail_list_and_cancel(self):
        add_line(self.user, self.book, 1)
        order = services.create_order_from_cart(self.user, SHIPPING)

        self.assertEqual(self.client.get(reverse("orders:detail", args=[order.order_code])).status_code, 200)
        listed = self.client.get(reverse("orders:list")).json()["orders"]
        self.assertEqual([o["order_code"] for o in listed], [order.order_code])

        resp = self.client.post(reverse("orders:cancel", args=[order.order_code]))
        self.assertEqual(resp.json()["status"], OrderStatus.CANCELLED)
        resp = self.client.post(reverse("orders:cancel", args=[order.order_code]))
        self.assertEqual(resp.status_code, 409)

    def test_advance_requires_staff(self):
        add_line(self.user, self.book, 1)
        order = services.create_order_from_cart(self.user, SHIPPING)
        resp = self.client.post(
            reverse("orders:advance", args=[order.order_code]),
            data={"status": "PROCESSING"}, content_type="application/json",
        )
        self.assertEqual(resp.status_code, 302)

    def test_anonymous_redirected(self):
        self.client.logout()
        with mock.patch.object(services, "checkout") as checkout:
            resp = self.client.post(reverse("orders:checkout"))
        self.assertEqual(resp.status_code, 302)
        checkout.assert_not_called()


@override_settings(ORDER_PAGE_SIZE=2, MAX_PENDING_ORDERS=5)
class OrderHistoryViewTests(TestCase):
    def setUp(self):
        self.user = make_user()
        self.client.force_login(self.user)
        self.orders = []
        for i in range(3):
            add_line(self.user, make_book(title=f"Volume {i}", stock=5), 1)
            self.orders.append(services.create_order_from_cart(self.user, SHIPPING))

    def _list(self, **params):
        return self.client.get(reverse("orders:list"), params).json()

    def test_history_is_paged_newest_first(self):
        first = self._list()
        self.assertEqual([o["order_code"] for o in first["orders"]], [self.orders[2].order_code, self.orders[1].order_code])
        self.assertEqual(first["total"], 3)
        self.assertTrue(first["has_next"])
        self.assertFalse(first["has_prev"])

        second = self._list(page=2)
        self.assertEqual([o["order_code"] for o in second["orders"]], [self.orders[0].order_code])
        self.assertFalse(second["has_next"])
        self.assertTrue(second["has_prev"])

        self.assertEqual(self._list(page="abc")["page"], 1)

    def test_current_orders_skip_finished_ones(self):
        services.cancel_order(self.orders[0].order_code, self.user)

        current = self._list(current="1")

        self.assertEqual(current["total"], 2)
        self.assertNotIn(self.orders[0].order_code, [o["order_code"] for o in current["orders"]])
        self.assertEqual(
            [o.order_code for o in services.list_orders(self.user, current=True)],
            [self.orders[2].order_code, self.orders[1].order_code],
        )

    def test_detail_lists_payment_attempts(self):
        order = self.orders[1]
        first = create_payment(order, client_ip="10.0.0.1")
        Payment.objects.filter(pk=first.pk).update(expires_at=timezone.now() - timedelta(minutes=1))
        retry = create_payment(order, client_ip="10.0.0.1")

        body = self.client.get(reverse("orders:detail", args=[order.order_code])).json()

        self.assertEqual([p["payment_code"] for p in body["payments"]], [retry.payment_code, first.payment_code])
        self.assertEqual(body["payments"][0]["status"], PaymentStatus.PENDING)
        self.assertEqual(body["payments"][0]["payment_url"], retry.payment_url)
        self.assertEqual(body["payments"][1]["status"], PaymentStatus.EXPIRED)
        self.assertIsNone(body["payments"][1]["payment_url"])
