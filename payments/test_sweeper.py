from datetime import timedelta
from io import StringIO
from unittest import mock

from django.core.management import call_command
from django.core.management.base import CommandError
from django.db import connection
from django.test import TestCase, override_settings
from django.test.utils import CaptureQueriesContext
from django.urls import reverse
from django.utils import timezone

from catalog.models import Book
from orders import services as order_services
from orders.factories import SHIPPING, add_line, first_query, make_book, make_user, signed_callback
from orders.models import Order, OrderStatus
from . import services
from .models import Payment, PaymentEvent, PaymentStatus, PaymentTransaction, SweepRun


class ExpireStalePaymentsTests(TestCase):
    def setUp(self):
        self.user = make_user()
        self.book = make_book(stock=5)
        add_line(self.user, self.book, 2)
        self.order, self.payment = order_services.checkout(self.user, SHIPPING, client_ip="10.0.0.1")

    def _stock(self):
        return Book.objects.get(pk=self.book.pk).stock_for_sale

    def test_payment_past_ttl_expires_and_order_is_cancelled(self):
        self.assertEqual(self._stock(), 3)
        ttl = (self.payment.expires_at - self.payment.created_at).total_seconds()
        self.assertAlmostEqual(ttl, 15 * 60, delta=5)

        result = services.expire_stale_payments(now=self.payment.expires_at + timedelta(minutes=1))

        self.assertEqual(result.expired, 1)
        self.assertEqual(result.cancelled_orders, 1)
        self.payment.refresh_from_db()
        self.order.refresh_from_db()
        self.assertEqual(self.payment.status, PaymentStatus.EXPIRED)
        self.assertEqual(self.order.status, OrderStatus.CANCELLED)
        self.assertEqual(self._stock(), 5)
        self.assertTrue(
            PaymentTransaction.objects.filter(payment=self.payment, transaction_type=PaymentTransaction.Type.TIMEOUT).exists()
        )
        event = PaymentEvent.objects.get(kind=PaymentEvent.Kind.EXPIRED)
        self.assertTrue(event.payload["order_cancelled"])
        self.assertTrue(result.run.ok)

    def test_payment_within_ttl_untouched(self):
        result = services.expire_stale_payments(now=self.payment.expires_at - timedelta(minutes=1))
        self.assertEqual(result.expired, 0)
        self.payment.refresh_from_db()
        self.assertEqual(self.payment.status, PaymentStatus.PENDING)
        self.assertEqual(self._stock(), 3)

    def test_second_sweep_is_a_no_op(self):
        later = self.payment.expires_at + timedelta(minutes=1)
        services.expire_stale_payments(now=later)
        result = services.expire_stale_payments(now=later)
        self.assertEqual(result.expired, 0)
        self.assertEqual(result.cancelled_orders, 0)
        self.assertEqual(self._stock(), 5)

    def test_paid_payment_is_never_expired(self):
        services.process_callback(signed_callback(self.payment), "ipn")
        result = services.expire_stale_payments(now=self.payment.expires_at + timedelta(hours=1))
        self.assertEqual(result.expired, 0)
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, OrderStatus.PAID)

    def test_success_callback_after_expiry_is_only_recorded(self):
        services.expire_stale_payments(now=self.payment.expires_at + timedelta(minutes=1))

        outcome = services.process_callback(signed_callback(self.payment), "ipn")

        self.assertTrue(outcome.duplicate)
        self.assertFalse(outcome.succeeded)
        self.payment.refresh_from_db()
        self.order.refresh_from_db()
        self.assertEqual(self.payment.status, PaymentStatus.EXPIRED)
        self.assertEqual(self.order.status, OrderStatus.CANCELLED)

    def test_abandoned_failed_order_is_cancelled_after_window(self):
        services.process_callback(signed_callback(self.payment, response_code="51", transaction_status="02"), "ipn")

        with override_settings(ORDER_PAYMENT_WINDOW_HOURS=24):
            early = services.expire_stale_payments(now=self.order.created_at + timedelta(hours=23))
            late = services.expire_stale_payments(now=self.order.created_at + timedelta(hours=25))

        self.assertEqual(early.cancelled_orders, 0)
        self.assertEqual(late.cancelled_orders, 1)
        self.assertEqual(Order.objects.get(pk=self.order.pk).status, OrderStatus.CANCELLED)
        self.assertEqual(self._stock(), 5)

    def test_overdue_pending_payment_is_superseded_on_retry(self):
        Payment.objects.filter(pk=self.payment.pk).update(expires_at=timezone.now() - timedelta(minutes=1))

        retry = services.create_payment(self.order, client_ip="10.0.0.1")

        self.payment.refresh_from_db()
        self.assertEqual(self.payment.status, PaymentStatus.EXPIRED)
        self.assertEqual(retry.status, PaymentStatus.PENDING)
        self.assertEqual(Order.objects.get(pk=self.order.pk).status, OrderStatus.PENDING_PAYMENT)
        self.assertEqual(self._stock(), 3)

    def test_expiry_locks_order_before_payment(self):
        with CaptureQueriesContext(connection) as ctx:
            services.expire_stale_payments(now=self.payment.expires_at + timedelta(minutes=1))

        sql = [q["sql"] for q in ctx.captured_queries]
        order_read = first_query(sql, 'FROM "orders_order"')
        payment_read = first_query(sql, '"payments_payment"."payment_code"', 'FROM "payments_payment"')
        self.assertIsNotNone(order_read)
        self.assertLess(order_read, payment_read)

    @override_settings(PAYMENT_SWEEP_HISTORY=3)
    def test_old_sweep_runs_are_pruned(self):
        old = timezone.now() - timedelta(days=2)
        for minutes in range(5):
            SweepRun.objects.create(started_at=old + timedelta(minutes=minutes), finished_at=old, ok=True)

        result = services.expire_stale_payments()

        self.assertEqual(SweepRun.objects.count(), 3)
        self.assertTrue(SweepRun.objects.filter(pk=result.run.pk).exists())
        self.assertEqual(SweepRun.objects.order_by("started_at").first().started_at, old + timedelta(minutes=3))

    def test_failed_sweep_is_recorded(self):
        Payment.objects.filter(pk=self.payment.pk).update(expires_at=timezone.now() - timedelta(minutes=1))
        with mock.patch("payments.services._expire_one", side_effect=RuntimeError("boom")):
            with self.assertRaises(RuntimeError):
                services.expire_stale_payments()
        run = SweepRun.objects.get()
        self.assertFalse(run.ok)
        self.assertEqual(run.error, "boom")


class ExpirePaymentsCommandTests(TestCase):
    def test_nothing_to_do(self):
        out = StringIO()
        call_command("expire_payments", stdout=out)
        self.assertIn("No stale payments.", out.getvalue())
        self.assertTrue(SweepRun.objects.get().ok)

    def test_expires_overdue_payment(self):
        user = make_user()
        add_line(user, make_book(stock=2), 1)
        _, payment = order_services.checkout(user, SHIPPING, client_ip="10.0.0.1")
        Payment.objects.filter(pk=payment.pk).update(expires_at=timezone.now() - timedelta(minutes=1))

        out = StringIO()
        call_command("expire_payments", "--batch-size", "10", stdout=out)

        self.assertIn("Expired 1 payments, cancelled 1 orders", out.getvalue())

    def test_failure_exits_non_zero(self):
        with mock.patch(
            "payments.management.commands.expire_payments.expire_stale_payments", side_effect=RuntimeError("db down")
        ):
            with self.assertRaises(CommandError):
                call_command("expire_payments", stdout=StringIO())

    def test_loop_survives_a_failed_pass(self):
        out, err = StringIO(), StringIO()
        with mock.patch(
            "payments.management.commands.expire_payments.expire_stale_payments",
            side_effect=[RuntimeError("database is locked"), services.SweepResult()],
        ) as sweep, mock.patch("payments.management.commands.expire_payments.time.sleep") as sleep:
            call_command("expire_payments", "--loop", "--passes", "2", "--interval", "30", stdout=out, stderr=err)

        self.assertEqual(sweep.call_count, 2)
        sleep.assert_called_once_with(30)
        self.assertIn("Payment sweep failed: database is locked", err.getvalue())
        self.assertIn("No stale payments.", out.getvalue())


@override_settings(PAYMENT_SWEEP_INTERVAL_SECONDS=60)
class SweeperHealthTests(TestCase):
    def test_no_runs_is_stale(self):
        resp = self.client.get(reverse("payments:sweeper_health"))
        self.assertEqual(resp.status_code, 503)
        self.assertTrue(resp.json()["stale"])

    def test_recent_run_is_healthy(self):
        services.expire_stale_payments()
        resp = self.client.get(reverse("payments:sweeper_health"))
        self.assertEqual(resp.status_code, 200)
        self.assertFalse(resp.json()["stale"])

    def test_old_run_is_stale(self):
        old = timezone.now() - timedelta(minutes=5)
        SweepRun.objects.create(started_at=old, finished_at=old, ok=True)
        resp = self.client.get(reverse("payments:sweeper_health"))
        self.assertEqual(resp.status_code, 503)
