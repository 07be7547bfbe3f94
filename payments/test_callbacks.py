from django.core import mail
from django.db import connection
from django.test import TestCase
from django.test.utils import CaptureQueriesContext
from django.urls import reverse

from orders import services as order_services
from orders.exceptions import AmountMismatch, InvalidTransition, SignatureInvalid, UnknownTransaction
from orders.factories import SHIPPING, add_line, first_query, make_book, make_user, signed_callback
from orders.models import OrderPaymentStatus, OrderStatus
from . import services
from .models import Payment, PaymentEvent, PaymentStatus, PaymentTransaction


class CallbackTestCase(TestCase):
    def setUp(self):
        self.user = make_user()
        self.book = make_book(stock=5)
        add_line(self.user, self.book, 3)
        self.order, self.payment = order_services.checkout(self.user, SHIPPING, client_ip="10.0.0.1")

    def audit_rows(self, **filters):
        return PaymentTransaction.objects.filter(payment=self.payment, **filters)


class ProcessCallbackTests(CallbackTestCase):
    def test_successful_ipn_settles_payment_and_order(self):
        outcome = services.process_callback(signed_callback(self.payment), "ipn")

        self.assertTrue(outcome.succeeded)
        self.assertFalse(outcome.duplicate)
        self.payment.refresh_from_db()
        self.order.refresh_from_db()
        self.assertEqual(self.payment.status, PaymentStatus.COMPLETED)
        self.assertIsNotNone(self.payment.paid_at)
        self.assertEqual(self.payment.gateway_transaction_no, "14212345")
        self.assertEqual(self.order.status, OrderStatus.PAID)
        self.assertEqual(self.order.payment_status, OrderPaymentStatus.PAID)
        self.assertEqual(self.audit_rows(transaction_type=PaymentTransaction.Type.WEBHOOK).count(), 1)
        self.assertTrue(PaymentEvent.objects.filter(kind=PaymentEvent.Kind.SUCCEEDED, user=self.user).exists())

    def test_duplicate_callback_transitions_once(self):
        services.process_callback(signed_callback(self.payment), "ipn")
        paid_at = Payment.objects.get(pk=self.payment.pk).paid_at

        outcome = services.process_callback(signed_callback(self.payment), "ipn")

        self.assertTrue(outcome.duplicate)
        self.assertTrue(outcome.succeeded)
        payment = Payment.objects.get(pk=self.payment.pk)
        self.assertEqual(payment.paid_at, paid_at)
        self.assertEqual(self.audit_rows(transaction_type=PaymentTransaction.Type.WEBHOOK).count(), 2)
        self.assertEqual(PaymentEvent.objects.filter(kind=PaymentEvent.Kind.SUCCEEDED).count(), 1)

    def test_return_then_ipn(self):
        services.process_callback(signed_callback(self.payment), "return")
        outcome = services.process_callback(signed_callback(self.payment), "ipn")
        self.assertTrue(outcome.duplicate)
        self.assertEqual(self.audit_rows(channel="return").count(), 1)
        self.assertEqual(self.audit_rows(channel="ipn").count(), 1)

    def test_failure_code_keeps_order_open_for_retry(self):
        outcome = services.process_callback(
            signed_callback(self.payment, response_code="24", transaction_status="02"), "return"
        )

        self.assertFalse(outcome.succeeded)
        self.payment.refresh_from_db()
        self.order.refresh_from_db()
        self.assertEqual(self.payment.status, PaymentStatus.FAILED)
        self.assertEqual(self.payment.gateway_message, "Customer cancelled the transaction")
        self.assertEqual(self.order.status, OrderStatus.PENDING_PAYMENT)
        self.assertEqual(self.order.payment_status, OrderPaymentStatus.FAILED)

        retry = services.start_payment(self.order.order_code, self.user, client_ip="10.0.0.1")
        self.assertEqual(retry.status, PaymentStatus.PENDING)
        self.assertNotEqual(retry.txn_ref, self.payment.txn_ref)

        services.process_callback(signed_callback(retry), "ipn")
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, OrderPaymentStatus.PAID)

    def test_unknown_txn_ref(self):
        params = signed_callback(self.payment, vnp_TxnRef="DOESNOTEXIST")
        with self.assertRaises(UnknownTransaction):
            services.process_callback(params, "ipn")

    def test_tampered_callback_changes_nothing(self):
        params = signed_callback(self.payment)
        params["vnp_ResponseCode"] = "00"
        params["vnp_TransactionNo"] = "99999999"
        before = self.audit_rows().count()

        with self.assertRaises(SignatureInvalid):
            services.process_callback(params, "ipn")

        self.payment.refresh_from_db()
        self.assertEqual(self.payment.status, PaymentStatus.PENDING)
        self.assertEqual(self.audit_rows().count(), before)

    def test_amount_mismatch_changes_nothing(self):
        params = signed_callback(self.payment, amount=self.payment.amount - 1)
        with self.assertRaises(AmountMismatch):
            services.process_callback(params, "ipn")
        self.payment.refresh_from_db()
        self.assertEqual(self.payment.status, PaymentStatus.PENDING)

    def test_replay_with_other_amount_on_finished_payment_is_audited(self):
        services.process_callback(signed_callback(self.payment), "ipn")
        before = self.audit_rows().count()

        outcome = services.process_callback(signed_callback(self.payment, amount=self.payment.amount - 1), "ipn")

        self.assertTrue(outcome.duplicate)
        self.assertEqual(self.audit_rows().count(), before + 1)
        self.assertIn("amount", self.audit_rows().order_by("-id").first().message)
        self.payment.refresh_from_db()
        self.assertEqual(self.payment.status, PaymentStatus.COMPLETED)

    def test_order_row_is_locked_before_payment_row(self):
        with CaptureQueriesContext(connection) as ctx:
            services.process_callback(signed_callback(self.payment), "ipn")

        sql = [q["sql"] for q in ctx.captured_queries]
        order_read = first_query(sql, 'FROM "orders_order"')
        payment_read = first_query(sql, '"payments_payment"."payment_code"', 'FROM "payments_payment"')
        self.assertIsNotNone(order_read)
        self.assertLess(order_read, payment_read)

    def test_second_pending_payment_rejected(self):
        with self.assertRaises(InvalidTransition):
            services.create_payment(self.order, client_ip="10.0.0.1")
        self.assertEqual(self.order.payments.filter(status=PaymentStatus.PENDING).count(), 1)

    def test_audit_rows_are_write_once(self):
        row = self.audit_rows().first()
        row.message = "rewritten"
        with self.assertRaises(ValueError):
            row.save()
        with self.assertRaises(ValueError):
            row.delete()

    def test_success_mails_customer_after_commit(self):
        with self.captureOnCommitCallbacks(execute=True):
            services.process_callback(signed_callback(self.payment), "ipn")

        self.assertEqual(len(mail.outbox), 1)
        self.assertIn(self.order.order_code, mail.outbox[0].subject)
        self.assertEqual(mail.outbox[0].to, [self.user.email])
        event = PaymentEvent.objects.get(kind=PaymentEvent.Kind.SUCCEEDED)
        self.assertEqual(event.status, PaymentEvent.Status.SENT)


class CallbackViewTests(CallbackTestCase):
    def _ipn(self, params):
        return self.client.get(reverse("payments:vnpay_ipn"), params).json()

    def test_ipn_codes(self):
        self.assertEqual(self._ipn(signed_callback(self.payment))["RspCode"], "00")
        self.assertEqual(self._ipn(signed_callback(self.payment))["RspCode"], "02")

        bad = signed_callback(self.payment)
        bad["vnp_SecureHash"] = "0" * 128
        self.assertEqual(self._ipn(bad)["RspCode"], "97")
        self.assertEqual(self._ipn(signed_callback(self.payment, vnp_TxnRef="NOPE"))["RspCode"], "01")

    def test_ipn_invalid_amount(self):
        params = signed_callback(self.payment, amount=1)
        self.assertEqual(self._ipn(params)["RspCode"], "04")

    def test_ipn_accepts_post(self):
        resp = self.client.post(reverse("payments:vnpay_ipn"), signed_callback(self.payment))
        self.assertEqual(resp.json()["RspCode"], "00")

    def test_return_view(self):
        resp = self.client.get(reverse("payments:vnpay_return"), signed_callback(self.payment))
        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertTrue(body["ok"])
        self.assertEqual(body["status"], PaymentStatus.COMPLETED)
        self.assertEqual(body["order_code"], self.order.order_code)

    def test_return_view_hides_rejection_details(self):
        params = signed_callback(self.payment)
        params["vnp_Amount"] = "1"
        resp = self.client.get(reverse("payments:vnpay_return"), params)
        self.assertEqual(resp.status_code, 400)
        self.assertNotIn("mismatch", resp.content.decode().lower())
        self.assertNotIn(self.payment.txn_ref, resp.content.decode())


class PaymentLookupViewTests(CallbackTestCase):
    def test_order_payments_for_owner(self):
        self.client.force_login(self.user)
        resp = self.client.get(reverse("payments:order_payments", args=[self.order.order_code]))
        self.assertEqual(resp.status_code, 200)
        self.assertEqual([p["payment_code"] for p in resp.json()["payments"]], [self.payment.payment_code])

    def test_order_payments_hidden_from_other_users(self):
        self.client.force_login(make_user("other"))
        resp = self.client.get(reverse("payments:order_payments", args=[self.order.order_code]))
        self.assertEqual(resp.status_code, 404)

    def test_lookup_by_txn_ref_is_staff_only(self):
        url = reverse("payments:by_txn_ref", args=[self.payment.txn_ref])
        self.client.force_login(self.user)
        self.assertEqual(self.client.get(url).status_code, 302)

        self.client.force_login(make_user("staff", is_staff=True))
        body = self.client.get(url).json()
        self.assertEqual(body["payment_code"], self.payment.payment_code)
        self.assertEqual(body["order_code"], self.order.order_code)
        self.assertEqual(self.client.get(reverse("payments:by_txn_ref", args=["NOPE"])).status_code, 404)
