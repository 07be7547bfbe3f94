from decimal import Decimal
from unittest import mock

import requests
from django.test import TestCase
from django.urls import reverse

from catalog.models import Book
from orders import services as order_services
from orders.exceptions import GatewayUnavailable, InvalidTransition, ValidationError
from orders.factories import SHIPPING, add_line, make_book, make_user, signed_callback
from orders.models import OrderPaymentStatus, OrderStatus
from . import services
from .models import PaymentEvent, PaymentStatus, PaymentTransaction

GATEWAY_POST = "payments.integrations.vnpay.requests.post"


def gateway_ok(**body):
    resp = mock.Mock(status_code=200)
    resp.json.return_value = {"vnp_ResponseCode": "00", "vnp_Message": "Success", **body}
    return resp


class RefundTests(TestCase):
    def setUp(self):
        self.user = make_user()
        self.book = make_book(stock=5)
        add_line(self.user, self.book, 2)
        self.order, self.payment = order_services.checkout(self.user, SHIPPING, client_ip="10.0.0.1")
        services.process_callback(signed_callback(self.payment), "ipn")
        self.payment.refresh_from_db()

    def _stock(self):
        return Book.objects.get(pk=self.book.pk).stock_for_sale

    def test_full_refund(self):
        with mock.patch(GATEWAY_POST, return_value=gateway_ok()) as post:
            payment = services.refund_payment(self.payment.payment_code, reason="Damaged in transit")

        post.assert_called_once()
        self.assertEqual(payment.status, PaymentStatus.REFUNDED)
        self.assertEqual(payment.refunded_amount, self.payment.amount)
        self.assertIsNotNone(payment.refunded_at)
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, OrderStatus.REFUNDED)
        self.assertEqual(self.order.payment_status, OrderPaymentStatus.REFUNDED)
        self.assertEqual(self._stock(), 5)

        row = PaymentTransaction.objects.filter(
            payment=self.payment, transaction_type=PaymentTransaction.Type.REFUND
        ).get()
        self.assertEqual(row.status, PaymentStatus.REFUNDED)
        self.assertEqual(row.raw_response["vnp_ResponseCode"], "00")
        self.assertTrue(PaymentEvent.objects.filter(kind=PaymentEvent.Kind.REFUNDED).exists())

    def test_partial_refund_keeps_order(self):
        with mock.patch(GATEWAY_POST, return_value=gateway_ok()) as post:
            payment = services.refund_payment(self.payment.payment_code, reason="Late delivery", amount="10.00")

        self.assertEqual(post.call_args.kwargs["json"]["vnp_TransactionType"], "03")
        self.assertEqual(payment.refunded_amount, Decimal("10.00"))
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, OrderStatus.PAID)
        self.assertEqual(self.order.payment_status, OrderPaymentStatus.PARTIALLY_REFUNDED)
        self.assertEqual(self._stock(), 3)

    def test_gateway_failure_leaves_state_unchanged(self):
        with mock.patch(GATEWAY_POST, side_effect=requests.Timeout("read timed out")):
            with self.assertRaises(GatewayUnavailable):
                services.refund_payment(self.payment.payment_code, reason="Customer request")

        self.payment.refresh_from_db()
        self.order.refresh_from_db()
        self.assertEqual(self.payment.status, PaymentStatus.COMPLETED)
        self.assertEqual(self.order.status, OrderStatus.PAID)
        self.assertEqual(self._stock(), 3)
        row = PaymentTransaction.objects.get(payment=self.payment, transaction_type=PaymentTransaction.Type.REFUND)
        self.assertEqual(row.status, PaymentStatus.COMPLETED)
        self.assertTrue(row.message.startswith("Refund failed"))
        self.assertIsNone(self.payment.refund_requested_at)

        with mock.patch(GATEWAY_POST, return_value=gateway_ok()):
            payment = services.refund_payment(self.payment.payment_code, reason="Customer request")
        self.assertEqual(payment.status, PaymentStatus.REFUNDED)

    def test_concurrent_refund_rejected_before_gateway(self):
        def gateway_with_second_click(*args, **kwargs):
            with self.assertRaises(InvalidTransition):
                services.refund_payment(self.payment.payment_code, reason="Damaged")
            return gateway_ok()

        with mock.patch(GATEWAY_POST, side_effect=gateway_with_second_click) as post:
            payment = services.refund_payment(self.payment.payment_code, reason="Damaged")

        post.assert_called_once()
        self.assertEqual(payment.status, PaymentStatus.REFUNDED)
        self.assertIsNotNone(payment.refund_requested_at)
        self.assertEqual(
            PaymentTransaction.objects.filter(payment=self.payment, transaction_type=PaymentTransaction.Type.REFUND).count(), 1
        )

    def test_refund_of_pending_payment_rejected(self):
        other = make_user("other")
        add_line(other, make_book(title="Emma"), 1)
        _, pending = order_services.checkout(other, SHIPPING, client_ip="10.0.0.1")

        with mock.patch(GATEWAY_POST) as post:
            with self.assertRaises(InvalidTransition):
                services.refund_payment(pending.payment_code, reason="n/a")
        post.assert_not_called()

    def test_refund_twice_rejected(self):
        with mock.patch(GATEWAY_POST, return_value=gateway_ok()):
            services.refund_payment(self.payment.payment_code, reason="Damaged")
            with self.assertRaises(InvalidTransition):
                services.refund_payment(self.payment.payment_code, reason="Damaged")

    def test_amount_bounds_and_reason(self):
        with mock.patch(GATEWAY_POST) as post:
            for amount in ("0", "-5", str(self.payment.amount + 1), "abc"):
                with self.assertRaises(ValidationError):
                    services.refund_payment(self.payment.payment_code, reason="x", amount=amount)
            with self.assertRaises(ValidationError):
                services.refund_payment(self.payment.payment_code, reason="  ")
        post.assert_not_called()

    def test_full_refund_needs_paid_order(self):
        order_services.advance_order(self.order.order_code, OrderStatus.PROCESSING)
        with mock.patch(GATEWAY_POST) as post:
            with self.assertRaises(InvalidTransition):
                services.refund_payment(self.payment.payment_code, reason="Changed mind")
        post.assert_not_called()

    def test_status_check_is_read_only(self):
        with mock.patch(GATEWAY_POST, return_value=gateway_ok(vnp_TransactionStatus="00")):
            result = services.check_payment_status(self.payment.payment_code)

        self.assertEqual(result["gateway_status"], "00")
        self.assertEqual(result["local_status"], PaymentStatus.COMPLETED)
        self.payment.refresh_from_db()
        self.assertEqual(self.payment.status, PaymentStatus.COMPLETED)
        self.assertTrue(
            PaymentTransaction.objects.filter(
                payment=self.payment, transaction_type=PaymentTransaction.Type.STATUS_CHECK
            ).exists()
        )


class RefundViewTests(TestCase):
    def setUp(self):
        self.customer = make_user()
        add_line(self.customer, make_book(stock=5), 1)
        self.order, self.payment = order_services.checkout(self.customer, SHIPPING, client_ip="10.0.0.1")
        services.process_callback(signed_callback(self.payment), "ipn")
        self.staff = make_user("staff", is_staff=True)

    def _post(self, body):
        return self.client.post(
            reverse("payments:refund", args=[self.payment.payment_code]), data=body, content_type="application/json"
        )

    def test_customer_cannot_refund(self):
        self.client.force_login(self.customer)
        with mock.patch(GATEWAY_POST) as post:
            resp = self._post({"reason": "please"})
        self.assertEqual(resp.status_code, 302)
        post.assert_not_called()

    def test_staff_refund(self):
        self.client.force_login(self.staff)
        with mock.patch(GATEWAY_POST, return_value=gateway_ok()):
            resp = self._post({"reason": "Out of print"})
        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertEqual(body["status"], PaymentStatus.REFUNDED)
        self.assertEqual(body["order_status"], OrderStatus.REFUNDED)

    def test_gateway_down_maps_to_503(self):
        self.client.force_login(self.staff)
        with mock.patch(GATEWAY_POST, side_effect=requests.ConnectionError("refused")):
            resp = self._post({"reason": "Out of print"})
        self.assertEqual(resp.status_code, 503)
        self.assertEqual(resp.json()["error"], "gateway_unavailable")
