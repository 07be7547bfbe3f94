import smtplib
from io import StringIO
from unittest import mock

from django.core import mail
from django.core.management import call_command
from django.test import TestCase, override_settings

from orders.factories import make_user
from . import events
from .models import PaymentEvent

PAYLOAD = {
    "order_code": "ORD-202610-TEST01",
    "payment_code": "PAY261019100000TEST1",
    "amount": "165000.00",
    "currency": "VND",
    "status": "COMPLETED",
}


class PaymentEventTests(TestCase):
    def setUp(self):
        self.user = make_user()

    def test_emit_delivers_after_commit(self):
        with self.captureOnCommitCallbacks(execute=True):
            event = events.emit(self.user.pk, PaymentEvent.Kind.SUCCEEDED, PAYLOAD)
            self.assertEqual(event.status, PaymentEvent.Status.PENDING)

        event.refresh_from_db()
        self.assertEqual(event.status, PaymentEvent.Status.SENT)
        self.assertEqual(event.attempts, 1)
        self.assertEqual(len(mail.outbox), 1)
        self.assertEqual(mail.outbox[0].subject, "Payment received for order ORD-202610-TEST01")
        self.assertIn("165000.00 VND", mail.outbox[0].body)

    def test_delivery_failure_is_kept_for_retry(self):
        event = events.emit(self.user.pk, PaymentEvent.Kind.FAILED, PAYLOAD)
        with mock.patch("payments.events.send_payment_event", side_effect=smtplib.SMTPException("relay down")):
            self.assertFalse(events.dispatch_event(event.pk))

        event.refresh_from_db()
        self.assertEqual(event.status, PaymentEvent.Status.PENDING)
        self.assertEqual(event.attempts, 1)
        self.assertEqual(event.last_error, "relay down")

    @override_settings(PAYMENT_EVENT_MAX_ATTEMPTS=2)
    def test_gives_up_after_max_attempts(self):
        event = events.emit(self.user.pk, PaymentEvent.Kind.EXPIRED, PAYLOAD)
        with mock.patch("payments.events.send_payment_event", side_effect=smtplib.SMTPException("relay down")):
            events.dispatch_event(event.pk)
            events.dispatch_event(event.pk)
            self.assertFalse(events.dispatch_event(event.pk))

        event.refresh_from_db()
        self.assertEqual(event.status, PaymentEvent.Status.FAILED)
        self.assertEqual(event.attempts, 2)

    def test_user_without_email_is_skipped(self):
        user = make_user("noemail")
        user.email = ""
        user.save()
        event = events.emit(user.pk, PaymentEvent.Kind.SUCCEEDED, PAYLOAD)
        self.assertTrue(events.dispatch_event(event.pk))
        self.assertEqual(len(mail.outbox), 0)

    @override_settings(PAYMENTS_ADMIN_EMAILS="ops@example.com, OPS@example.com")
    def test_refund_copies_admins(self):
        event = events.emit(
            self.user.pk, PaymentEvent.Kind.REFUNDED, {**PAYLOAD, "refund_amount": "1000.00", "reason": "Damaged"}
        )
        events.dispatch_event(event.pk)
        self.assertEqual(mail.outbox[0].bcc, ["ops@example.com"])
        self.assertIn("Reason: Damaged", mail.outbox[0].body)

    def test_dispatch_command(self):
        events.emit(self.user.pk, PaymentEvent.Kind.SUCCEEDED, PAYLOAD)
        events.emit(self.user.pk, PaymentEvent.Kind.FAILED, PAYLOAD)

        out = StringIO()
        call_command("dispatch_payment_events", "--max", "10", stdout=out)

        self.assertIn("Sent 2 of 2 payment events", out.getvalue())
        self.assertFalse(PaymentEvent.objects.filter(status=PaymentEvent.Status.PENDING).exists())

        out = StringIO()
        call_command("dispatch_payment_events", stdout=out)
        self.assertIn("No pending payment events.", out.getvalue())
