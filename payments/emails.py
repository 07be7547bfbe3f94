import logging
from typing import List

from django.conf import settings
from django.core.mail import EmailMultiAlternatives
from django.template.loader import render_to_string

logger = logging.getLogger(__name__)

SUBJECTS = {
    "payment.succeeded": "Payment received for order {order_code}",
    "payment.failed": "Payment failed for order {order_code}",
    "payment.expired": "Payment window expired for order {order_code}",
    "payment.refunded": "Refund issued for order {order_code}",
}


def _fail_silently() -> bool:
    return getattr(settings, "EMAIL_FAIL_SILENTLY", False)


def _template_name(kind: str) -> str:
    # payment.succeeded -> emails/payment_succeeded
    return "emails/" + kind.replace(".", "_")


def _admin_recipients() -> List[str]:
    raw = getattr(settings, "PAYMENTS_ADMIN_EMAILS", "") or ""
    seen = set()
    uniq: List[str] = []
    for e in (x.strip() for x in raw.split(",")):
        if e and e.lower() not in seen:
            seen.add(e.lower())
            uniq.append(e)
    return uniq


def send_payment_event(event) -> bool:
    """Mail the customer about a payment event. Returns False when there is nobody to mail.

    Admins listed in PAYMENTS_ADMIN_EMAILS get a blind copy of refunds.
    Errors from the mail backend propagate so the outbox can retry.
    """
    recipient = getattr(event.user, "email", "") or ""
    if not recipient:
        logger.info("No email address for user=%s, skipping %s", event.user_id, event.kind)
        return False

    context = dict(event.payload or {})
    context.setdefault("kind", event.kind)
    context["customer_name"] = event.user.get_full_name() or event.user.get_username()

    subject = SUBJECTS.get(event.kind, "Payment update for order {order_code}").format(
        order_code=context.get("order_code", "")
    )
    template = _template_name(event.kind)
    text = render_to_string(f"{template}.txt", context)
    html = render_to_string(f"{template}.html", context)

    from_email = getattr(settings, "DEFAULT_FROM_EMAIL", None) or getattr(settings, "EMAIL_HOST_USER", None)
    bcc = _admin_recipients() if event.kind == "payment.refunded" else []
    msg = EmailMultiAlternatives(subject, text, from_email, [recipient], bcc=bcc)
    msg.attach_alternative(html, "text/html")
    msg.send(fail_silently=_fail_silently())
    return True
