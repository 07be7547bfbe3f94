"""Payment notification outbox.

``emit`` writes a PaymentEvent in the caller's transaction and schedules a
delivery attempt for after commit. Delivery never raises back into the
code that changed the payment; failures stay on the row for
``dispatch_payment_events`` to retry.
"""

import logging
from typing import Any, Dict, Optional

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from .emails import send_payment_event
from .models import PaymentEvent

logger = logging.getLogger(__name__)


def _max_attempts() -> int:
    return int(getattr(settings, "PAYMENT_EVENT_MAX_ATTEMPTS", 5))


def emit(user_id: int, kind: str, payload: Optional[Dict[str, Any]] = None) -> PaymentEvent:
    event = PaymentEvent.objects.create(user_id=user_id, kind=kind, payload=payload or {})
    event_id = event.pk
    transaction.on_commit(lambda: dispatch_event(event_id))
    logger.info("Queued %s for user=%s event=%s", kind, user_id, event_id)
    return event


def dispatch_event(event_id: int) -> bool:
    """Try to deliver one pending event. Returns True once it is SENT."""
    with transaction.atomic():
        event = (
            PaymentEvent.objects.select_for_update()
            .select_related("user")
            .filter(pk=event_id, status=PaymentEvent.Status.PENDING)
            .first()
        )
        if event is None:
            return False

        event.attempts += 1
        try:
            send_payment_event(event)
        except Exception as e:
            event.last_error = str(e)[:255]
            if event.attempts >= _max_attempts():
                event.status = PaymentEvent.Status.FAILED
            event.save(update_fields=["attempts", "last_error", "status"])
            logger.exception("Delivery of %s event=%s failed (attempt %s)", event.kind, event.pk, event.attempts)
            return False

        event.status = PaymentEvent.Status.SENT
        event.sent_at = timezone.now()
        event.last_error = ""
        event.save(update_fields=["attempts", "last_error", "status", "sent_at"])
    return True


def dispatch_pending(limit: int = 100) -> Dict[str, int]:
    ids = list(
        PaymentEvent.objects.filter(status=PaymentEvent.Status.PENDING)
        .order_by("created_at", "id")
        .values_list("pk", flat=True)[:limit]
    )
    sent = sum(1 for pk in ids if dispatch_event(pk))
    return {"attempted": len(ids), "sent": sent, "failed": len(ids) - sent}
