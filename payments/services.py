import logging
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Mapping, Optional

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from orders.exceptions import (
    AmountMismatch,
    GatewayUnavailable,
    InvalidTransition,
    NotFound,
    SignatureInvalid,
    UnknownTransaction,
    ValidationError,
)
from orders.models import Order, OrderPaymentStatus, OrderStatus
from orders.services import release_order_stock
from orders.utils import generate_payment_code, generate_txn_ref

from . import events
from .integrations import vnpay
from .models import Payment, PaymentEvent, PaymentStatus, PaymentTransaction, SweepRun

logger = logging.getLogger(__name__)

CALLBACK_CHANNELS = ("return", "ipn")
OPEN_PAYMENT_STATUSES = (PaymentStatus.PENDING, PaymentStatus.COMPLETED)


@dataclass(frozen=True)
class CallbackOutcome:
    payment: Payment
    duplicate: bool
    succeeded: bool


@dataclass
class SweepResult:
    expired: int = 0
    cancelled_orders: int = 0
    skipped: int = 0
    run: Optional[SweepRun] = field(default=None, repr=False)


def _vnpay(key: str, default=None):
    return settings.VNPAY.get(key, default)


def _record(payment: Payment, txn_type: str, message: str, *, status=None, channel: str = "",
            amount=None, raw: Optional[Mapping[str, Any]] = None) -> PaymentTransaction:
    return PaymentTransaction.objects.create(
        payment=payment,
        transaction_type=txn_type,
        channel=channel,
        status=status or payment.status,
        amount=payment.amount if amount is None else amount,
        message=message[:255],
        raw_response=dict(raw) if raw else None,
    )


def _event_payload(payment: Payment, order: Order, **extra) -> Dict[str, Any]:
    payload = {
        "order_code": order.order_code,
        "payment_code": payment.payment_code,
        "amount": str(payment.amount),
        "currency": payment.currency,
        "status": payment.status,
    }
    payload.update(extra)
    return payload


def _lock_order(order_id: int) -> Order:
    return Order.objects.select_for_update().get(pk=order_id)


def get_payment(payment_code: str, user=None) -> Payment:
    qs = Payment.objects.select_related("order").filter(payment_code=payment_code)
    if user is not None:
        qs = qs.filter(order__user=user)
    payment = qs.first()
    if payment is None:
        raise NotFound(f"Payment not found: {payment_code}")
    return payment


def get_payment_by_txn_ref(txn_ref: str) -> Payment:
    payment = Payment.objects.select_related("order").filter(txn_ref=txn_ref).first()
    if payment is None:
        raise NotFound(f"Payment not found: {txn_ref}")
    return payment


def list_order_payments(order_code: str, user=None):
    """Every attempt for one order, newest first."""
    qs = Order.objects.filter(order_code=order_code)
    if user is not None:
        qs = qs.filter(user=user)
    order = qs.first()
    if order is None:
        raise NotFound(f"Order not found: {order_code}")
    return order.payments.select_related("order").order_by("-created_at", "-id")


def _expire_locked(payment: Payment, message: str) -> None:
    payment.transition_to(PaymentStatus.EXPIRED)
    payment.save(update_fields=["status", "updated_at"])
    _record(payment, PaymentTransaction.Type.TIMEOUT, message)
    logger.info("Payment %s expired (deadline %s)", payment.payment_code, payment.expires_at.isoformat())


# ---------- Creation ----------

@transaction.atomic
def create_payment(order: Order, client_ip: str, locale: Optional[str] = None) -> Payment:
    """Open a new gateway attempt for an unpaid order.

    Only one PENDING payment may exist per order. A pending attempt whose
    deadline already passed is expired here rather than waiting for the sweeper.
    """
    order = _lock_order(order.pk)
    if order.status != OrderStatus.PENDING_PAYMENT:
        raise InvalidTransition("Order", order.status, OrderStatus.PAID, "order is not awaiting payment")

    now = timezone.now()
    for pending in Payment.objects.select_for_update().filter(order=order, status=PaymentStatus.PENDING):
        if pending.expires_at > now:
            raise InvalidTransition(
                "Payment", pending.status, PaymentStatus.PENDING,
                f"payment {pending.payment_code} is already in progress",
            )
        _expire_locked(pending, "Superseded by a new payment attempt")
        events.emit(order.user_id, PaymentEvent.Kind.EXPIRED, _event_payload(pending, order, order_cancelled=False))

    payment = Payment(
        payment_code=generate_payment_code(),
        order=order,
        amount=order.total,
        currency=order.currency,
        txn_ref=generate_txn_ref(),
        order_info=f"Payment for order {order.order_code}",
        client_ip=client_ip or "",
        expires_at=now + timedelta(minutes=int(_vnpay("TIMEOUT_MINUTES", 15))),
    )
    payment.payment_url = vnpay.build_redirect_url(
        pay_url=_vnpay("PAY_URL"),
        tmn_code=_vnpay("TMN_CODE"),
        secret=_vnpay("HASH_SECRET"),
        amount=payment.amount,
        currency=_vnpay("CURRENCY", payment.currency),
        txn_ref=payment.txn_ref,
        order_info=payment.order_info,
        return_url=_vnpay("RETURN_URL"),
        client_ip=payment.client_ip,
        created_at=now,
        expires_at=payment.expires_at,
        locale=locale or _vnpay("LOCALE", "vn"),
        version=_vnpay("VERSION", "2.1.0"),
        order_type=_vnpay("ORDER_TYPE", "other"),
        command=_vnpay("COMMAND", "pay"),
    )
    payment.save()
    _record(payment, PaymentTransaction.Type.PAYMENT, "Payment URL created")
    logger.info(
        "Payment %s created for order %s amount=%s txn_ref=%s",
        payment.payment_code, order.order_code, payment.amount, payment.txn_ref,
    )
    return payment


def start_payment(order_code: str, user, client_ip: str, locale: Optional[str] = None) -> Payment:
    """Retry entry point: new attempt for one of the user's own orders."""
    order = Order.objects.filter(order_code=order_code, user=user).first()
    if order is None:
        raise NotFound(f"Order not found: {order_code}")
    return create_payment(order, client_ip=client_ip, locale=locale)


# ---------- Inbound callbacks ----------

def process_callback(params: Mapping[str, Any], channel: str) -> CallbackOutcome:
    """Apply a browser return or IPN callback.

    Signature, transaction reference and amount are checked before anything
    is written. Replays against a finished payment only add an audit row.
    """
    if channel not in CALLBACK_CHANNELS:
        raise ValueError(f"Unknown callback channel: {channel}")

    try:
        result = vnpay.verify_callback(params, _vnpay("HASH_SECRET", ""))
    except SignatureInvalid as e:
        logger.warning(
            "Rejected %s callback txn_ref=%s: %s", channel, params.get("vnp_TxnRef", ""), e
        )
        raise

    txn_type = PaymentTransaction.Type.WEBHOOK if channel == "ipn" else PaymentTransaction.Type.PAYMENT
    with transaction.atomic():
        order_id = Payment.objects.filter(txn_ref=result.txn_ref).values_list("order_id", flat=True).first()
        if order_id is None:
            logger.warning("Rejected %s callback for unknown txn_ref=%s", channel, result.txn_ref)
            raise UnknownTransaction(result.txn_ref)
        order = _lock_order(order_id)
        payment = Payment.objects.select_for_update().get(txn_ref=result.txn_ref)

        if payment.is_terminal:
            message = f"Duplicate callback ignored (response {result.response_code})"
            if result.amount != payment.amount:
                message = f"Duplicate callback ignored (response {result.response_code}, amount {result.amount})"
                logger.warning(
                    "Duplicate %s callback txn_ref=%s with amount %s != %s",
                    channel, result.txn_ref, result.amount, payment.amount,
                )
            _record(payment, txn_type, message, channel=channel, raw=result.raw)
            if payment.status == PaymentStatus.EXPIRED and result.succeeded:
                logger.error(
                    "Payment %s reported paid by gateway after it expired; needs manual review",
                    payment.payment_code,
                )
            else:
                logger.info("Duplicate %s callback for payment %s (%s)", channel, payment.payment_code, payment.status)
            return CallbackOutcome(payment, duplicate=True, succeeded=payment.status == PaymentStatus.COMPLETED)

        if result.amount != payment.amount:
            logger.warning(
                "Rejected %s callback txn_ref=%s: amount %s != %s",
                channel, result.txn_ref, result.amount, payment.amount,
            )
            raise AmountMismatch(result.txn_ref, payment.amount, result.amount)

        message = vnpay.describe_response(result.response_code)
        payment.gateway_response_code = result.response_code
        payment.gateway_transaction_no = result.transaction_no
        payment.gateway_message = message[:255]
        payment.bank_code = result.bank_code

        if result.succeeded:
            payment.transition_to(PaymentStatus.COMPLETED)
            payment.paid_at = timezone.now()
            payment.save()
            order.set_payment_status(OrderPaymentStatus.PAID, save=False)
            order.transition_to(OrderStatus.PAID, save=False)
            order.save(update_fields=["status", "payment_status", "updated_at"])
            _record(payment, txn_type, message, channel=channel, raw=result.raw)
            events.emit(order.user_id, PaymentEvent.Kind.SUCCEEDED, _event_payload(payment, order))
            logger.info("Payment %s completed via %s, order %s PAID", payment.payment_code, channel, order.order_code)
        else:
            payment.transition_to(PaymentStatus.FAILED)
            payment.save()
            order.set_payment_status(OrderPaymentStatus.FAILED)
            _record(payment, txn_type, message, channel=channel, raw=result.raw)
            events.emit(
                order.user_id, PaymentEvent.Kind.FAILED, _event_payload(payment, order, message=message)
            )
            logger.info(
                "Payment %s failed via %s: %s %s", payment.payment_code, channel, result.response_code, message
            )

    return CallbackOutcome(payment, duplicate=False, succeeded=result.succeeded)


# ---------- Expiration sweeper ----------

def _expire_one(payment_id: int, now) -> tuple[bool, bool]:
    with transaction.atomic():
        order_id = Payment.objects.filter(pk=payment_id).values_list("order_id", flat=True).first()
        if order_id is None:
            return False, False
        order = _lock_order(order_id)
        payment = Payment.objects.select_for_update().get(pk=payment_id)
        # a callback or a concurrent sweep got here first
        if payment.status != PaymentStatus.PENDING or payment.expires_at >= now:
            return False, False

        _expire_locked(payment, "Payment window expired")
        cancelled = False
        if (
            order.status == OrderStatus.PENDING_PAYMENT
            and not order.payments.filter(status__in=OPEN_PAYMENT_STATUSES).exists()
        ):
            release_order_stock(order)
            order.transition_to(OrderStatus.CANCELLED)
            cancelled = True
            logger.info("Order %s cancelled after payment %s expired", order.order_code, payment.payment_code)
        events.emit(
            order.user_id, PaymentEvent.Kind.EXPIRED, _event_payload(payment, order, order_cancelled=cancelled)
        )
    return True, cancelled


def _cancel_abandoned_order(order_id: int, cutoff) -> bool:
    with transaction.atomic():
        order = Order.objects.select_for_update().filter(pk=order_id).first()
        if (
            order is None
            or order.status != OrderStatus.PENDING_PAYMENT
            or order.created_at >= cutoff
            or order.payments.filter(status__in=OPEN_PAYMENT_STATUSES).exists()
        ):
            return False
        release_order_stock(order)
        order.transition_to(OrderStatus.CANCELLED)
    logger.info("Order %s cancelled, unpaid since %s", order.order_code, order.created_at.isoformat())
    return True


def _prune_sweep_runs(keep: int) -> int:
    old = list(SweepRun.objects.order_by("-started_at", "-id").values_list("pk", flat=True)[keep:])
    if not old:
        return 0
    deleted, _ = SweepRun.objects.filter(pk__in=old).delete()
    return deleted


def expire_stale_payments(now=None, batch_size: int = 100) -> SweepResult:
    """Expire PENDING payments past their deadline and free what they held.

    Each payment is handled in its own transaction so one bad row cannot
    undo the rest of the batch. Safe to run concurrently with callbacks and
    with other sweeps.
    """
    now = now or timezone.now()
    result = SweepResult()
    run = SweepRun.objects.create(started_at=timezone.now())
    result.run = run
    try:
        ids = list(
            Payment.objects.filter(status=PaymentStatus.PENDING, expires_at__lt=now)
            .order_by("expires_at", "id")
            .values_list("pk", flat=True)[:batch_size]
        )
        for pk in ids:
            expired, cancelled = _expire_one(pk, now)
            if not expired:
                result.skipped += 1
                continue
            result.expired += 1
            result.cancelled_orders += int(cancelled)

        cutoff = now - timedelta(hours=int(getattr(settings, "ORDER_PAYMENT_WINDOW_HOURS", 24)))
        stale_orders = list(
            Order.objects.filter(status=OrderStatus.PENDING_PAYMENT, created_at__lt=cutoff)
            .exclude(payments__status__in=OPEN_PAYMENT_STATUSES)
            .order_by("created_at", "id")
            .values_list("pk", flat=True)[:batch_size]
        )
        for pk in stale_orders:
            result.cancelled_orders += int(_cancel_abandoned_order(pk, cutoff))
    except Exception as e:
        run.error = str(e)[:255]
        run.expired_count = result.expired
        run.cancelled_orders = result.cancelled_orders
        run.finished_at = timezone.now()
        run.save()
        logger.exception("Payment sweep failed after expiring %s payments", result.expired)
        raise

    run.ok = True
    run.expired_count = result.expired
    run.cancelled_orders = result.cancelled_orders
    run.finished_at = timezone.now()
    run.save()
    _prune_sweep_runs(int(getattr(settings, "PAYMENT_SWEEP_HISTORY", 500)))
    if result.expired or result.cancelled_orders:
        logger.info(
            "Payment sweep: expired=%s cancelled_orders=%s skipped=%s",
            result.expired, result.cancelled_orders, result.skipped,
        )
    return result


def sweeper_health() -> Dict[str, Any]:
    interval = int(getattr(settings, "PAYMENT_SWEEP_INTERVAL_SECONDS", 300))
    last_run = SweepRun.objects.order_by("-started_at", "-id").first()
    last_ok = SweepRun.objects.filter(ok=True).order_by("-finished_at", "-id").first()
    stale = last_ok is None or last_ok.finished_at < timezone.now() - timedelta(seconds=2 * interval)
    return {
        "stale": stale,
        "interval_seconds": interval,
        "last_run_at": last_run.started_at.isoformat() if last_run else None,
        "last_run_ok": last_run.ok if last_run else None,
        "last_success_at": last_ok.finished_at.isoformat() if last_ok else None,
        "pending_overdue": Payment.objects.filter(
            status=PaymentStatus.PENDING, expires_at__lt=timezone.now()
        ).count(),
    }


# ---------- Refunds and status checks ----------

def _refund_amount(payment: Payment, amount) -> Decimal:
    if amount is None:
        return payment.amount
    try:
        value = Decimal(str(amount)).quantize(Decimal("0.01"))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"Invalid refund amount: {amount}")
    if value <= 0 or value > payment.amount:
        raise ValidationError(f"Refund amount must be between 0 and {payment.amount}")
    return value


def refund_payment(payment_code: str, reason: str, amount=None, requested_by: str = "admin",
                   client_ip: str = "127.0.0.1") -> Payment:
    """Refund a completed payment through the gateway.

    Nothing local changes unless the gateway confirms. A full refund also
    moves the order to REFUNDED and puts its books back on sale.
    """
    payment = get_payment(payment_code)
    if payment.status != PaymentStatus.COMPLETED:
        raise InvalidTransition("Payment", payment.status, PaymentStatus.REFUNDED, "only completed payments can be refunded")
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("Refund reason is required")
    value = _refund_amount(payment, amount)
    full = value == payment.amount
    if full and not payment.order.can_transition_to(OrderStatus.REFUNDED):
        raise InvalidTransition(
            "Order", payment.order.status, OrderStatus.REFUNDED, "only paid orders can be fully refunded"
        )

    claimed = Payment.objects.filter(
        pk=payment.pk, status=PaymentStatus.COMPLETED, refund_requested_at__isnull=True
    ).update(refund_requested_at=timezone.now())
    if not claimed:
        raise InvalidTransition(
            "Payment", payment.status, PaymentStatus.REFUNDED, "a refund for this payment is already in progress"
        )

    try:
        response = vnpay.VNPayClient().refund(payment, value, reason, requested_by, client_ip)
    except GatewayUnavailable as e:
        Payment.objects.filter(pk=payment.pk).update(refund_requested_at=None)
        _record(
            payment, PaymentTransaction.Type.REFUND, f"Refund failed: {e}",
            amount=value, raw=e.response or None,
        )
        logger.error("Refund of %s for payment %s failed: %s", value, payment.payment_code, e)
        raise

    with transaction.atomic():
        order = _lock_order(payment.order_id)
        payment = Payment.objects.select_for_update().get(pk=payment.pk)
        if payment.status != PaymentStatus.COMPLETED:
            logger.error(
                "Gateway refunded payment %s but it is now %s; needs manual review",
                payment.payment_code, payment.status,
            )
            raise InvalidTransition("Payment", payment.status, PaymentStatus.REFUNDED)

        payment.transition_to(PaymentStatus.REFUNDED)
        payment.refunded_amount = value
        payment.refunded_at = timezone.now()
        payment.save(update_fields=["status", "refunded_amount", "refunded_at", "updated_at"])

        if full:
            order.set_payment_status(OrderPaymentStatus.REFUNDED, save=False)
            order.transition_to(OrderStatus.REFUNDED, save=False)
            order.save(update_fields=["status", "payment_status", "updated_at"])
            release_order_stock(order)
        else:
            order.set_payment_status(OrderPaymentStatus.PARTIALLY_REFUNDED)

        _record(
            payment, PaymentTransaction.Type.REFUND, f"Refunded {value} by {requested_by}: {reason}",
            amount=value, raw=response,
        )
        events.emit(
            order.user_id, PaymentEvent.Kind.REFUNDED,
            _event_payload(payment, order, refund_amount=str(value), reason=reason, full=full),
        )
    logger.info("Payment %s refunded %s (%s)", payment.payment_code, value, "full" if full else "partial")
    return payment


def check_payment_status(payment_code: str, client_ip: str = "127.0.0.1") -> Dict[str, Any]:
    """Ask the gateway what it knows about a payment. Never changes local state."""
    payment = get_payment(payment_code)
    try:
        response = vnpay.VNPayClient().query(payment, client_ip)
    except GatewayUnavailable as e:
        _record(payment, PaymentTransaction.Type.STATUS_CHECK, f"Status check failed: {e}", raw=e.response or None)
        raise
    _record(
        payment, PaymentTransaction.Type.STATUS_CHECK,
        f"Gateway status {response.get('vnp_TransactionStatus', '')}".strip(),
        raw=response,
    )
    return {
        "payment_code": payment.payment_code,
        "local_status": payment.status,
        "gateway_status": response.get("vnp_TransactionStatus", ""),
        "gateway_response": response,
    }
