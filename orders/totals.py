"""Pure order totals calculation.

No ORM access here: callers pass in anything exposing ``quantity`` and
``unit_price`` (cart lines, order items, plain objects in tests) together
with a :class:`PricingPolicy`.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Iterable

from .exceptions import ValidationError

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def _money(value) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class PricingPolicy:
    free_shipping_threshold: Decimal
    shipping_fee: Decimal
    discount_threshold: Decimal
    discount_rate: Decimal
    tax_rate: Decimal
    currency: str = "VND"

    @classmethod
    def from_settings(cls) -> "PricingPolicy":
        from django.conf import settings

        cfg = settings.ORDER_PRICING
        return cls(
            free_shipping_threshold=Decimal(str(cfg["FREE_SHIPPING_THRESHOLD"])),
            shipping_fee=Decimal(str(cfg["SHIPPING_FEE"])),
            discount_threshold=Decimal(str(cfg["DISCOUNT_THRESHOLD"])),
            discount_rate=Decimal(str(cfg["DISCOUNT_RATE"])),
            tax_rate=Decimal(str(cfg["TAX_RATE"])),
            currency=cfg.get("CURRENCY", "VND"),
        )


@dataclass(frozen=True)
class Totals:
    sub_total: Decimal
    shipping_fee: Decimal
    discount: Decimal
    tax: Decimal
    total: Decimal
    total_quantity: int
    currency: str

    def as_dict(self) -> dict[str, Any]:
        return {
            "sub_total": str(self.sub_total),
            "shipping_fee": str(self.shipping_fee),
            "discount": str(self.discount),
            "tax": str(self.tax),
            "total": str(self.total),
            "total_quantity": self.total_quantity,
            "currency": self.currency,
        }


def calculate_totals(lines: Iterable[Any], policy: PricingPolicy) -> Totals:
    """Return the monetary breakdown for ``lines`` under ``policy``.

    total = sub_total + shipping_fee + tax - discount, never below zero.
    """
    lines = list(lines)
    if not lines:
        raise ValidationError("Cart is empty")

    sub_total = ZERO
    quantity = 0
    for line in lines:
        qty = int(line.quantity)
        price = Decimal(str(line.unit_price))
        if qty < 1:
            raise ValidationError(f"Quantity must be at least 1 (got {qty})")
        if price < 0:
            raise ValidationError(f"Unit price must not be negative (got {price})")
        sub_total += price * qty
        quantity += qty
    sub_total = _money(sub_total)

    shipping_fee = ZERO if sub_total >= policy.free_shipping_threshold else _money(policy.shipping_fee)
    discount = _money(sub_total * policy.discount_rate) if sub_total >= policy.discount_threshold else ZERO
    tax = _money((sub_total + shipping_fee - discount) * policy.tax_rate)
    total = max(ZERO, _money(sub_total + shipping_fee + tax - discount))

    return Totals(
        sub_total=sub_total,
        shipping_fee=shipping_fee,
        discount=discount,
        tax=tax,
        total=total,
        total_quantity=quantity,
        currency=policy.currency,
    )
