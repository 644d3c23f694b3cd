# Overview: Typed payment intents stored in Payment.metadata_json.

"""
A payment carries exactly one intent, keyed by Payment.payment_type:

- order:        OrderIntent(items=[CartLine, ...])  frozen cart snapshot
- subscription: SubscriptionIntent(plan_id, billing_cycle, business_id)

Intents are validated when the payment is created. decode_intent still
refuses anything malformed (rows written by older code, manual edits) with
MalformedIntent so fulfilment can degrade to a no-op instead of crashing.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, asdict
from typing import Union

from ..models.payments import PAYMENT_TYPE_ORDER, PAYMENT_TYPE_SUBSCRIPTION
from ..models.subscriptions import VALID_BILLING_CYCLES
from ..validation import ValidationError


class MalformedIntent(ValueError):
    """Stored payment metadata could not be decoded into an intent."""


@dataclass(frozen=True)
class CartLine:
    product_id: int
    quantity: int
    unit_price_cents: int
    seller_id: int
    product_name: str

    @property
    def line_total_cents(self) -> int:
        return self.unit_price_cents * self.quantity


@dataclass(frozen=True)
class OrderIntent:
    items: tuple[CartLine, ...]

    @property
    def subtotal_cents(self) -> int:
        return sum(line.line_total_cents for line in self.items)


@dataclass(frozen=True)
class SubscriptionIntent:
    plan_id: int
    billing_cycle: str
    business_id: int


PaymentIntent = Union[OrderIntent, SubscriptionIntent]


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def encode_intent(intent: PaymentIntent) -> str:
    if isinstance(intent, OrderIntent):
        payload = {"kind": PAYMENT_TYPE_ORDER, "items": [asdict(line) for line in intent.items]}
    else:
        payload = {"kind": PAYMENT_TYPE_SUBSCRIPTION, **asdict(intent)}
    return json.dumps(payload, sort_keys=True)


def _decode_line(raw) -> CartLine:
    if not isinstance(raw, dict):
        raise MalformedIntent("cart line must be an object")
    for key in ("product_id", "quantity", "unit_price_cents", "seller_id"):
        if not _is_int(raw.get(key)):
            raise MalformedIntent(f"cart line {key} must be an integer")
    if raw["quantity"] <= 0 or raw["unit_price_cents"] < 0:
        raise MalformedIntent("cart line quantity/price out of range")
    name = raw.get("product_name")
    if not isinstance(name, str):
        raise MalformedIntent("cart line product_name must be a string")
    return CartLine(
        product_id=raw["product_id"],
        quantity=raw["quantity"],
        unit_price_cents=raw["unit_price_cents"],
        seller_id=raw["seller_id"],
        product_name=name,
    )


def decode_intent(payment_type: str, raw: str | None) -> PaymentIntent:
    """Raises MalformedIntent on anything that is not a well-formed intent."""
    if not raw:
        raise MalformedIntent("payment has no metadata")
    try:
        data = json.loads(raw)
    except ValueError as exc:
        raise MalformedIntent(f"metadata is not valid JSON: {exc}")
    if not isinstance(data, dict):
        raise MalformedIntent("metadata must be an object")

    if payment_type == PAYMENT_TYPE_ORDER:
        items = data.get("items")
        if not isinstance(items, list) or not items:
            raise MalformedIntent("order metadata has no items")
        return OrderIntent(items=tuple(_decode_line(item) for item in items))

    if payment_type == PAYMENT_TYPE_SUBSCRIPTION:
        try:
            return parse_subscription_intent(data)
        except ValidationError as exc:
            raise MalformedIntent(str(exc))

    raise MalformedIntent(f"unknown payment type: {payment_type}")


def parse_subscription_intent(data) -> SubscriptionIntent:
    """Validate client-supplied subscription metadata (write-time)."""
    if not isinstance(data, dict):
        raise ValidationError("metadata must be an object with plan_id, billing_cycle and business_id")
    plan_id = data.get("plan_id")
    business_id = data.get("business_id")
    billing_cycle = data.get("billing_cycle")
    if not _is_int(plan_id):
        raise ValidationError("metadata.plan_id must be an integer")
    if not _is_int(business_id):
        raise ValidationError("metadata.business_id must be an integer")
    if billing_cycle not in VALID_BILLING_CYCLES:
        raise ValidationError(f"metadata.billing_cycle must be one of {list(VALID_BILLING_CYCLES)}")
    return SubscriptionIntent(plan_id=plan_id, billing_cycle=billing_cycle, business_id=business_id)
