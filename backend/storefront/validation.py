from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from .constants import (
    METHOD_CASH,
    ORDER_SOURCES,
    ORDER_TYPES,
    PAYMENT_METHODS,
    SOURCE_CUSTOMER,
    TAX_EXCLUSIVE,
    TAX_INCLUSIVE,
    TAX_TYPES,
    TYPE_DELIVERY,
    TYPE_TAKEAWAY,
)
from .errors import ConflictError, ValidationError

__all__ = [
    "ValidationError",
    "ConflictError",
    "OrderItemInput",
    "OrderInput",
    "parse_order_input",
    "expected_total_cents",
    "require_int",
    "optional_str",
]

# Maximum money value accepted on any field (999,999,999 cents)
MAX_AMOUNT_CENTS = 999_999_999
MAX_ITEM_QUANTITY = 10_000
MAX_ITEMS = 200


@dataclass(frozen=True)
class OrderItemInput:
    product_id: int
    quantity: int
    unit_price_cents: int | None = None
    discount_cents: int = 0
    notes: str | None = None


@dataclass(frozen=True)
class OrderInput:
    """
    Normalized create-order request.

    subtotal_cents / total_cents are None when the client did not quote
    them; the order service then derives them from current prices.
    """
    order_type: str
    order_source: str
    payment_method: str
    items: tuple[OrderItemInput, ...]
    customer_name: str | None = None
    customer_phone: str | None = None
    customer_email: str | None = None
    customer_address: str | None = None
    table_number: str | None = None
    notes: str | None = None
    subtotal_cents: int | None = None
    discount_cents: int = 0
    tax_cents: int = 0
    tax_type: str = TAX_INCLUSIVE
    service_charge_cents: int = 0
    delivery_fee_cents: int = 0
    total_cents: int | None = None

    @property
    def is_cash(self) -> bool:
        return self.payment_method == METHOD_CASH


def require_int(value: Any, name: str, *, minimum: int | None = None, maximum: int | None = None) -> int:
    """
    Strict integer coercion: accepts ints and digit strings, rejects bools,
    floats and scientific notation.
    """
    if isinstance(value, bool):
        raise ValidationError(f"{name} must be an integer")
    if isinstance(value, int):
        result = value
    elif isinstance(value, str):
        stripped = value.strip()
        body = stripped[1:] if stripped.startswith("-") else stripped
        if not body.isdigit():
            raise ValidationError(f"{name} must be an integer")
        result = int(stripped)
    else:
        raise ValidationError(f"{name} must be an integer")

    if minimum is not None and result < minimum:
        raise ValidationError(f"{name} must be >= {minimum}")
    if maximum is not None and result > maximum:
        raise ValidationError(f"{name} must be <= {maximum}")
    return result


def _optional_money(data: dict, key: str, default: int | None = 0) -> int | None:
    value = data.get(key)
    if value is None:
        return default
    return require_int(value, key, minimum=0, maximum=MAX_AMOUNT_CENTS)


def optional_str(data: dict, key: str, max_len: int) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{key} must be a string")
    value = value.strip()
    if len(value) > max_len:
        raise ValidationError(f"{key} must be at most {max_len} characters")
    return value or None


def _choice(data: dict, key: str, choices, default: str | None = None) -> str:
    value = data.get(key, default)
    if value is None:
        raise ValidationError(f"{key} is required")
    if not isinstance(value, str) or value.upper() not in choices:
        raise ValidationError(f"Invalid {key}: {value}. Must be one of {list(choices)}")
    return value.upper()


def expected_total_cents(
    *,
    subtotal_cents: int,
    discount_cents: int,
    tax_cents: int,
    tax_type: str,
    service_charge_cents: int,
    delivery_fee_cents: int,
) -> int:
    """total = subtotal - discount + tax (exclusive only) + service charge + delivery fee"""
    total = subtotal_cents - discount_cents + service_charge_cents + delivery_fee_cents
    if tax_type == TAX_EXCLUSIVE:
        total += tax_cents
    return total


def _parse_item(raw: Any, index: int) -> OrderItemInput:
    if not isinstance(raw, dict):
        raise ValidationError(f"items[{index}] must be an object")
    if raw.get("product_id") is None:
        raise ValidationError(f"items[{index}].product_id is required")
    if raw.get("quantity") is None:
        raise ValidationError(f"items[{index}].quantity is required")
    unit_price = raw.get("unit_price_cents")
    return OrderItemInput(
        product_id=require_int(raw["product_id"], f"items[{index}].product_id", minimum=1),
        quantity=require_int(raw["quantity"], f"items[{index}].quantity", minimum=1, maximum=MAX_ITEM_QUANTITY),
        unit_price_cents=(
            None if unit_price is None
            else require_int(unit_price, f"items[{index}].unit_price_cents", minimum=0, maximum=MAX_AMOUNT_CENTS)
        ),
        discount_cents=_optional_money(raw, "discount_cents") or 0,
        notes=optional_str(raw, "notes", 500),
    )


def parse_order_input(data: Any) -> OrderInput:
    """
    Validate a create-order payload.

    Structural and arithmetic checks only; product existence, price and
    stock are checked by the order service against the database.
    """
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")

    raw_items = data.get("items")
    if not isinstance(raw_items, list) or not raw_items:
        raise ValidationError("items must be a non-empty list")
    if len(raw_items) > MAX_ITEMS:
        raise ValidationError(f"An order may contain at most {MAX_ITEMS} items")
    items = tuple(_parse_item(raw, i) for i, raw in enumerate(raw_items))

    for index, item in enumerate(items):
        if item.unit_price_cents is not None and item.discount_cents > item.unit_price_cents * item.quantity:
            raise ValidationError(f"items[{index}].discount_cents exceeds the line amount")

    order_type = _choice(data, "order_type", ORDER_TYPES, default=TYPE_TAKEAWAY)
    tax_type = _choice(data, "tax_type", TAX_TYPES, default=TAX_INCLUSIVE)

    parsed = OrderInput(
        order_type=order_type,
        order_source=_choice(data, "order_source", ORDER_SOURCES, default=SOURCE_CUSTOMER),
        payment_method=_choice(data, "payment_method", PAYMENT_METHODS),
        items=items,
        customer_name=optional_str(data, "customer_name", 255),
        customer_phone=optional_str(data, "customer_phone", 64),
        customer_email=optional_str(data, "customer_email", 255),
        customer_address=optional_str(data, "customer_address", 1000),
        table_number=optional_str(data, "table_number", 32),
        notes=optional_str(data, "notes", 1000),
        subtotal_cents=_optional_money(data, "subtotal_cents", default=None),
        discount_cents=_optional_money(data, "discount_cents"),
        tax_cents=_optional_money(data, "tax_cents"),
        tax_type=tax_type,
        service_charge_cents=_optional_money(data, "service_charge_cents"),
        delivery_fee_cents=_optional_money(data, "delivery_fee_cents"),
        total_cents=_optional_money(data, "total_cents", default=None),
    )

    if parsed.delivery_fee_cents and order_type != TYPE_DELIVERY:
        raise ValidationError("delivery_fee_cents is only allowed on DELIVERY orders")
    if order_type == TYPE_DELIVERY and not parsed.customer_address:
        raise ValidationError("customer_address is required for DELIVERY orders")

    if parsed.subtotal_cents is not None:
        if parsed.discount_cents > parsed.subtotal_cents:
            raise ValidationError("discount_cents exceeds subtotal_cents")
        if parsed.total_cents is not None:
            expected = expected_total_cents(
                subtotal_cents=parsed.subtotal_cents,
                discount_cents=parsed.discount_cents,
                tax_cents=parsed.tax_cents,
                tax_type=tax_type,
                service_charge_cents=parsed.service_charge_cents,
                delivery_fee_cents=parsed.delivery_fee_cents,
            )
            if parsed.total_cents != expected:
                raise ValidationError(
                    "total_cents does not match subtotal - discount + tax + service charge + delivery fee",
                    {"total_cents": parsed.total_cents, "expected_total_cents": expected},
                )
    elif parsed.total_cents is not None:
        raise ValidationError("subtotal_cents is required when total_cents is given")

    return parsed
