# Overview: Human-readable order number allocation (PREFIX-YYYYMMDD-NNNNN) backed by an atomic sequence table.

from __future__ import annotations

import secrets
import string
import time

from flask import current_app
from sqlalchemy import update

from ..constants import ORDER_NUMBER_PREFIXES, SOURCE_CUSTOMER
from ..extensions import db
from ..models import Order, OrderSequence
from ..time_utils import business_date

SEQUENCE_PAD = 5
_FALLBACK_ALPHABET = string.ascii_uppercase + string.digits


def prefix_for_source(order_source: str) -> str:
    return ORDER_NUMBER_PREFIXES.get(order_source, ORDER_NUMBER_PREFIXES[SOURCE_CUSTOMER])


def next_sequence_value(prefix: str, date_stamp: str) -> int:
    """
    Atomically allocate the next per-day sequence value for a prefix.

    The UPDATE ... SET next_number = next_number + 1 takes the row lock;
    the first caller of the day inserts the row. A losing concurrent insert
    raises IntegrityError, which the caller handles by rolling back and
    re-running its unit (the UPDATE then succeeds).
    """
    stmt = (
        update(OrderSequence)
        .where(OrderSequence.prefix == prefix, OrderSequence.business_date == date_stamp)
        .values(next_number=OrderSequence.next_number + 1)
    )

    def _read_allocated() -> int:
        db.session.flush()
        current = (
            db.session.query(OrderSequence.next_number)
            .filter_by(prefix=prefix, business_date=date_stamp)
            .scalar()
        )
        return current - 1

    result = db.session.execute(stmt)
    if result.rowcount:
        return _read_allocated()

    db.session.add(OrderSequence(prefix=prefix, business_date=date_stamp, next_number=2))
    db.session.flush()
    return 1


def format_order_number(prefix: str, date_stamp: str, sequence: int) -> str:
    return f"{prefix}-{date_stamp}-{sequence:0{SEQUENCE_PAD}d}"


def fallback_order_number(prefix: str) -> str:
    suffix = "".join(secrets.choice(_FALLBACK_ALPHABET) for _ in range(5))
    return f"{prefix}-{int(time.time() * 1000)}-{suffix}"


def allocate_order_number(order_source: str, *, max_attempts: int | None = None, now=None) -> str:
    """
    Allocate an order number that does not exist yet.

    Tries up to max_attempts sequence values, skipping any that collide with
    an existing order (e.g. rows created before the sequence table was
    seeded), then falls back to a millisecond timestamp + random suffix.
    The unique constraint on orders.order_number remains the final guard.
    """
    if max_attempts is None:
        max_attempts = current_app.config.get("ORDER_NUMBER_MAX_ATTEMPTS", 10)
    prefix = prefix_for_source(order_source)
    date_stamp = business_date(now)

    for _ in range(max_attempts):
        candidate = format_order_number(prefix, date_stamp, next_sequence_value(prefix, date_stamp))
        exists = db.session.query(Order.id).filter_by(order_number=candidate).first()
        if not exists:
            return candidate

    fallback = fallback_order_number(prefix)
    current_app.logger.warning(
        "Order number sequence exhausted after %s attempts; using %s", max_attempts, fallback
    )
    return fallback
