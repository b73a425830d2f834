from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

# Midtrans reports transaction times in Western Indonesia Time
GATEWAY_TZ = timezone(timedelta(hours=7))


def utcnow() -> datetime:
    """Server-side 'now' in UTC (naive, canonical)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_gateway_datetime(value: Optional[str]) -> Optional[datetime]:
    """
    Parse a gateway timestamp ("YYYY-MM-DD HH:MM:SS", gateway local time)
    into a UTC-naive datetime. Unparseable values yield None.
    """
    if not value:
        return None
    try:
        dt = datetime.strptime(value.strip(), "%Y-%m-%d %H:%M:%S")
    except ValueError:
        return None
    return dt.replace(tzinfo=GATEWAY_TZ).astimezone(timezone.utc).replace(tzinfo=None)


def format_gateway_datetime(dt: datetime) -> str:
    """Format a UTC-naive datetime the way the gateway expects (with offset)."""
    aware = dt.replace(tzinfo=timezone.utc).astimezone(GATEWAY_TZ)
    return aware.strftime("%Y-%m-%d %H:%M:%S %z")


def business_date(dt: Optional[datetime] = None) -> str:
    """YYYYMMDD stamp used in order numbers."""
    return (dt or utcnow()).strftime("%Y%m%d")


def to_utc_z(dt: Optional[datetime]) -> Optional[str]:
    """
    Serializes datetime to ISO-8601 with trailing 'Z'.
    If dt is naive, it is treated as UTC.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt_utc = dt.astimezone(timezone.utc).replace(microsecond=0)
    return dt_utc.isoformat().replace("+00:00", "Z")
