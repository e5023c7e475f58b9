"""Naive-UTC time helpers and defensive parsers for QuickBooks payload values."""
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Optional


def utcnow() -> datetime:
    """Current time as a naive UTC datetime (the storage convention)"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def parse_qb_datetime(value: Any) -> Optional[datetime]:
    """Parse a QBO MetaData timestamp like 2024-01-31T10:15:00-08:00"""
    if not value:
        return None
    if isinstance(value, datetime):
        return to_naive_utc(value)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return to_naive_utc(datetime.fromisoformat(text))
    except ValueError:
        return None


def parse_qb_date(value: Any) -> Optional[date]:
    """Parse a QBO TxnDate/DueDate (YYYY-MM-DD)"""
    if not value:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return datetime.strptime(str(value).strip()[:10], "%Y-%m-%d").date()
    except ValueError:
        return None


def parse_decimal(value: Any) -> Optional[Decimal]:
    """Money/quantity values arrive as numbers or strings; anything else is None"""
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def format_cdc_timestamp(value: datetime) -> str:
    """QBO expects changedSince as YYYY-MM-DDTHH:MM:SS+00:00"""
    return to_naive_utc(value).strftime("%Y-%m-%dT%H:%M:%S") + "+00:00"
