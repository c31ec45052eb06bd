"""Shelf-life helpers for dressed batches."""

import calendar
from datetime import date, timedelta
from typing import Optional

from core.models.entities import DressedBatch, DressedBatchStatus


def add_months(day: date, months: int) -> date:
    """Same day ``months`` later, clamped to the end of a shorter month."""
    month_index = day.month - 1 + months
    year = day.year + month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(day.day, last_day))


def default_expiry_date(processing_date: date, months: int = 3) -> date:
    return add_months(processing_date, months)


def is_expired(batch: DressedBatch, today: Optional[date] = None) -> bool:
    """True once the expiry date has passed. Batches without one never expire."""
    if batch.expiry_date is None:
        return False
    today = today or date.today()
    return batch.expiry_date < today


def is_expiring_soon(batch: DressedBatch, today: Optional[date] = None, days: int = 7) -> bool:
    """True for in-storage batches that expire within ``days`` (inclusive)."""
    if batch.expiry_date is None or batch.status != DressedBatchStatus.IN_STORAGE:
        return False
    today = today or date.today()
    return today <= batch.expiry_date <= today + timedelta(days=days)
