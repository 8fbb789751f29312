"""
Period-End Resolver - derive a billing period boundary when the processor omits it.

Pure functions; no I/O.
"""

import calendar
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum

from app.exceptions import PeriodDerivationError

DEFAULT_PERIOD_DAYS = 30


class PeriodEndSource(str, Enum):
    """Which rung of the fallback chain produced the value."""

    AUTHORITATIVE = "authoritative"
    DERIVED = "derived"
    DEFAULT = "default"


@dataclass(frozen=True)
class ResolvedPeriodEnd:
    value: datetime
    source: PeriodEndSource


def _add_months(start: datetime, months: int) -> datetime:
    """Calendar month arithmetic, clamping to the last day of short months."""
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


def _add_interval(start: datetime, interval: str, count: int, default_days: int) -> datetime:
    if interval == "day":
        return start + timedelta(days=count)
    if interval == "week":
        return start + timedelta(weeks=count)
    if interval == "month":
        return _add_months(start, count)
    if interval == "year":
        return _add_months(start, 12 * count)
    return start + timedelta(days=default_days)


def from_unix(seconds: int) -> datetime:
    """Convert unix seconds to an aware UTC datetime, or raise PeriodDerivationError."""
    try:
        return datetime.fromtimestamp(seconds, tz=UTC)
    except (OverflowError, OSError, ValueError) as exc:
        raise PeriodDerivationError(f"timestamp {seconds} is not a real date") from exc


def resolve_period_end(
    period_end: int | None,
    created: int | None = None,
    interval: str | None = None,
    interval_count: int | None = None,
    now: datetime | None = None,
    default_days: int = DEFAULT_PERIOD_DAYS,
) -> ResolvedPeriodEnd:
    """
    Resolve the end of the current billing period.

    1. The processor's own `current_period_end`, when present.
    2. `created` + `interval_count` x `interval` (defaults: month x 1).
    3. `now` + `default_days`.

    Raises:
        PeriodDerivationError: The result is not a representable calendar date.
    """
    if period_end:
        return ResolvedPeriodEnd(from_unix(period_end), PeriodEndSource.AUTHORITATIVE)

    if created:
        start = from_unix(created)
        try:
            value = _add_interval(start, interval or "month", interval_count or 1, default_days)
        except (OverflowError, ValueError) as exc:
            raise PeriodDerivationError(
                f"{created} + {interval_count} {interval} overflows the calendar"
            ) from exc
        return ResolvedPeriodEnd(value, PeriodEndSource.DERIVED)

    reference = now or datetime.now(UTC)
    try:
        value = reference + timedelta(days=default_days)
    except OverflowError as exc:
        raise PeriodDerivationError(f"{reference} + {default_days} days overflows") from exc
    return ResolvedPeriodEnd(value, PeriodEndSource.DEFAULT)


def validated_period_end(period_end: int | None) -> datetime | None:
    """
    The processor's period end if present and valid, else None.

    Used where a missing or invalid value must leave the stored value alone
    rather than trigger the fallback chain.
    """
    if not period_end:
        return None
    try:
        return from_unix(period_end)
    except PeriodDerivationError:
        return None
