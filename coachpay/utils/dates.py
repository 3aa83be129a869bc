from datetime import UTC, datetime

from dateutil.parser import isoparse
from dateutil.relativedelta import relativedelta


def utc_now() -> datetime:
    return datetime.now(UTC)


def expiry_after_months(months: int, start: datetime | None = None) -> datetime:
    """Calendar-month offset, clamped to month end (Jan 31 + 1 month -> Feb 28/29)."""
    return (start or utc_now()) + relativedelta(months=months)


def parse_timestamp(value) -> datetime | None:
    """
    Parse an ISO-8601 string or a Unix timestamp into an aware UTC datetime.

    Returns None for empty or unparseable values.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    if isinstance(value, int | float):
        return datetime.fromtimestamp(value, tz=UTC)
    try:
        parsed = isoparse(str(value))
    except (ValueError, OverflowError):
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
