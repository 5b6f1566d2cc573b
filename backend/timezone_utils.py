"""
Timezone utilities for tenant-aware date/time handling.

Appointments are stored as naive UTC datetimes, but customers book them in the
tenant's local wall-clock time. Weekly series must keep the same local time
across DST changes, so expansion happens in local time and each occurrence is
converted to UTC individually.
"""
from datetime import datetime, date
import pytz


def get_tenant_timezone(tenant_timezone: str = "UTC"):
    """
    Get pytz timezone object for tenant.

    Falls back to UTC for unknown timezone names.
    """
    try:
        return pytz.timezone(tenant_timezone)
    except pytz.exceptions.UnknownTimeZoneError:
        return pytz.UTC


def get_tenant_today(tenant_timezone: str = "UTC") -> date:
    """Current date in the tenant's timezone, not the server's."""
    tz = get_tenant_timezone(tenant_timezone)
    utc_now = datetime.utcnow().replace(tzinfo=pytz.UTC)
    return utc_now.astimezone(tz).date()


def tenant_local_to_utc(local_datetime: datetime, tenant_timezone: str = "UTC") -> datetime:
    """
    Convert a naive tenant-local datetime to naive UTC for storage.

    Example:
        2024-03-12 09:00 in America/New_York (EDT, UTC-4) -> 2024-03-12 13:00
    """
    tz = get_tenant_timezone(tenant_timezone)
    localized = tz.localize(local_datetime)
    return localized.astimezone(pytz.UTC).replace(tzinfo=None)
