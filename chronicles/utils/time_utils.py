import datetime


def utcnow() -> datetime.datetime:
    """Current UTC time as a naive datetime, matching the stored columns."""
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)
