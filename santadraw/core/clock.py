import datetime


def utcnow() -> datetime.datetime:
    """Naive UTC timestamp, the form every datetime column is written in."""
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)
