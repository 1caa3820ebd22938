from datetime import datetime, timezone


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every datetime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def resolve(now: datetime | None) -> datetime:
    return now if now is not None else utcnow()


def to_ms(delta) -> int:
    return int(delta.total_seconds() * 1000)


def naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)
