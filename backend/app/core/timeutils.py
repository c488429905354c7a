from datetime import datetime, timezone


def utcnow() -> datetime:
    """当前 UTC 时间（不带时区，与 SQLite 中存储的时间保持一致）"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)
