from datetime import UTC, datetime
import math


def as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def duration_seconds(duration_minutes: int) -> int:
    return max(0, int(duration_minutes or 0)) * 60


def elapsed_seconds(started_at: datetime, *, now: datetime | None = None) -> int:
    current = as_utc(now or datetime.now(UTC))
    delta = (current - as_utc(started_at)).total_seconds()
    return max(0, math.floor(delta))


def remaining_seconds(started_at: datetime, duration_minutes: int, *, now: datetime | None = None) -> int:
    """
    Authoritative time left on an attempt.

    Only the server clock and the immutable start time feed this; the client's
    countdown is never consulted.
    """
    return max(0, duration_seconds(duration_minutes) - elapsed_seconds(started_at, now=now))


def is_expired(started_at: datetime, duration_minutes: int, *, now: datetime | None = None) -> bool:
    return remaining_seconds(started_at, duration_minutes, now=now) <= 0


def reconcile_cached_remaining(
    cached: int | None,
    started_at: datetime,
    duration_minutes: int,
    *,
    client_value: int | None = None,
    now: datetime | None = None,
) -> int:
    """
    Next value for the stored `time_remaining` cache.

    The cache only ever moves down: it is the smallest of the previous cache, the
    client's report and the authoritative remaining time.
    """
    candidates = [remaining_seconds(started_at, duration_minutes, now=now)]
    if cached is not None:
        candidates.append(max(0, int(cached)))
    if client_value is not None:
        candidates.append(max(0, int(client_value)))
    return min(candidates)
