"""Optimistic Concurrency Controller.

Compares the version stamp a client read earlier with the server's current
stamp. This is only the pre-check: the authoritative compare-and-swap is the
conditional write issued by the storage adapter, and zero rows affected by
that write is reported exactly like a failed pre-check.

Architecture:
    - Pure domain service; the clock is injected where new stamps are minted
    - Tolerance is configurable (AuditConfig.version_tolerance_ms)
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from src.domain.audit_models import VersionCheckOutcome
from src.domain.ports import BadRequestError, ConflictError


DEFAULT_TOLERANCE_MS = 1000

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Current time as a naive UTC datetime (the storage representation)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_utc(stamp: datetime) -> datetime:
    """Return an aware UTC datetime; naive values are taken to be UTC already."""
    if stamp.tzinfo is None:
        return stamp.replace(tzinfo=timezone.utc)
    return stamp.astimezone(timezone.utc)


def parse_version_stamp(value: Any) -> Optional[datetime]:
    """Parse a client-supplied version stamp.

    Parameters:
        value: ISO-8601 string (a trailing "Z" is accepted), datetime, or None

    Returns:
        Aware UTC datetime, or None when the client sent no stamp

    Raises:
        BadRequestError: If the stamp is present but not a valid timestamp
    """
    if value is None or (isinstance(value, str) and value.strip() == ''):
        return None
    if isinstance(value, datetime):
        return to_utc(value)
    if not isinstance(value, str):
        raise BadRequestError("updated_at must be an ISO-8601 timestamp", field='updated_at')
    try:
        parsed = datetime.fromisoformat(value.strip().replace('Z', '+00:00'))
    except ValueError:
        raise BadRequestError("updated_at must be an ISO-8601 timestamp", field='updated_at')
    return to_utc(parsed)


def check_version(
    current_stamp: Optional[datetime],
    client_stamp: Optional[datetime],
    tolerance_ms: int = DEFAULT_TOLERANCE_MS
) -> VersionCheckOutcome:
    """Compare the server stamp with the client's stamp.

    Parameters:
        current_stamp: Version stamp currently stored for the entity
        client_stamp: Stamp the client read before editing, or None
        tolerance_ms: Stamps this close together are treated as equal

    Returns:
        NO_CHECK_REQUESTED when the client sent no stamp, OK when the stamps
        are within tolerance, CONFLICT otherwise
    """
    if client_stamp is None:
        return VersionCheckOutcome.NO_CHECK_REQUESTED
    if current_stamp is None:
        # Entity has never been stamped; nothing to compare against
        return VersionCheckOutcome.OK

    delta = abs(to_utc(client_stamp) - to_utc(current_stamp))
    if delta > timedelta(milliseconds=tolerance_ms):
        return VersionCheckOutcome.CONFLICT
    return VersionCheckOutcome.OK


def ensure_current_version(
    current_stamp: Optional[datetime],
    client_value: Any,
    tolerance_ms: int = DEFAULT_TOLERANCE_MS
) -> VersionCheckOutcome:
    """Run the pre-check and raise ConflictError when the client is stale.

    Parameters:
        current_stamp: Version stamp currently stored for the entity
        client_value: Raw updated_at value from the request body
        tolerance_ms: Comparison tolerance in milliseconds

    Returns:
        The non-conflicting outcome

    Raises:
        BadRequestError: If client_value is not a valid timestamp
        ConflictError: If the stamps differ by more than the tolerance
    """
    client_stamp = parse_version_stamp(client_value)
    outcome = check_version(current_stamp, client_stamp, tolerance_ms)
    if outcome is VersionCheckOutcome.CONFLICT:
        raise ConflictError(
            current_version=current_stamp,
            your_version=client_value if isinstance(client_value, str) else client_stamp.isoformat()
        )
    return outcome


def next_version_stamp(previous: Optional[datetime], clock: Clock = utc_now) -> datetime:
    """Mint a new version stamp strictly greater than the previous one.

    Two writes within the clock's resolution would otherwise share a stamp
    and a stale client could pass the conditional write.
    """
    now = clock()
    if previous is None:
        return now
    floor = previous + timedelta(microseconds=1)
    return now if now > floor else floor
