"""Field Diff Service.

This service compares the persisted state of an entity with a sparse update
payload and produces the minimal, semantically meaningful change set that is
written to the audit trail.

Security Impact:
    - Compares values that may contain clinical free text
    - Change sets are persisted to the immutable audit trail
    - No I/O and no logging of values

Architecture:
    - Pure domain service with no infrastructure dependencies
    - Deterministic; safe to call speculatively before a write commits
    - Works for any entity type (no hardcoded field names)
"""

import json
import math
import re
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Iterable, Mapping, Optional

from src.domain.audit_models import ChangeSet

# System fields never diffed, whatever the entity
DEFAULT_EXCLUDE_KEYS = frozenset({'id', 'created_at', 'updated_at'})

DATE_ONLY_REGEX = re.compile(r'^\d{4}-\d{2}-\d{2}$')
NUMERIC_REGEX = re.compile(r'^-?\d+(\.\d+)?$')
WHITESPACE_REGEX = re.compile(r'\s+')


def is_effectively_empty(value: Any) -> bool:
    """Check whether a value carries no information.

    None, blank strings, non-finite floats, and containers whose every leaf
    is itself empty (e.g. a refraction with all-null eyes) are all empty.

    Parameters:
        value: Value to check

    Returns:
        True if the value is an "unset" representation
    """
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ''
    if isinstance(value, float) and not math.isfinite(value):
        return True
    if isinstance(value, (list, tuple)):
        return all(is_effectively_empty(v) for v in value)
    if isinstance(value, Mapping):
        return all(is_effectively_empty(v) for v in value.values())
    return False


def _normalize_string(value: str) -> Any:
    collapsed = WHITESPACE_REGEX.sub(' ', value.strip())
    if collapsed == '':
        return None
    if DATE_ONLY_REGEX.match(collapsed):
        return collapsed
    # Numbers before dates so "100" stays a number, not year 100
    if NUMERIC_REGEX.match(collapsed):
        return float(collapsed)
    try:
        return datetime.fromisoformat(collapsed.replace('Z', '+00:00')).date().isoformat()
    except ValueError:
        return collapsed


def normalize_for_compare(value: Any) -> Any:
    """Normalize a value so storage/API representation differences don't cause false diffs.

    - None, blank strings, non-finite numbers -> None
    - date/datetime and ISO date-like strings -> 'YYYY-MM-DD'
    - numbers and numeric strings -> float (so 1 == 1.0 == "1")
    - booleans stay booleans (never 1/0)
    - strings -> trimmed, whitespace runs collapsed
    - lists -> JSON of normalized items, order preserved
    - mappings -> JSON of normalized items, sorted keys, empty members dropped
    - effectively empty containers -> None

    Parameters:
        value: Raw value from a snapshot or payload

    Returns:
        Hashable, comparable representation
    """
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, (int, float, Decimal)):
        number = float(value)
        return number if math.isfinite(number) else None
    if isinstance(value, str):
        return _normalize_string(value)
    if isinstance(value, (list, tuple)):
        if is_effectively_empty(value):
            return None
        return json.dumps([normalize_for_compare(v) for v in value])
    if isinstance(value, Mapping):
        if is_effectively_empty(value):
            return None
        normalized = {}
        for key in sorted(value, key=str):
            item = normalize_for_compare(value[key])
            if item is not None:
                normalized[str(key)] = item
        if not normalized:
            return None
        return json.dumps(normalized, sort_keys=True)
    return str(value)


def values_equal(before: Any, after: Any) -> bool:
    """Compare two values under the diff equality rules.

    Parameters:
        before: Persisted value
        after: Incoming value

    Returns:
        True if the values are semantically equal
    """
    nb = normalize_for_compare(before)
    na = normalize_for_compare(after)
    if nb is None or na is None:
        return nb is None and na is None
    if type(nb) is not type(na):
        return str(nb) == str(na)
    return nb == na


def should_filter_change(before: Any, after: Any) -> bool:
    """Check if a change is noise (both sides effectively empty)."""
    return is_effectively_empty(before) and is_effectively_empty(after)


def _empty_to_none(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, str) and value.strip() == '':
        return None
    return value


def build_field_diff(
    current: Mapping[str, Any],
    payload: Mapping[str, Any],
    exclude_keys: Optional[Iterable[str]] = None
) -> ChangeSet:
    """Build a change set from the persisted state and a sparse update payload.

    Only keys present in payload are considered; omitted keys are never
    treated as deletions, so different forms can send different subsets
    of fields. A key present with None means "clear this field".

    Parameters:
        current: Entity snapshot (previous persisted state)
        payload: Sparse update; only keys explicitly sent in the request
        exclude_keys: Extra keys to skip (e.g. child_id), on top of id/created_at/updated_at

    Returns:
        Mapping of field name to {"before": ..., "after": ...}; empty when nothing changed
    """
    exclude = set(DEFAULT_EXCLUDE_KEYS)
    if exclude_keys:
        exclude.update(exclude_keys)

    changes: ChangeSet = {}
    for key, after_value in payload.items():
        if key in exclude:
            continue

        before_value = current.get(key)
        if values_equal(before_value, after_value):
            continue
        if should_filter_change(before_value, after_value):
            continue

        changes[key] = {
            'before': before_value,
            'after': _empty_to_none(after_value),
        }

    return changes
