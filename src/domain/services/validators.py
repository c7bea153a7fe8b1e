"""Field-level validators for mutable health records.

Each validator takes the raw JSON value for one field and returns the
normalized value to persist, or raises BadRequestError naming the field and
the violated constraint. Validators are built by small factories so entity
definitions can declare them as data.

Security Impact:
    - Values are validated before any write is attempted (fail fast)
    - Error messages name the field and constraint, never echo free text
"""

import math
import re
from datetime import date, datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

from src.domain.ports import BadRequestError

Validator = Callable[[Any, str], Any]

TIME_REGEX = re.compile(r'^(\d{1,2}):(\d{2})(?::(\d{2}))?$')

VISIT_TYPES = ('wellness', 'sick', 'injury', 'vision', 'dental')

ILLNESS_TYPES = (
    'flu', 'strep', 'rsv', 'covid', 'cold', 'stomach_bug',
    'ear_infection', 'hand_foot_mouth', 'croup', 'pink_eye', 'other',
)

REFRACTION_EYES = ('od', 'os')
REFRACTION_MEASURES = ('sphere', 'cylinder', 'axis')
PRESCRIPTION_REQUIRED = ('medication', 'dosage', 'duration')


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == '')


def _parse_date(value: Any, field: str) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str):
        raise BadRequestError(f"{field} must be a valid date", field=field)
    try:
        return datetime.fromisoformat(value.strip().replace('Z', '+00:00')).date()
    except ValueError:
        raise BadRequestError(f"{field} must be a valid date", field=field)


def _parse_number(value: Any, field: str) -> float:
    if isinstance(value, bool):
        raise BadRequestError(f"{field} must be a number", field=field)
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            raise BadRequestError(f"{field} must be a number", field=field)
    else:
        raise BadRequestError(f"{field} must be a number", field=field)
    if not math.isfinite(number):
        raise BadRequestError(f"{field} must be a number", field=field)
    return number


def optional_string(value: Any, field: str) -> Optional[str]:
    """Trim a string; blank becomes None."""
    if _is_blank(value):
        return None
    if not isinstance(value, str):
        raise BadRequestError(f"{field} must be a string", field=field)
    return value.strip()


def required_date(value: Any, field: str) -> date:
    if _is_blank(value):
        raise BadRequestError(f"{field} is required", field=field)
    return _parse_date(value, field)


def optional_date(value: Any, field: str) -> Optional[date]:
    if _is_blank(value):
        return None
    return _parse_date(value, field)


def optional_time(value: Any, field: str) -> Optional[str]:
    """Accept HH:MM or HH:MM:SS and normalize to zero-padded HH:MM."""
    if _is_blank(value):
        return None
    if not isinstance(value, str):
        raise BadRequestError(f"{field} must be a string (HH:MM)", field=field)
    match = TIME_REGEX.match(value.strip())
    if not match:
        raise BadRequestError(f"{field} must be HH:MM or HH:MM:SS", field=field)
    hour, minute = int(match.group(1)), int(match.group(2))
    if hour > 23 or minute > 59:
        raise BadRequestError(f"{field} must be a valid time", field=field)
    return f"{hour:02d}:{minute:02d}"


def optional_number(
    minimum: Optional[float] = None,
    maximum: Optional[float] = None,
    integer: bool = False
) -> Validator:
    """Build a validator for an optional number within [minimum, maximum].

    Parameters:
        minimum: Inclusive lower bound (None for unbounded)
        maximum: Inclusive upper bound (None for unbounded)
        integer: Require a whole number and return an int

    Returns:
        Validator returning float (or int), or None for blank input
    """
    def validate(value: Any, field: str) -> Optional[float]:
        if _is_blank(value):
            return None
        number = _parse_number(value, field)
        if minimum is not None and number < minimum:
            raise BadRequestError(f"{field} must be at least {minimum:g}", field=field)
        if maximum is not None and number > maximum:
            raise BadRequestError(f"{field} must be at most {maximum:g}", field=field)
        if integer:
            if not number.is_integer():
                raise BadRequestError(f"{field} must be a whole number", field=field)
            return int(number)
        return number

    return validate


def choice(options: Iterable[str], required: bool = True) -> Validator:
    """Build a validator restricting a string field to a fixed set of values."""
    allowed = tuple(options)

    def validate(value: Any, field: str) -> Optional[str]:
        if _is_blank(value):
            if required:
                raise BadRequestError(f"{field} is required", field=field)
            return None
        if not isinstance(value, str) or value not in allowed:
            raise BadRequestError(f"{field} must be one of: {', '.join(allowed)}", field=field)
        return value

    return validate


def boolean_flag(value: Any, field: str) -> Optional[bool]:
    """Keep only real booleans; anything else clears the flag."""
    if value is True or value is False:
        return value
    return None


def string_list(value: Any, field: str) -> Optional[List[str]]:
    """Non-blank strings, trimmed, order preserved; empty list becomes None."""
    if value is None:
        return None
    if isinstance(value, str):
        # Legacy clients send comma-separated text
        value = value.split(',')
    if not isinstance(value, list):
        raise BadRequestError(f"{field} must be an array of strings", field=field)
    items = []
    for index, item in enumerate(value):
        if _is_blank(item):
            continue
        if not isinstance(item, str):
            raise BadRequestError(f"{field}[{index}] must be a string", field=field)
        items.append(item.strip())
    return items or None


def illness_type_list(value: Any, field: str) -> List[str]:
    """Known illness types in entry order; None clears the list."""
    if value is None:
        return []
    if not isinstance(value, list):
        raise BadRequestError(f"{field} must be an array of strings", field=field)
    for index, item in enumerate(value):
        if not isinstance(item, str) or item not in ILLNESS_TYPES:
            raise BadRequestError(
                f"{field}[{index}] must be one of: {', '.join(ILLNESS_TYPES)}",
                field=field
            )
    return list(value)


def vision_refraction(value: Any, field: str) -> Optional[Dict[str, Any]]:
    """Normalize an {od, os, notes?} refraction; each eye has sphere/cylinder/axis."""
    if _is_blank(value):
        return None
    if not isinstance(value, dict):
        raise BadRequestError(f"{field} must be an object", field=field)

    refraction: Dict[str, Any] = {}
    for eye in REFRACTION_EYES:
        raw_eye = value.get(eye)
        if not isinstance(raw_eye, dict):
            raw_eye = {}
        refraction[eye] = {
            measure: None if _is_blank(raw_eye.get(measure))
            else _parse_number(raw_eye.get(measure), f"{field}.{eye}.{measure}")
            for measure in REFRACTION_MEASURES
        }
    notes = value.get('notes')
    if not _is_blank(notes):
        refraction['notes'] = str(notes).strip()
    return refraction


def prescriptions(value: Any, field: str) -> Optional[List[Dict[str, Any]]]:
    """Each prescription needs medication, dosage and duration strings."""
    if value is None:
        return None
    if not isinstance(value, list):
        raise BadRequestError(f"{field} must be an array", field=field)
    result = []
    for index, item in enumerate(value):
        if not isinstance(item, dict):
            raise BadRequestError(f"{field}[{index}] must be an object", field=field)
        for key in PRESCRIPTION_REQUIRED:
            if _is_blank(item.get(key)) or not isinstance(item.get(key), str):
                raise BadRequestError(
                    f"{field}[{index}].{key} is required and must be a string",
                    field=field
                )
        entry = {key: item[key].strip() for key in PRESCRIPTION_REQUIRED}
        if not _is_blank(item.get('notes')):
            entry['notes'] = str(item['notes']).strip()
        result.append(entry)
    return result or None


def dental_procedures(value: Any, field: str) -> Optional[List[Dict[str, Any]]]:
    if value is None:
        return None
    if not isinstance(value, list):
        raise BadRequestError(f"{field} must be an array", field=field)
    result = []
    for index, item in enumerate(value):
        if not isinstance(item, dict):
            raise BadRequestError(f"{field}[{index}] must be an object", field=field)
        if not isinstance(item.get('procedure'), str):
            raise BadRequestError(f"{field}[{index}].procedure must be a string", field=field)
        result.append({
            'procedure': item['procedure'],
            'tooth_number': None if item.get('tooth_number') is None else str(item['tooth_number']),
            'location': None if item.get('location') is None else str(item['location']),
            'notes': None if item.get('notes') is None else str(item['notes']),
        })
    return result or None


def optional_id(value: Any, field: str) -> Optional[int]:
    if _is_blank(value):
        return None
    if isinstance(value, bool):
        raise BadRequestError(f"{field} must be an integer id", field=field)
    try:
        identifier = int(value)
    except (TypeError, ValueError):
        raise BadRequestError(f"{field} must be an integer id", field=field)
    if identifier <= 0:
        raise BadRequestError(f"{field} must be an integer id", field=field)
    return identifier
