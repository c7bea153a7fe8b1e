"""Summary Renderer.

Turns a stored change set into a short, human-readable sentence for the
history timeline. The renderer is re-run every time history is read, so
audit events written under older rules always display with today's rules;
the summary persisted alongside an event is only a fallback.

Security Impact:
    - Free-text fields are rendered by label only, never by value
    - Only fields listed as measurements render their before/after values
    - Internal-only keys (leading underscore) are never displayed

Architecture:
    - Pure function of (changes, entity_type); no I/O
    - Entity knowledge is data (label and measurement tables), so adding an
      entity type means adding a table entry, not control flow
"""

from typing import Any, Dict, FrozenSet, List, Mapping, Optional

from src.domain.services.field_diff import should_filter_change, values_equal

MAX_LISTED_FIELDS = 3

FIELD_LABELS: Dict[str, Dict[str, str]] = {
    'visit': {
        'visit_date': 'Visit date',
        'visit_time': 'Visit time',
        'visit_type': 'Visit type',
        'location': 'Location',
        'doctor_name': 'Doctor',
        'title': 'Title',
        'weight_value': 'Weight',
        'weight_ounces': 'Weight (oz)',
        'weight_percentile': 'Weight percentile',
        'height_value': 'Height',
        'height_percentile': 'Height percentile',
        'head_circumference_value': 'Head circumference',
        'head_circumference_percentile': 'Head circumference percentile',
        'bmi_value': 'BMI',
        'bmi_percentile': 'BMI percentile',
        'blood_pressure': 'Blood pressure',
        'heart_rate': 'Heart rate',
        'symptoms': 'Symptoms',
        'temperature': 'Temperature',
        'illness_start_date': 'Illness start date',
        'end_date': 'End date',
        'illnesses': 'Illnesses',
        'injury_type': 'Injury type',
        'injury_location': 'Injury location',
        'treatment': 'Treatment',
        'vision_prescription': 'Vision prescription',
        'vision_refraction': 'Vision refraction',
        'ordered_glasses': 'Ordered glasses',
        'ordered_contacts': 'Ordered contacts',
        'dental_procedure_type': 'Dental procedure',
        'dental_notes': 'Dental notes',
        'cleaning_type': 'Cleaning type',
        'cavities_found': 'Cavities found',
        'cavities_filled': 'Cavities filled',
        'xrays_taken': 'X-rays taken',
        'fluoride_treatment': 'Fluoride treatment',
        'sealants_applied': 'Sealants applied',
        'dental_procedures': 'Dental procedures',
        'vaccines_administered': 'Vaccines',
        'prescriptions': 'Prescriptions',
        'tags': 'Tags',
        'notes': 'Notes',
    },
    'illness': {
        'illness_types': 'Illness types',
        'start_date': 'Start date',
        'end_date': 'End date',
        'symptoms': 'Symptoms',
        'temperature': 'Temperature',
        'severity': 'Severity',
        'visit_id': 'Linked visit',
        'notes': 'Notes',
    },
}

# Fields whose values are safe and useful to show ("Temperature: 101.5 → 99.0")
MEASUREMENT_FIELDS: Dict[str, FrozenSet[str]] = {
    'visit': frozenset({
        'weight_value', 'weight_ounces', 'weight_percentile',
        'height_value', 'height_percentile',
        'head_circumference_value', 'head_circumference_percentile',
        'bmi_value', 'bmi_percentile',
        'heart_rate', 'temperature',
        'cavities_found', 'cavities_filled',
    }),
    'illness': frozenset({'temperature', 'severity'}),
}

# At most this many measurement fields are rendered with values in one sentence
MAX_VALUE_RENDERED_FIELDS = 2


def field_label(field: str, entity_type: Optional[str] = None) -> str:
    """Return the display label for a field.

    Unknown fields (and unknown entity types) fall back to the field name
    with underscores replaced and the first letter capitalized.
    """
    labels = FIELD_LABELS.get(entity_type or '', {})
    if field in labels:
        return labels[field]
    return field.replace('_', ' ').strip().capitalize() or field


def _format_value(value: Any) -> str:
    if value is None or (isinstance(value, str) and value.strip() == ''):
        return 'none'
    if isinstance(value, bool):
        return 'yes' if value else 'no'
    if isinstance(value, float) and value.is_integer() and abs(value) >= 1e16:
        return str(int(value))
    return str(value)


def _is_displayable(field: Any, change: Any) -> bool:
    if not isinstance(field, str) or not field or field.startswith('_'):
        return False
    if not isinstance(change, Mapping):
        # Malformed legacy entry: the field changed but values are unknown
        return True
    before = change.get('before')
    after = change.get('after')
    if should_filter_change(before, after):
        return False
    return not values_equal(before, after)


def displayable_fields(changes: Any) -> List[str]:
    """Return the fields of a stored change set that are worth showing, in stored order."""
    if not isinstance(changes, Mapping):
        return []
    return [field for field, change in changes.items() if _is_displayable(field, change)]


def _join_labels(labels: List[str]) -> str:
    if len(labels) == 1:
        return labels[0]
    return f"{', '.join(labels[:-1])} and {labels[-1]}"


def summarize(changes: Any, entity_type: Optional[str]) -> Optional[str]:
    """Render a change set as a one-line summary.

    Parameters:
        changes: Stored change set ({field: {"before", "after"}}); tolerates
                 malformed or legacy blobs
        entity_type: Entity type used to pick the label and measurement tables

    Returns:
        Summary sentence, or None when no field is eligible for display
    """
    fields = displayable_fields(changes)
    if not fields:
        return None

    measurement_fields = MEASUREMENT_FIELDS.get(entity_type or '', frozenset())
    all_measurements = all(
        field in measurement_fields and isinstance(changes[field], Mapping)
        for field in fields
    )

    if all_measurements and len(fields) <= MAX_VALUE_RENDERED_FIELDS:
        parts = [
            f"{field_label(field, entity_type)}: "
            f"{_format_value(changes[field].get('before'))} → {_format_value(changes[field].get('after'))}"
            for field in fields
        ]
        return '; '.join(parts)

    labels = [field_label(field, entity_type) for field in fields]
    if len(labels) <= MAX_LISTED_FIELDS:
        return f"Updated {_join_labels(labels)}"

    remaining = len(labels) - MAX_LISTED_FIELDS
    return f"Updated {len(labels)} fields: {', '.join(labels[:MAX_LISTED_FIELDS])} and {remaining} more"


def resolve_summary(
    changes: Any,
    entity_type: Optional[str],
    action: Optional[str],
    stored_summary: Optional[str]
) -> str:
    """Pick the summary to display for a stored audit event.

    The regenerated summary always wins; the stored string is used only
    when nothing renderable remains (legacy rows, created/deleted events),
    and a generic "<Action> <entity>" line is the last resort.
    """
    regenerated = summarize(changes, entity_type)
    if regenerated:
        return regenerated
    if stored_summary and stored_summary.strip():
        return stored_summary
    verb = (action or 'updated').capitalize()
    return f"{verb} {entity_type or 'record'}"
