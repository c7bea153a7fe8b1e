"""Relational schema shared by the storage adapters.

Column lists for the audited entity tables, the family/child tables used for
access control, and the audit_events table, plus the encode/decode helpers
that move structured fields in and out of JSON columns. Each adapter maps the
generic column types to its own dialect.

Security Impact:
    - Only columns declared here can appear in generated SQL; identifiers
      from request payloads are checked against these lists
"""

import json
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Tuple

from src.domain.entities import EntityDefinition
from src.domain.ports import StorageError

# (column, generic type, NOT NULL)
ColumnSpec = Tuple[str, str, bool]

ENTITY_COLUMNS: Dict[str, List[ColumnSpec]] = {
    'visits': [
        ('child_id', 'int', True),
        ('visit_date', 'date', True),
        ('visit_time', 'text', False),
        ('visit_type', 'text', True),
        ('location', 'text', False),
        ('doctor_name', 'text', False),
        ('title', 'text', False),
        ('weight_value', 'double', False),
        ('weight_ounces', 'double', False),
        ('weight_percentile', 'double', False),
        ('height_value', 'double', False),
        ('height_percentile', 'double', False),
        ('head_circumference_value', 'double', False),
        ('head_circumference_percentile', 'double', False),
        ('bmi_value', 'double', False),
        ('bmi_percentile', 'double', False),
        ('blood_pressure', 'text', False),
        ('heart_rate', 'int', False),
        ('symptoms', 'text', False),
        ('temperature', 'decimal', False),
        ('illness_start_date', 'date', False),
        ('end_date', 'date', False),
        ('injury_type', 'text', False),
        ('injury_location', 'text', False),
        ('treatment', 'text', False),
        ('vision_prescription', 'text', False),
        ('vision_refraction', 'json', False),
        ('ordered_glasses', 'bool', False),
        ('ordered_contacts', 'bool', False),
        ('dental_procedure_type', 'text', False),
        ('dental_notes', 'text', False),
        ('cleaning_type', 'text', False),
        ('cavities_found', 'int', False),
        ('cavities_filled', 'int', False),
        ('xrays_taken', 'bool', False),
        ('fluoride_treatment', 'bool', False),
        ('sealants_applied', 'bool', False),
        ('dental_procedures', 'json', False),
        ('vaccines_administered', 'json', False),
        ('prescriptions', 'json', False),
        ('tags', 'json', False),
        ('notes', 'text', False),
        ('created_at', 'timestamp', True),
        ('updated_at', 'timestamp', True),
    ],
    'illnesses': [
        ('child_id', 'int', True),
        ('start_date', 'date', True),
        ('end_date', 'date', False),
        ('symptoms', 'text', False),
        ('temperature', 'decimal', False),
        ('severity', 'int', False),
        ('visit_id', 'int', False),
        ('notes', 'text', False),
        ('created_at', 'timestamp', True),
        ('updated_at', 'timestamp', True),
    ],
}

AUDIT_COLUMNS = (
    'id', 'entity_type', 'entity_id', 'user_id', 'action',
    'changes', 'summary', 'request_id', 'changed_at',
)

# Roles allowed to modify a child's records; read_only members may only read
WRITE_ROLES = ('owner', 'parent')


def column_ddl(table: str, type_map: Mapping[str, str]) -> str:
    """Render the column list of an entity table for one SQL dialect."""
    lines = []
    for name, generic_type, not_null in ENTITY_COLUMNS[table]:
        suffix = ' NOT NULL' if not_null else ''
        lines.append(f"{name} {type_map[generic_type]}{suffix}")
    return ',\n    '.join(lines)


def table_columns(table: str) -> List[str]:
    return [name for name, _, _ in ENTITY_COLUMNS[table]]


def check_columns(definition: EntityDefinition, values: Mapping[str, Any]) -> None:
    """Reject any key that is not a column of the entity table."""
    allowed = set(table_columns(definition.table))
    unknown = sorted(set(values) - allowed)
    if unknown:
        raise StorageError(
            f"Unknown columns for {definition.table}: {', '.join(unknown)}",
            operation="write",
            details={"table": definition.table}
        )


def encode_values(definition: EntityDefinition, values: Mapping[str, Any]) -> Dict[str, Any]:
    """Serialize structured fields to JSON text for storage."""
    encoded = {}
    for name, value in values.items():
        if name in definition.json_fields and value is not None:
            encoded[name] = json.dumps(value)
        else:
            encoded[name] = value
    return encoded


def decode_value(value: Any) -> Any:
    if isinstance(value, Decimal):
        return float(value)
    return value


def decode_row(definition: EntityDefinition, row: Mapping[str, Any]) -> Dict[str, Any]:
    """Turn a database row into an entity snapshot (JSON decoded, decimals as floats)."""
    decoded = {}
    for name, value in row.items():
        if name in definition.json_fields and isinstance(value, (str, bytes)):
            value = json.loads(value)
        decoded[name] = decode_value(value)
    return decoded
