"""Entity Definitions.

Describes each mutable record type as data: which table backs it, which
fields a client may update and how each is validated, which keys the audit
diff ignores, and which fields are collection-valued sub-records stored in
their own table. The orchestrator and storage adapters are driven entirely by
these definitions, so supporting a new entity type means adding a definition.

Architecture:
    - Pure domain data with zero infrastructure dependencies
    - Validators come from src.domain.services.validators
"""

from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable, Dict, FrozenSet, List, Mapping, Tuple

from src.domain.ports import BadRequestError
from src.domain.services import validators as v

CrossFieldRule = Callable[[Mapping[str, Any]], None]


@dataclass(frozen=True)
class CollectionField:
    """A list-valued field persisted as ordered rows in a join table.

    Attributes:
        table: Join table name
        owner_column: Column referencing the owning entity id
        value_column: Column holding each list item
    """

    table: str
    owner_column: str
    value_column: str


@dataclass(frozen=True)
class EntityDefinition:
    """Declarative description of a mutable, audited entity type.

    Attributes:
        entity_type: Name used in audit events and routes (visit, illness)
        table: Backing table
        fields: Updatable field name -> validator
        create_fields: Extra fields accepted only on create (e.g. child_id)
        required_on_create: Fields that must be present and non-empty on create
        exclude_keys: Keys the audit diff ignores on top of id/created_at/updated_at
        json_fields: Structured fields stored as JSON text
        collections: Collection-valued fields stored in join tables
        cross_field_rules: Checks run on the merged (current + payload) state
    """

    entity_type: str
    table: str
    fields: Dict[str, v.Validator]
    create_fields: Dict[str, v.Validator] = field(default_factory=dict)
    required_on_create: Tuple[str, ...] = ()
    exclude_keys: FrozenSet[str] = frozenset()
    json_fields: FrozenSet[str] = frozenset()
    collections: Dict[str, CollectionField] = field(default_factory=dict)
    cross_field_rules: Tuple[CrossFieldRule, ...] = ()

    @property
    def label(self) -> str:
        return self.entity_type.capitalize()

    def column_fields(self) -> List[str]:
        """Fields stored as columns of the entity table (collections excluded)."""
        names = list(self.create_fields) + list(self.fields)
        return [name for name in names if name not in self.collections]


def _end_date_not_before_start(state: Mapping[str, Any]) -> None:
    start = state.get('start_date')
    end = state.get('end_date')
    if isinstance(start, date) and isinstance(end, date) and end < start:
        raise BadRequestError("end_date must be greater than or equal to start_date", field='end_date')


VISIT = EntityDefinition(
    entity_type='visit',
    table='visits',
    create_fields={'child_id': v.optional_id},
    required_on_create=('child_id', 'visit_date', 'visit_type'),
    exclude_keys=frozenset({'child_id'}),
    fields={
        'visit_date': v.required_date,
        'visit_time': v.optional_time,
        'visit_type': v.choice(v.VISIT_TYPES),
        'location': v.optional_string,
        'doctor_name': v.optional_string,
        'title': v.optional_string,
        'weight_value': v.optional_number(minimum=0),
        'weight_ounces': v.optional_number(0, 15),
        'weight_percentile': v.optional_number(0, 100),
        'height_value': v.optional_number(minimum=0),
        'height_percentile': v.optional_number(0, 100),
        'head_circumference_value': v.optional_number(minimum=0),
        'head_circumference_percentile': v.optional_number(0, 100),
        'bmi_value': v.optional_number(minimum=0),
        'bmi_percentile': v.optional_number(0, 100),
        'blood_pressure': v.optional_string,
        'heart_rate': v.optional_number(40, 250, integer=True),
        'symptoms': v.optional_string,
        'temperature': v.optional_number(95, 110),
        'illness_start_date': v.optional_date,
        'end_date': v.optional_date,
        'illnesses': v.illness_type_list,
        'injury_type': v.optional_string,
        'injury_location': v.optional_string,
        'treatment': v.optional_string,
        'vision_prescription': v.optional_string,
        'vision_refraction': v.vision_refraction,
        'ordered_glasses': v.boolean_flag,
        'ordered_contacts': v.boolean_flag,
        'dental_procedure_type': v.optional_string,
        'dental_notes': v.optional_string,
        'cleaning_type': v.optional_string,
        'cavities_found': v.optional_number(minimum=0, integer=True),
        'cavities_filled': v.optional_number(minimum=0, integer=True),
        'xrays_taken': v.boolean_flag,
        'fluoride_treatment': v.boolean_flag,
        'sealants_applied': v.boolean_flag,
        'dental_procedures': v.dental_procedures,
        'vaccines_administered': v.string_list,
        'prescriptions': v.prescriptions,
        'tags': v.string_list,
        'notes': v.optional_string,
    },
    json_fields=frozenset({
        'vision_refraction', 'dental_procedures', 'vaccines_administered', 'prescriptions', 'tags',
    }),
    collections={
        'illnesses': CollectionField(table='visit_illnesses', owner_column='visit_id', value_column='illness_type'),
    },
)

ILLNESS = EntityDefinition(
    entity_type='illness',
    table='illnesses',
    create_fields={'child_id': v.optional_id},
    required_on_create=('child_id', 'start_date'),
    exclude_keys=frozenset({'child_id'}),
    fields={
        'illness_types': v.illness_type_list,
        'start_date': v.required_date,
        'end_date': v.optional_date,
        'symptoms': v.optional_string,
        'temperature': v.optional_number(95, 110),
        'severity': v.optional_number(1, 10, integer=True),
        'visit_id': v.optional_id,
        'notes': v.optional_string,
    },
    collections={
        'illness_types': CollectionField(
            table='illness_illness_types', owner_column='illness_id', value_column='illness_type'
        ),
    },
    cross_field_rules=(_end_date_not_before_start,),
)

ENTITY_DEFINITIONS: Dict[str, EntityDefinition] = {
    VISIT.entity_type: VISIT,
    ILLNESS.entity_type: ILLNESS,
}


def get_definition(entity_type: str) -> EntityDefinition:
    """Look up an entity definition.

    Raises:
        BadRequestError: If the entity type is unknown
    """
    definition = ENTITY_DEFINITIONS.get(entity_type)
    if definition is None:
        raise BadRequestError(f"Unknown entity type: {entity_type}", field='entity_type')
    return definition
