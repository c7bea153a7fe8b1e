"""Update Orchestrator.

Drives create, update and delete of audited health records (visits,
illnesses) through a fixed sequence of steps. For an update:

    1. Load the current row (missing -> NotFoundError)
    2. Authorize (cannot read -> NotFoundError, cannot write -> ForbiddenError)
    3. Check the client's version stamp (stale -> ConflictError, nothing written)
    4. Validate the fields present in the request and build the sparse payload
    5. Conditional write of the row and its sub-record collections
       (zero rows affected -> ConflictError)
    6. Diff the pre-write snapshot against the payload
    7. Record the audit event when the change set is non-empty
    8. Return the freshly written entity merged with its sub-records

Each step returns early on failure, so no later step's effects are applied.

Security Impact:
    - Authorization is checked before any validation or write
    - Conflicts are never retried or resolved by last-writer-wins
    - Audit write failures are always logged; whether they fail the request
      is governed by the configured failure policy
    - Log lines carry entity type, id and field names only, never values

Architecture:
    - Domain service depending only on ports and an audit recorder
    - Logger and clock are injected so tests can observe and control them
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from src.domain.audit_models import AuditAction, ChangeSet, UpdateOutcome
from src.domain.entities import EntityDefinition, get_definition
from src.domain.ports import (
    AccessControlPort,
    AuditWriteError,
    BadRequestError,
    ConflictError,
    EntityStoragePort,
    ForbiddenError,
    NotFoundError,
)
from src.domain.services.concurrency import (
    DEFAULT_TOLERANCE_MS,
    ensure_current_version,
    next_version_stamp,
    parse_version_stamp,
    utc_now,
)
from src.domain.services.field_diff import build_field_diff

module_logger = logging.getLogger(__name__)

VERSION_FIELD = 'updated_at'


class UpdateOrchestrator:
    """Create/update/delete pipeline for audited entities.

    Parameters:
        storage: Entity storage adapter (provides the conditional write)
        access_control: Family/ownership authorization collaborator
        audit_store: Object with a record(...) method (AuditStore)
        version_tolerance_ms: Tolerance for the version stamp pre-check
        fail_closed: Raise when the audit write fails instead of only logging it
        logger: Logger receiving operational messages (defaults to module logger)
        clock: Source of new version stamps (naive UTC)

    Example Usage:
        ```python
        orchestrator = UpdateOrchestrator(adapter, adapter, AuditStore(adapter, adapter))
        outcome = orchestrator.update("visit", 42, user_id=7,
                                      body={"temperature": 99.0, "updated_at": stamp})
        ```
    """

    def __init__(
        self,
        storage: EntityStoragePort,
        access_control: AccessControlPort,
        audit_store: Any,
        version_tolerance_ms: int = DEFAULT_TOLERANCE_MS,
        fail_closed: bool = False,
        logger: Optional[logging.Logger] = None,
        clock: Callable[[], datetime] = utc_now
    ):
        self.storage = storage
        self.access_control = access_control
        self.audit_store = audit_store
        self.version_tolerance_ms = version_tolerance_ms
        self.fail_closed = fail_closed
        self.logger = logger or module_logger
        self._clock = clock

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, entity_type: str, entity_id: int, user_id: Optional[int]) -> Dict[str, Any]:
        """Return the entity merged with its sub-record collections.

        Raises:
            NotFoundError: If the entity is missing or the user cannot read it
        """
        definition = get_definition(entity_type)
        row = self.storage.load(entity_type, entity_id)
        if row is None or not self.access_control.can_read(user_id, entity_type, entity_id):
            raise NotFoundError(entity_type, entity_id)
        return self._with_collections(definition, entity_id, row)

    # ------------------------------------------------------------------
    # Update
    # ------------------------------------------------------------------

    def update(
        self,
        entity_type: str,
        entity_id: int,
        user_id: Optional[int],
        body: Mapping[str, Any],
        request_id: Optional[str] = None
    ) -> UpdateOutcome:
        """Apply a sparse update to an entity.

        Parameters:
            entity_type: Entity type (visit, illness)
            entity_id: Entity identifier
            user_id: Acting user
            body: Request body; only keys present are updated; an optional
                  updated_at holds the version stamp the client read
            request_id: Originating request id, stored on the audit event

        Returns:
            UpdateOutcome with the updated entity and the computed change set

        Raises:
            NotFoundError, ForbiddenError, ConflictError, BadRequestError,
            StorageError (AuditWriteError only under the fail-closed policy)
        """
        definition = get_definition(entity_type)

        # 1. Load current
        current = self.storage.load(entity_type, entity_id)
        if current is None:
            raise NotFoundError(entity_type, entity_id)

        # 2. Authorize
        self._authorize_write(entity_type, entity_id, user_id)

        # 3. Check version
        current_stamp = current.get(VERSION_FIELD)
        client_value = body.get(VERSION_FIELD)
        ensure_current_version(current_stamp, client_value, self.version_tolerance_ms)
        client_stamp = parse_version_stamp(client_value)

        # 4. Validate and build the sparse payload
        payload = self._build_payload(definition, body)
        if not payload:
            raise BadRequestError("No valid fields provided for update")
        snapshot = self._with_collections(definition, entity_id, current)
        self._check_cross_field_rules(definition, {**snapshot, **payload})

        # 5. Conditional write (row + sub-records)
        columns, collections = self._split_payload(definition, payload)
        columns[VERSION_FIELD] = next_version_stamp(current_stamp, self._clock)
        expected_version = current_stamp if client_stamp is not None else None

        rows_affected, updated = self.storage.update_where(
            entity_type, entity_id, columns, expected_version, collections
        )
        if rows_affected == 0 or updated is None:
            winner = self.storage.load(entity_type, entity_id)
            if client_stamp is None or winner is None:
                raise NotFoundError(entity_type, entity_id)
            self.logger.info(f"Conditional write lost for {entity_type} {entity_id}")
            raise ConflictError(current_version=winner.get(VERSION_FIELD), your_version=str(client_value))

        # 6. Diff against the pre-write snapshot
        changes = build_field_diff(snapshot, payload, exclude_keys=definition.exclude_keys)

        # 7. Audit (skipped for no-op edits)
        audit_recorded = False
        if changes:
            audit_recorded = self._record_audit(
                entity_type, entity_id, user_id, AuditAction.UPDATED, changes,
                summary=None, request_id=request_id
            )
        else:
            self.logger.debug(f"No field changes for {entity_type} {entity_id}; audit skipped")

        # 8. Respond
        entity = self._with_collections(definition, entity_id, updated, known=collections)
        self.logger.info(
            f"Updated {entity_type} {entity_id}: {len(changes)} changed field(s) "
            f"[{', '.join(sorted(changes))}]"
        )
        return UpdateOutcome(entity=entity, changes=changes, audit_recorded=audit_recorded)

    # ------------------------------------------------------------------
    # Create / delete
    # ------------------------------------------------------------------

    def create(
        self,
        entity_type: str,
        user_id: Optional[int],
        body: Mapping[str, Any],
        request_id: Optional[str] = None
    ) -> UpdateOutcome:
        """Create an entity for a child and record a 'created' audit event.

        Raises:
            BadRequestError: If a required field is missing or a field is invalid
            NotFoundError: If the child is missing or not visible to the user
            ForbiddenError: If the user may not add records for the child
        """
        definition = get_definition(entity_type)
        validators = {**definition.create_fields, **definition.fields}
        values = {
            name: validator(body[name], name)
            for name, validator in validators.items()
            if name in body
        }
        for name in definition.required_on_create:
            if values.get(name) is None:
                raise BadRequestError(f"{name} is required", field=name)

        child_id = values['child_id']
        if not self.access_control.can_read_child(user_id, child_id):
            raise NotFoundError('child', child_id)
        if not self.access_control.can_write_child(user_id, child_id):
            raise ForbiddenError("You do not have permission to add records for this child.")

        self._check_cross_field_rules(definition, values)

        columns, collections = self._split_payload(definition, values)
        now = self._clock()
        columns['created_at'] = now
        columns[VERSION_FIELD] = now

        row = self.storage.insert(entity_type, columns, collections)
        entity_id = row['id']
        audit_recorded = self._record_audit(
            entity_type, entity_id, user_id, AuditAction.CREATED, {},
            summary=f"{definition.label} created", request_id=request_id
        )

        self.logger.info(f"Created {entity_type} {entity_id} for child {child_id}")
        entity = self._with_collections(definition, entity_id, row, known=collections)
        return UpdateOutcome(entity=entity, changes={}, audit_recorded=audit_recorded)

    def delete(
        self,
        entity_type: str,
        entity_id: int,
        user_id: Optional[int],
        request_id: Optional[str] = None
    ) -> bool:
        """Delete an entity and record a 'deleted' audit event.

        Audit events of the entity are retained.

        Returns:
            Whether the audit event was recorded
        """
        definition = get_definition(entity_type)
        if self.storage.load(entity_type, entity_id) is None:
            raise NotFoundError(entity_type, entity_id)
        self._authorize_write(entity_type, entity_id, user_id)

        if self.storage.delete(entity_type, entity_id) == 0:
            raise NotFoundError(entity_type, entity_id)

        self.logger.info(f"Deleted {entity_type} {entity_id}")
        return self._record_audit(
            entity_type, entity_id, user_id, AuditAction.DELETED, {},
            summary=f"{definition.label} deleted", request_id=request_id
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _authorize_write(self, entity_type: str, entity_id: int, user_id: Optional[int]) -> None:
        # Unreadable looks exactly like missing
        if not self.access_control.can_read(user_id, entity_type, entity_id):
            raise NotFoundError(entity_type, entity_id)
        if not self.access_control.can_write(user_id, entity_type, entity_id):
            raise ForbiddenError()

    @staticmethod
    def _build_payload(definition: EntityDefinition, body: Mapping[str, Any]) -> Dict[str, Any]:
        payload = {}
        for name, validator in definition.fields.items():
            if name in body:
                payload[name] = validator(body[name], name)
        return payload

    @staticmethod
    def _check_cross_field_rules(definition: EntityDefinition, state: Mapping[str, Any]) -> None:
        for rule in definition.cross_field_rules:
            rule(state)

    @staticmethod
    def _split_payload(
        definition: EntityDefinition,
        payload: Mapping[str, Any]
    ) -> Tuple[Dict[str, Any], Dict[str, List[str]]]:
        columns = {k: v for k, v in payload.items() if k not in definition.collections}
        collections = {k: list(v or []) for k, v in payload.items() if k in definition.collections}
        return columns, collections

    def _with_collections(
        self,
        definition: EntityDefinition,
        entity_id: int,
        row: Mapping[str, Any],
        known: Optional[Mapping[str, List[str]]] = None
    ) -> Dict[str, Any]:
        entity = dict(row)
        for name in definition.collections:
            if known is not None and name in known:
                entity[name] = list(known[name])
            else:
                entity[name] = self.storage.load_collection(definition.entity_type, entity_id, name)
        return entity

    def _record_audit(
        self,
        entity_type: str,
        entity_id: int,
        user_id: Optional[int],
        action: AuditAction,
        changes: ChangeSet,
        summary: Optional[str],
        request_id: Optional[str]
    ) -> bool:
        # Runs only after the entity write committed; never rolls it back
        try:
            self.audit_store.record(
                entity_type, entity_id, user_id, action, changes,
                summary=summary, request_id=request_id
            )
            return True
        except AuditWriteError as e:
            self.logger.error(
                f"Audit write failed for {action.value} {entity_type} {entity_id} "
                f"(fields: {', '.join(sorted(changes)) or 'none'}): {str(e)}"
            )
            if self.fail_closed:
                raise
            return False
