"""Shared fixtures: an in-memory DuckDB database seeded with one family."""

from datetime import date, datetime
from types import SimpleNamespace

import pytest

from src.adapters.storage import DuckDBAdapter

OWNER_ID = 1
PARENT_ID = 2
READ_ONLY_ID = 3
OUTSIDER_ID = 99

T0 = datetime(2026, 1, 15, 9, 30, 0)


@pytest.fixture
def duckdb_adapter():
    """In-memory DuckDB adapter with the schema created."""
    adapter = DuckDBAdapter(db_path=":memory:")
    result = adapter.initialize_schema()
    assert result.is_success()
    yield adapter
    adapter.close()


@pytest.fixture
def family(duckdb_adapter):
    """One family with an owner, a parent, a read-only member and one child."""
    family_id = duckdb_adapter.create_family("Rivera")
    duckdb_adapter.add_family_member(family_id, OWNER_ID, "owner")
    duckdb_adapter.add_family_member(family_id, PARENT_ID, "parent")
    duckdb_adapter.add_family_member(family_id, READ_ONLY_ID, "read_only")
    child_id = duckdb_adapter.create_child(family_id, "Sam")
    return SimpleNamespace(id=family_id, child_id=child_id)


@pytest.fixture
def visit_row(duckdb_adapter, family):
    """A sick visit stored with version stamp T0."""
    return duckdb_adapter.insert(
        "visit",
        {
            "child_id": family.child_id,
            "visit_date": date(2026, 1, 15),
            "visit_type": "sick",
            "temperature": 101.5,
            "notes": "Fever since Tuesday",
            "created_at": T0,
            "updated_at": T0,
        },
        {"illnesses": ["flu"]},
    )
