"""Unit tests for the field diff service."""

from datetime import date, datetime

from src.domain.services.field_diff import (
    build_field_diff,
    is_effectively_empty,
    normalize_for_compare,
    should_filter_change,
    values_equal,
)


class TestEffectivelyEmpty:
    """Test suite for is_effectively_empty."""

    def test_scalars(self):
        assert is_effectively_empty(None)
        assert is_effectively_empty("")
        assert is_effectively_empty("   ")
        assert is_effectively_empty(float("nan"))
        assert not is_effectively_empty(0)
        assert not is_effectively_empty(False)
        assert not is_effectively_empty("x")

    def test_nested_containers(self):
        """A refraction whose eyes are all null carries no information."""
        refraction = {"od": {"sphere": None, "cylinder": None, "axis": None},
                      "os": {"sphere": None, "cylinder": None, "axis": None}}
        assert is_effectively_empty(refraction)
        assert is_effectively_empty([])
        assert is_effectively_empty([None, ""])
        assert not is_effectively_empty({"od": {"sphere": -1.25}})


class TestNormalizeForCompare:
    """Test suite for normalize_for_compare."""

    def test_dates_compare_by_calendar_day(self):
        assert normalize_for_compare(date(2026, 1, 15)) == "2026-01-15"
        assert normalize_for_compare(datetime(2026, 1, 15, 8, 0)) == "2026-01-15"
        assert normalize_for_compare("2026-01-15T00:00:00.000Z") == "2026-01-15"
        assert normalize_for_compare("2026-01-15") == "2026-01-15"

    def test_numbers(self):
        assert normalize_for_compare(1) == 1.0
        assert normalize_for_compare("1") == 1.0
        assert normalize_for_compare("101.5") == 101.5

    def test_booleans_stay_booleans(self):
        assert normalize_for_compare(True) is True
        assert normalize_for_compare(False) is False

    def test_whitespace_collapses(self):
        assert normalize_for_compare("  runny   nose ") == "runny nose"
        assert normalize_for_compare("   ") is None


class TestValuesEqual:
    """Test suite for values_equal."""

    def test_representation_differences_are_equal(self):
        assert values_equal(1, "1")
        assert values_equal(1, 1.0)
        assert values_equal(date(2026, 1, 15), "2026-01-15T00:00:00.000Z")
        assert values_equal(None, "")
        assert values_equal("a  b", "a b")

    def test_boolean_is_not_number(self):
        assert not values_equal(True, 1)
        assert not values_equal(False, 0)

    def test_real_changes(self):
        assert not values_equal(101.5, 99.0)
        assert not values_equal(None, "x")
        assert not values_equal(["flu"], ["flu", "strep"])

    def test_list_order_matters(self):
        assert not values_equal(["flu", "strep"], ["strep", "flu"])


class TestShouldFilterChange:
    """Test suite for should_filter_change."""

    def test_both_empty(self):
        assert should_filter_change(None, "")
        assert should_filter_change([], None)

    def test_one_side_set(self):
        assert not should_filter_change(None, "x")
        assert not should_filter_change(0, None)


class TestBuildFieldDiff:
    """Test suite for build_field_diff."""

    def test_only_payload_keys_are_considered(self):
        """Omitted keys are never treated as deletions."""
        current = {"id": 42, "notes": "old", "symptoms": "cough", "temperature": 101.5}
        payload = {"temperature": 99.0}

        changes = build_field_diff(current, payload)

        assert changes == {"temperature": {"before": 101.5, "after": 99.0}}

    def test_no_op_payload_produces_empty_diff(self):
        current = {"temperature": 99.0, "visit_date": date(2026, 1, 15)}
        payload = {"temperature": "99", "visit_date": "2026-01-15T00:00:00.000Z"}

        assert build_field_diff(current, payload) == {}

    def test_excluded_keys(self):
        current = {"id": 1, "updated_at": "a", "created_at": "b", "child_id": 3, "notes": "x"}
        payload = {"id": 2, "updated_at": "c", "created_at": "d", "child_id": 4, "notes": "x"}

        assert build_field_diff(current, payload, exclude_keys={"child_id"}) == {}

    def test_clearing_a_field(self):
        """Present-with-null means clear, and blank strings are recorded as null."""
        current = {"notes": "follow up in a week"}

        assert build_field_diff(current, {"notes": None}) == {
            "notes": {"before": "follow up in a week", "after": None}
        }
        assert build_field_diff(current, {"notes": "  "}) == {
            "notes": {"before": "follow up in a week", "after": None}
        }

    def test_empty_to_empty_is_filtered(self):
        current = {"notes": None, "vision_refraction": None}
        payload = {"notes": "", "vision_refraction": {"od": {"sphere": None}, "os": {"sphere": None}}}

        assert build_field_diff(current, payload) == {}

    def test_boolean_change_is_recorded(self):
        changes = build_field_diff({"xrays_taken": False}, {"xrays_taken": True})

        assert changes == {"xrays_taken": {"before": False, "after": True}}

    def test_missing_current_key_counts_as_null(self):
        changes = build_field_diff({}, {"location": "Clinic"})

        assert changes == {"location": {"before": None, "after": "Clinic"}}

    def test_payload_order_is_kept(self):
        current = {"a": 1, "b": 1, "c": 1}
        payload = {"c": 2, "a": 2, "b": 2}

        assert list(build_field_diff(current, payload)) == ["c", "a", "b"]
