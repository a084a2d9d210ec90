"""
Unit Tests for the Clinical Data Store

put/get/query semantics, tombstone exclusion and the stable search order.
"""
from datetime import datetime, timedelta, timezone

import pytest

from app.core.fhir import ClinicalDataStore, Observation, Patient
from app.utils.exceptions import ResourceNotFoundError


def _patient(pid: str, minutes: int = 0) -> Patient:
    resource = Patient.from_fhir({"resourceType": "Patient", "id": pid})
    resource.last_updated = datetime(2024, 1, 1, tzinfo=timezone.utc) + timedelta(minutes=minutes)
    return resource


class TestStoreBasics:
    """put / get / contains."""

    def test_put_then_get(self, store):
        """Test that a stored resource is returned by get."""
        p = _patient("a")
        assert store.put("Patient", "a", p) is p
        assert store.get("Patient", "a") is p

    def test_put_replaces(self, store):
        """Test that put is an upsert."""
        store.put("Patient", "a", _patient("a"))
        replacement = _patient("a", minutes=5)
        store.put("Patient", "a", replacement)
        assert store.get("Patient", "a") is replacement
        assert store.counts() == {"Patient": 1}

    def test_get_unknown_raises(self, store):
        """Test unknown ids raise ResourceNotFoundError."""
        with pytest.raises(ResourceNotFoundError) as exc:
            store.get("Patient", "missing")
        assert exc.value.status_code == 404

    def test_contains_respects_tombstones(self, store):
        """Test contains() hides tombstones unless asked."""
        store.put("Patient", "a", _patient("a").tombstone())
        assert not store.contains("Patient", "a")
        assert store.contains("Patient", "a", include_deleted=True)

    def test_lifecycle(self):
        """Test init/shutdown toggles is_open and clears data."""
        s = ClinicalDataStore()
        assert not s.is_open
        s.init()
        s.put("Patient", "a", _patient("a"))
        assert s.is_open
        s.shutdown()
        assert not s.is_open
        assert s.counts() == {}


class TestStoreQuery:
    """Linear-scan query."""

    def test_sorted_by_last_updated_desc_then_id(self, store):
        """Test newest first, ties broken by id ascending."""
        store.put("Patient", "old", _patient("old", minutes=0))
        store.put("Patient", "b", _patient("b", minutes=10))
        store.put("Patient", "a", _patient("a", minutes=10))

        page, total = store.query("Patient")
        assert total == 3
        assert [r.id for r in page] == ["a", "b", "old"]

    def test_paging(self, store):
        """Test limit/offset apply after sorting and total counts all matches."""
        for i in range(5):
            store.put("Patient", f"p{i}", _patient(f"p{i}", minutes=i))

        page, total = store.query("Patient", limit=2, offset=1)
        assert total == 5
        assert [r.id for r in page] == ["p3", "p2"]

    def test_offset_past_end(self, store):
        """Test offset beyond the result set returns an empty page."""
        store.put("Patient", "a", _patient("a"))
        page, total = store.query("Patient", limit=10, offset=50)
        assert page == []
        assert total == 1

    def test_predicate_and_tombstones(self, store):
        """Test predicate filtering never returns deleted resources."""
        store.put("Patient", "keep", _patient("keep"))
        store.put("Patient", "gone", _patient("gone").tombstone())

        page, total = store.query("Patient", predicate=lambda r: True)
        assert [r.id for r in page] == ["keep"]
        assert total == 1

    def test_unknown_type_is_empty(self, store):
        """Test querying a type with no records."""
        assert store.query("Observation") == ([], 0)

    def test_counts_live_only(self, store):
        """Test counts() excludes tombstones."""
        store.put("Patient", "a", _patient("a"))
        store.put("Patient", "b", _patient("b").tombstone())
        obs = Observation.from_fhir({
            "resourceType": "Observation", "id": "o1", "status": "final",
            "code": {"coding": [{"system": "http://loinc.org", "code": "8480-6"}]},
            "subject": {"reference": "Patient/a"},
        })
        store.put("Observation", "o1", obs)
        assert store.counts() == {"Patient": 1, "Observation": 1}
