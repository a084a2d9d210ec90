"""
Unit Tests for FHIR search parameter parsing
"""
import pytest

from app.core.fhir import RESOURCE_CLASSES
from app.core.fhir.search import parse_search, supported_parameters
from app.utils.exceptions import SearchParameterError


@pytest.fixture
def seeded(service, patient_body, observation_body, condition_body, immunization_body):
    service.create("Patient", patient_body())
    service.create("Patient", patient_body(patient_id="pat-2", gender="male"))
    service.create("Observation", observation_body(resource_id="mammo", code="24606-6", effective="2023-01-10"))
    service.create("Observation", observation_body(resource_id="a1c", code="4548-4", effective="2024-03-01"))
    service.create("Observation", observation_body(
        resource_id="other", patient_id="pat-2", code="4548-4", effective="2022-05-05",
    ))
    service.create("Condition", condition_body())
    service.create("Immunization", immunization_body())
    return service


def _ids(bundle):
    return sorted(e["resource"]["id"] for e in bundle["entry"])


class TestParsing:

    def test_defaults(self):
        """Test default paging."""
        query = parse_search("Observation", {}, default_count=20, max_count=100)
        assert (query.count, query.offset) == (20, 0)

    def test_count_clamped(self):
        """Test _count above the maximum is clamped."""
        assert parse_search("Observation", {"_count": "500"}, max_count=100).count == 100

    def test_count_zero_allowed(self):
        """Test _count=0 returns totals only."""
        assert parse_search("Observation", {"_count": "0"}).count == 0

    @pytest.mark.parametrize("params", [
        {"_count": "-1"},
        {"_count": "ten"},
        {"_offset": "-5"},
        {"unknown": "x"},
        {"code": ""},
        {"code": "http://loinc.org|"},
        {"date": "yesterday"},
        {"patient": "Practitioner/1"},
    ])
    def test_invalid_params(self, params):
        """Test malformed or unknown parameters raise SearchParameterError."""
        with pytest.raises(SearchParameterError):
            parse_search("Observation", params)

    def test_supported_parameters(self):
        """Test generic parameters are always advertised."""
        params = supported_parameters("Immunization")
        assert params[0] == "_id"
        assert {"patient", "date", "vaccine-code", "status"} <= set(params)


class TestMatching:

    def test_patient_bare_and_reference(self, seeded):
        """Test patient accepts both '123' and 'Patient/123'."""
        bare = seeded.search("Observation", {"patient": "pat-1"})
        ref = seeded.search("Observation", {"patient": "Patient/pat-1"})
        assert _ids(bare) == _ids(ref) == ["a1c", "mammo"]

    def test_token_with_system(self, seeded):
        """Test 'system|code' and bare code both match."""
        with_system = seeded.search("Observation", {"code": "http://loinc.org|4548-4"})
        bare = seeded.search("Observation", {"code": "4548-4"})
        wrong_system = seeded.search("Observation", {"code": "http://snomed.info/sct|4548-4"})
        assert _ids(with_system) == _ids(bare) == ["a1c", "other"]
        assert wrong_system["total"] == 0

    def test_repeated_params_are_anded(self, seeded):
        """Test multiple parameters narrow the result."""
        bundle = seeded.search("Observation", {"patient": ["pat-1"], "code": ["4548-4"]})
        assert _ids(bundle) == ["a1c"]

    def test_date_prefix_and_comparators(self, seeded):
        """Test plain date prefixes and ge/lt comparators."""
        assert _ids(seeded.search("Observation", {"date": "2023"})) == ["mammo"]
        assert _ids(seeded.search("Observation", {"date": "ge2023-01-10"})) == ["a1c", "mammo"]
        assert _ids(seeded.search("Observation", {"date": "lt2023-01-01"})) == ["other"]

    def test_id_list(self, seeded):
        """Test _id accepts a comma-separated list."""
        assert _ids(seeded.search("Observation", {"_id": "mammo,other"})) == ["mammo", "other"]

    def test_patient_name_and_gender(self, seeded):
        """Test Patient name substring and gender."""
        assert seeded.search("Patient", {"name": "rivera"})["total"] == 2
        assert _ids(seeded.search("Patient", {"gender": "male"})) == ["pat-2"]

    def test_immunization_vaccine_code(self, seeded):
        """Test Immunization vaccine-code search."""
        assert seeded.search("Immunization", {"vaccine-code": "150"})["total"] == 1
        assert seeded.search("Immunization", {"vaccine-code": "187"})["total"] == 0

    def test_partial_comparator_covers_whole_period(self, seeded):
        """Test gt/le against a year or month compare with the period end."""
        assert _ids(seeded.search("Observation", {"date": "gt2023"})) == ["a1c"]
        assert _ids(seeded.search("Observation", {"date": "le2023"})) == ["mammo", "other"]
        assert _ids(seeded.search("Observation", {"date": "ge2023"})) == ["a1c", "mammo"]
        assert _ids(seeded.search("Observation", {"date": "eq2023-01"})) == ["mammo"]
        assert _ids(seeded.search("Observation", {"date": "ne2023-01"})) == ["a1c", "other"]
        assert _ids(seeded.search("Observation", {"date": "gt2024-02"})) == ["a1c"]

    def test_patient_birthdate(self, seeded):
        """Test Patient birthdate is an exact match."""
        assert seeded.search("Patient", {"birthdate": "1975-06-01"})["total"] == 2
        assert seeded.search("Patient", {"birthdate": "1975"})["total"] == 0

    def test_condition_onset_date(self, seeded):
        """Test Condition onset-date prefixes and comparators."""
        assert seeded.search("Condition", {"onset-date": "2020"})["total"] == 1
        assert seeded.search("Condition", {"onset-date": "lt2020-01-01"})["total"] == 0
        assert seeded.search("Condition", {"onset-date": "le2020"})["total"] == 1

    def test_condition_clinical_status(self, service, patient_body, condition_body):
        """Test clinical-status matches bare and system-qualified codes."""
        service.create("Patient", patient_body())
        system = "http://terminology.hl7.org/CodeSystem/condition-clinical"
        for resource_id, status in (("cond-active", "active"), ("cond-resolved", "resolved")):
            body = condition_body()
            body["id"] = resource_id
            body["clinicalStatus"] = {"coding": [{"system": system, "code": status}]}
            service.create("Condition", body)
        service.create("Condition", condition_body())

        assert _ids(service.search("Condition", {"clinical-status": "active"})) == ["cond-active"]
        assert _ids(service.search("Condition", {"clinical-status": f"{system}|resolved"})) == ["cond-resolved"]
        assert service.search("Condition")["total"] == 3


class TestObservationCategory:

    @pytest.fixture
    def labs(self, service, patient_body, observation_body):
        service.create("Patient", patient_body(patient_id="123"))
        category_system = "http://terminology.hl7.org/CodeSystem/observation-category"
        dates = ("2024-01-05", "2024-02-05", "2024-03-05")
        for index, effective in enumerate(dates):
            body = observation_body(patient_id="123", code="4548-4", effective=effective,
                                    resource_id=f"lab-{index}")
            body["category"] = [{"coding": [{"system": category_system, "code": "laboratory"}]}]
            service.create("Observation", body)
        vitals = observation_body(patient_id="123", code="85354-9", resource_id="bp")
        vitals["category"] = [{"coding": [{"system": category_system, "code": "vital-signs"}]}]
        service.create("Observation", vitals)
        return service

    def test_category_with_paging(self, labs):
        """Test total counts every match while the page holds _count entries."""
        bundle = labs.search("Observation", {
            "patient": "123", "category": "laboratory", "_count": "1", "_offset": "0",
        })
        assert bundle["total"] == 3
        assert len(bundle["entry"]) == 1
        assert bundle["entry"][0]["resource"]["id"].startswith("lab-")

    def test_category_excludes_other_categories(self, labs):
        """Test vital-signs and laboratory are disjoint."""
        assert _ids(labs.search("Observation", {"category": "vital-signs"})) == ["bp"]
        assert labs.search("Observation", {"category": "survey"})["total"] == 0


class TestSearchRegistry:

    def test_every_resource_type_searchable(self):
        """Test every registered resource type has its own search parameters."""
        for resource_type in RESOURCE_CLASSES:
            assert supported_parameters(resource_type) != ["_id"], resource_type
            parse_search(resource_type, {"_id": "x"})
