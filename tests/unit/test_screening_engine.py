"""
Unit Tests for the Screening Rules Engine

Eligibility, risk modifiers, due-date arithmetic and status thresholds.
"""
from datetime import date

import pytest

from app.core.fhir import RESOURCE_CLASSES
from app.core.screening import (
    PatientRecord,
    ScreeningRulesEngine,
    ScreeningStatus,
    add_months,
    age_on,
)


def _record(*bodies) -> PatientRecord:
    return PatientRecord.from_resources(
        RESOURCE_CLASSES[b["resourceType"]].from_fhir(b) for b in bodies
    )


def _by_rule(determinations):
    return {d.rule_id: d for d in determinations}


class TestCalendarHelpers:

    def test_age_on_birthday(self):
        """Test whole years flip on the birthday."""
        assert age_on(date(1975, 6, 1), date(2024, 5, 31)) == 48
        assert age_on(date(1975, 6, 1), date(2024, 6, 1)) == 49

    def test_add_months_clamps_to_month_end(self):
        """Test Jan 31 + 1 month lands on the last day of February."""
        assert add_months(date(2023, 1, 31), 1) == date(2023, 2, 28)
        assert add_months(date(2024, 1, 31), 1) == date(2024, 2, 29)

    def test_add_months_across_years(self):
        """Test 24 months from 2023-01-10 is 2025-01-10."""
        assert add_months(date(2023, 1, 10), 24) == date(2025, 1, 10)


class TestMammography:

    def test_never_screened_is_overdue(self, engine, evaluation_date, patient_body):
        """Test a 49-year-old woman with no mammogram is overdue since turning 40."""
        d = _by_rule(engine.evaluate(_record(patient_body())))["mammography"]
        assert d.status == ScreeningStatus.OVERDUE
        assert d.last_performed_date is None
        assert d.next_due_date == date(2015, 6, 1)
        assert d.days_overdue == (evaluation_date - date(2015, 6, 1)).days

    def test_recent_screen_is_up_to_date(self, engine, patient_body, observation_body):
        """Test a mammogram on 2023-01-10 is next due 2025-01-10."""
        record = _record(patient_body(), observation_body(code="24606-6", effective="2023-01-10"))
        d = _by_rule(engine.evaluate(record))["mammography"]
        assert d.status == ScreeningStatus.UP_TO_DATE
        assert d.last_performed_date == date(2023, 1, 10)
        assert d.next_due_date == date(2025, 1, 10)
        assert d.days_overdue == 0

    def test_family_history_shortens_interval(self, engine, patient_body, observation_body,
                                              family_history_body):
        """Test family history of breast cancer moves screening to yearly."""
        record = _record(
            patient_body(),
            observation_body(code="24606-6", effective="2023-01-10"),
            family_history_body(code="429740004"),
        )
        d = _by_rule(engine.evaluate(record))["mammography"]
        assert d.next_due_date == date(2024, 1, 10)
        assert d.status == ScreeningStatus.OVERDUE
        assert d.applied_modifiers == ("fh-breast-cancer",)
        assert d.interval_months == 12

    def test_male_not_applicable(self, engine, patient_body):
        """Test mammography does not apply to male patients."""
        d = _by_rule(engine.evaluate(_record(patient_body(gender="male"))))["mammography"]
        assert d.status == ScreeningStatus.NOT_APPLICABLE
        assert d.next_due_date is None


class TestStatusThresholds:

    @pytest.mark.parametrize("last_bp, expected", [
        ("2023-08-01", ScreeningStatus.UP_TO_DATE),  # due 2024-08-01, 47 days out
        ("2023-07-10", ScreeningStatus.DUE),         # due 2024-07-10, 25 days out
        ("2023-06-15", ScreeningStatus.DUE),         # due today
        ("2023-06-14", ScreeningStatus.OVERDUE),     # due yesterday
    ])
    def test_lead_window(self, engine, patient_body, observation_body, last_bp, expected):
        """Test up-to-date / due / overdue around the 30-day lead window."""
        record = _record(patient_body(), observation_body(code="85354-9", effective=last_bp))
        d = _by_rule(engine.evaluate(record))["blood-pressure"]
        assert d.status == expected
        if expected == ScreeningStatus.OVERDUE:
            assert d.days_overdue == 1

    def test_lead_window_is_configurable(self, evaluation_date, patient_body, observation_body):
        """Test a zero-day lead window only flags due on the due date."""
        engine = ScreeningRulesEngine(lead_window_days=0, clock=lambda: evaluation_date)
        record = _record(patient_body(), observation_body(code="85354-9", effective="2023-07-10"))
        d = _by_rule(engine.evaluate(record))["blood-pressure"]
        assert d.status == ScreeningStatus.UP_TO_DATE


class TestEligibility:

    def test_young_man_colonoscopy_not_applicable(self, engine, patient_body):
        """Test a 30-year-old man is outside colonoscopy age bounds."""
        record = _record(patient_body(gender="male", birth_date="1994-01-01"))
        d = _by_rule(engine.evaluate(record))["colonoscopy"]
        assert d.status == ScreeningStatus.NOT_APPLICABLE

    def test_family_history_lowers_colonoscopy_start(self, engine, patient_body, family_history_body):
        """Test family history of colorectal cancer starts colonoscopy at 40."""
        record = _record(
            patient_body(birth_date="1982-01-01"),
            family_history_body(code="312824007"),
        )
        d = _by_rule(engine.evaluate(record))["colonoscopy"]
        assert d.status == ScreeningStatus.OVERDUE
        assert d.next_due_date == date(2022, 1, 1)
        assert d.interval_months == 60
        assert d.applied_modifiers == ("fh-colorectal-cancer",)

    def test_inclusive_upper_bound(self, engine, patient_body):
        """Test a 74-year-old still qualifies for mammography, a 75-year-old does not."""
        at_74 = _record(patient_body(birth_date="1949-07-01"))
        at_75 = _record(patient_body(birth_date="1949-06-01"))
        assert _by_rule(engine.evaluate(at_74))["mammography"].status != ScreeningStatus.NOT_APPLICABLE
        assert _by_rule(engine.evaluate(at_75))["mammography"].status == ScreeningStatus.NOT_APPLICABLE

    def test_required_risk_factor(self, engine, patient_body, condition_body):
        """Test lung screening needs a smoking history."""
        without = _record(patient_body(birth_date="1960-01-01"))
        with_smoking = _record(patient_body(birth_date="1960-01-01"), condition_body(code="77176002"))
        assert _by_rule(engine.evaluate(without))["lung-ldct"].status == ScreeningStatus.NOT_APPLICABLE
        assert _by_rule(engine.evaluate(with_smoking))["lung-ldct"].is_actionable

    def test_refuted_condition_ignored(self, engine, patient_body, condition_body):
        """Test a refuted smoking diagnosis does not make the patient eligible."""
        refuted = condition_body(code="77176002")
        refuted["verificationStatus"] = {"coding": [{
            "system": "http://terminology.hl7.org/CodeSystem/condition-ver-status", "code": "refuted",
        }]}
        record = _record(patient_body(birth_date="1960-01-01"), refuted)
        assert _by_rule(engine.evaluate(record))["lung-ldct"].status == ScreeningStatus.NOT_APPLICABLE

    def test_missing_birth_date_degrades(self, engine, patient_body):
        """Test age-gated rules become not-applicable without a birth date."""
        determinations = engine.evaluate(_record(patient_body(birth_date=None)))
        assert len(determinations) == len(engine.rules)
        assert all(d.status == ScreeningStatus.NOT_APPLICABLE for d in determinations)

    def test_missing_gender_only_blocks_sex_specific_rules(self, engine, patient_body):
        """Test sex-agnostic rules still evaluate without a recorded gender."""
        by_rule = _by_rule(engine.evaluate(_record(patient_body(gender=None))))
        assert by_rule["mammography"].status == ScreeningStatus.NOT_APPLICABLE
        assert by_rule["blood-pressure"].status == ScreeningStatus.OVERDUE


class TestEvidence:

    def test_latest_record_wins(self, engine, patient_body, observation_body):
        """Test the most recent qualifying record sets last performed."""
        record = _record(
            patient_body(),
            observation_body(code="85354-9", effective="2022-01-01", resource_id="old"),
            observation_body(code="8480-6", effective="2024-02-01", resource_id="new"),
        )
        d = _by_rule(engine.evaluate(record))["blood-pressure"]
        assert d.last_performed_date == date(2024, 2, 1)
        assert d.evidence_reference == "Observation/new"

    def test_future_and_unresulted_records_ignored(self, engine, patient_body, observation_body):
        """Test records after the evaluation date or not final do not count."""
        record = _record(
            patient_body(),
            observation_body(code="85354-9", effective="2024-12-01", resource_id="future"),
            observation_body(code="85354-9", effective="2024-06-01", status="preliminary", resource_id="prelim"),
        )
        d = _by_rule(engine.evaluate(record))["blood-pressure"]
        assert d.last_performed_date is None

    def test_one_time_rule_satisfied(self, engine, patient_body, observation_body):
        """Test any hepatitis C antibody result satisfies the one-time rule."""
        record = _record(patient_body(), observation_body(code="13955-0", effective="2010-05-05"))
        d = _by_rule(engine.evaluate(record))["hepatitis-c"]
        assert d.status == ScreeningStatus.UP_TO_DATE
        assert d.next_due_date is None

    def test_vaccine_evidence_from_immunization(self, engine, patient_body, immunization_body):
        """Test a completed flu shot counts toward the yearly influenza rule."""
        record = _record(patient_body(), immunization_body(cvx="150", occurrence="2023-10-01"))
        d = _by_rule(engine.evaluate(record))["influenza-vaccine"]
        assert d.next_due_date == date(2024, 10, 1)
        assert d.status == ScreeningStatus.UP_TO_DATE

    def test_other_patients_records_ignored(self, engine, patient_body, observation_body):
        """Test evidence for another patient is never used."""
        record = _record(
            patient_body(),
            observation_body(patient_id="pat-2", code="24606-6", effective="2024-01-01"),
        )
        assert _by_rule(engine.evaluate(record))["mammography"].last_performed_date is None


class TestDeterminism:

    def test_same_input_same_output(self, engine, patient_body, observation_body):
        """Test repeated evaluation yields identical determinations."""
        record = _record(patient_body(), observation_body())
        first = [d.to_dict() for d in engine.evaluate(record)]
        second = [d.to_dict() for d in engine.evaluate(record)]
        assert first == second

    def test_one_determination_per_rule_in_table_order(self, engine, patient_body):
        """Test output order follows the rule table."""
        determinations = engine.evaluate(_record(patient_body()))
        assert [d.rule_id for d in determinations] == [r.rule_id for r in engine.rules]

    def test_summarise_counts(self, engine, patient_body):
        """Test summarise() counts every status."""
        summary = engine.summarise(engine.evaluate(_record(patient_body())))
        assert summary["total_rules"] == len(engine.rules)
        assert sum(summary["counts"].values()) == len(engine.rules)

    def test_evaluate_bundle(self, engine, service, patient_body, observation_body):
        """Test evaluating straight from a $everything Bundle."""
        service.create("Patient", patient_body())
        service.create("Observation", observation_body(code="24606-6", effective="2023-01-10"))
        d = _by_rule(engine.evaluate_bundle(service.everything("pat-1")))["mammography"]
        assert d.status == ScreeningStatus.UP_TO_DATE
