"""
Unit Tests for the screening rule table and its validation
"""
from dataclasses import replace

import pytest

from app.core.fhir.resources import LOINC, Coding
from app.core.screening import (
    DEFAULT_RULES,
    Eligibility,
    RiskModifier,
    ScreeningCategory,
    ScreeningRule,
    ScreeningRulesEngine,
    validate_rules,
)
from app.utils.exceptions import RuleConfigurationError

EVIDENCE = (Coding(LOINC, "0000-0", "Test"),)


def _rule(**overrides) -> ScreeningRule:
    base = ScreeningRule(
        rule_id="test-rule",
        title="Test rule",
        category=ScreeningCategory.OTHER,
        eligibility=Eligibility(min_age=40, max_age=60),
        interval_months=12,
        evidence=EVIDENCE,
        order_code=EVIDENCE[0],
    )
    return replace(base, **overrides)


class TestDefaultTable:

    def test_expected_rules_present(self):
        """Test the shipped table covers every configured screening."""
        ids = {r.rule_id for r in DEFAULT_RULES}
        assert ids == {
            "mammography", "colonoscopy", "cervical-cytology", "lung-ldct",
            "blood-pressure", "lipid-panel", "diabetes-hba1c", "osteoporosis-dxa",
            "hepatitis-c", "influenza-vaccine", "zoster-vaccine", "pneumococcal-vaccine",
        }

    def test_interval_text(self):
        """Test human-readable intervals."""
        by_id = {r.rule_id: r for r in DEFAULT_RULES}
        assert by_id["mammography"].interval_text() == "every 2 years"
        assert by_id["blood-pressure"].interval_text() == "every year"
        assert by_id["hepatitis-c"].interval_text() == "once"
        assert by_id["mammography"].interval_text(18) == "every 18 months"


class TestValidation:

    def test_valid_rule_passes(self):
        """Test a well-formed rule validates."""
        assert validate_rules([_rule()]) == (_rule(),)

    def test_duplicate_ids(self):
        """Test duplicate ids are rejected."""
        with pytest.raises(RuleConfigurationError):
            validate_rules([_rule(), _rule()])

    def test_inverted_age_bounds(self):
        """Test min_age above max_age is rejected."""
        with pytest.raises(RuleConfigurationError):
            validate_rules([_rule(eligibility=Eligibility(min_age=70, max_age=50))])

    def test_zero_interval(self):
        """Test interval_months must be at least one."""
        with pytest.raises(RuleConfigurationError):
            validate_rules([_rule(interval_months=0)])

    def test_empty_evidence(self):
        """Test rules need evidence codes."""
        with pytest.raises(RuleConfigurationError):
            validate_rules([_rule(evidence=())])

    @pytest.mark.parametrize("modifier", [
        RiskModifier("older", "raises start", EVIDENCE, min_age=50),
        RiskModifier("longer", "widens interval", EVIDENCE, interval_months=24),
    ])
    def test_modifier_may_not_widen(self, modifier):
        """Test modifiers only lower the start age or shorten the interval."""
        with pytest.raises(RuleConfigurationError):
            validate_rules([_rule(modifiers=(modifier,))])

    def test_engine_validates_custom_rules(self):
        """Test the engine refuses an invalid custom table."""
        with pytest.raises(RuleConfigurationError):
            ScreeningRulesEngine(rules=[_rule(interval_months=0)])

    def test_engine_rejects_negative_lead_window(self):
        """Test lead window must not be negative."""
        with pytest.raises(ValueError):
            ScreeningRulesEngine(lead_window_days=-1)
