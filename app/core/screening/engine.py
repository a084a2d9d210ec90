"""
Screening Rules Engine

Evaluates one patient's record against the screening rule table and
returns a ScreeningDetermination per rule.

Usage:
    from app.core.screening import ScreeningRulesEngine, PatientRecord

    engine = ScreeningRulesEngine(lead_window_days=30)
    record = PatientRecord.from_bundle(service.everything(patient_id))
    for d in engine.evaluate(record, as_of=date(2024, 6, 15)):
        print(d.rule_id, d.status.value, d.next_due_date)

Per rule:
    1. Age in whole years on the evaluation date.
    2. Eligibility: sex, age window (after risk modifiers lower the start
       age), required risk factors.  Ineligible -> not-applicable.
    3. Latest qualifying prior record dated on or before the evaluation date
       (ties broken by resource type then id).
    4. Next due date: last performed + interval in calendar months; never
       performed -> the date the patient became eligible plus any grace.
       One-time rules are satisfied by any qualifying record.
    5. Status from days until due vs the lead window.

Missing birthDate or gender never raises: age/sex-gated rules degrade to
not-applicable.  No state is kept between calls.
"""
from __future__ import annotations

from datetime import date
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional, Tuple

from dateutil.relativedelta import relativedelta

from app.core.fhir.resources import ClinicalResource
from app.utils import get_logger
from .base import (
    RiskModifier,
    ScreeningDetermination,
    ScreeningRule,
    ScreeningStatus,
    Sex,
    TriggerSource,
)
from .record import CodeKey, PatientRecord
from .rules import DEFAULT_RULES, validate_rules

logger = get_logger(__name__)

DEFAULT_LEAD_WINDOW_DAYS = 30


# ── Calendar helpers ─────────────────────────────────────────────────────────

def age_on(birth_date: date, on: date) -> int:
    """Whole years between ``birth_date`` and ``on`` (a Feb 29 birthday counts on Feb 28 in common years)."""
    return relativedelta(on, birth_date).years


def add_months(start: date, months: int) -> date:
    """Calendar-month addition; day clamps to month end (Jan 31 + 1 -> Feb 28/29)."""
    return start + relativedelta(months=months)


def _codes_for_source(record: PatientRecord, source: TriggerSource) -> FrozenSet[CodeKey]:
    if source == TriggerSource.CONDITION:
        return record.condition_codes()
    if source == TriggerSource.FAMILY_HISTORY:
        return record.family_history_codes()
    return record.condition_codes() | record.family_history_codes()


def _has_any(record: PatientRecord, codes, source: TriggerSource) -> bool:
    present = _codes_for_source(record, source)
    return any(c.key in present for c in codes)


class ScreeningRulesEngine:
    """
    Deterministic guideline evaluation.

    Holds no state beyond its immutable rule table, so one instance serves
    every request.
    """

    def __init__(
        self,
        rules: Optional[Iterable[ScreeningRule]] = None,
        lead_window_days: int = DEFAULT_LEAD_WINDOW_DAYS,
        clock: Callable[[], date] = date.today,
    ):
        if lead_window_days < 0:
            raise ValueError("lead_window_days must be >= 0")
        self._rules: Tuple[ScreeningRule, ...] = (
            DEFAULT_RULES if rules is None else validate_rules(rules)
        )
        self._by_id: Dict[str, ScreeningRule] = {r.rule_id: r for r in self._rules}
        self.lead_window_days = lead_window_days
        self._clock = clock

    @property
    def rules(self) -> Tuple[ScreeningRule, ...]:
        return self._rules

    def rule(self, rule_id: str) -> Optional[ScreeningRule]:
        return self._by_id.get(rule_id)

    # ── Public API ───────────────────────────────────────────────────────
    def evaluate(self, record: PatientRecord, as_of: Optional[date] = None) -> List[ScreeningDetermination]:
        """
        Evaluate every rule for ``record``.

        Returns:
            One determination per rule, in rule-table order.
        """
        as_of = as_of or self._clock()
        determinations = []
        for rule in self._rules:
            try:
                determinations.append(self.evaluate_rule(rule, record, as_of))
            except Exception as exc:
                # One malformed record must not block the remaining rules
                logger.error(
                    f"ScreeningRulesEngine [{rule.rule_id}]: evaluation raised {exc}",
                    exc_info=True,
                )
                determinations.append(self._not_applicable(rule, record, as_of, "evaluation error"))

        actionable = [d for d in determinations if d.is_actionable]
        logger.info(
            f"ScreeningRulesEngine: {record.patient_id} on {as_of.isoformat()} -> "
            f"{sum(1 for d in actionable if d.status == ScreeningStatus.DUE)} due, "
            f"{sum(1 for d in actionable if d.status == ScreeningStatus.OVERDUE)} overdue"
        )
        return determinations

    def evaluate_bundle(self, bundle: dict, as_of: Optional[date] = None) -> List[ScreeningDetermination]:
        return self.evaluate(PatientRecord.from_bundle(bundle), as_of)

    def evaluate_rule(
        self,
        rule: ScreeningRule,
        record: PatientRecord,
        as_of: date,
    ) -> ScreeningDetermination:
        patient = record.patient
        elig = rule.eligibility

        # ── Step 1-2: eligibility ────────────────────────────────────────
        if elig.is_sex_gated:
            gender = patient.gender
            if gender not in (Sex.FEMALE.value, Sex.MALE.value):
                return self._not_applicable(rule, record, as_of, "administrative sex not recorded")
            if gender != elig.sex.value:
                return self._not_applicable(rule, record, as_of, f"applies to {elig.sex.value} patients")

        active = self._active_modifiers(rule, record)
        min_age = elig.min_age
        interval = rule.interval_months
        for mod in active:
            if mod.min_age is not None:
                min_age = mod.min_age if min_age is None else min(min_age, mod.min_age)
            if mod.interval_months is not None and interval is not None:
                interval = min(interval, mod.interval_months)

        birth = patient.birth_date
        if birth is not None and birth > as_of:
            birth = None
        age = age_on(birth, as_of) if birth is not None else None

        if elig.is_age_gated:
            if age is None:
                return self._not_applicable(rule, record, as_of, "birth date not recorded")
            if min_age is not None and age < min_age:
                return self._not_applicable(rule, record, as_of, f"age {age} below {min_age}")
            if elig.max_age is not None and age > elig.max_age:
                return self._not_applicable(rule, record, as_of, f"age {age} above {elig.max_age}")

        if elig.risk_factors and not _has_any(record, elig.risk_factors, elig.risk_factor_source):
            return self._not_applicable(rule, record, as_of, "no qualifying risk factor on record")

        applied = tuple(m.modifier_id for m in active)

        # ── Step 3: latest qualifying prior record ──────────────────────
        evidence = self._latest_evidence(rule, record, as_of)
        last_performed = evidence.clinical_date() if evidence is not None else None

        # ── Step 4: next due date ───────────────────────────────────────
        if rule.is_one_time and evidence is not None:
            logger.debug(f"ScreeningRulesEngine [{rule.rule_id}]: satisfied once by {evidence.reference}")
            return ScreeningDetermination(
                rule_id=rule.rule_id,
                patient_id=record.patient_id,
                status=ScreeningStatus.UP_TO_DATE,
                last_performed_date=last_performed,
                next_due_date=None,
                evaluated_on=as_of,
                interval_months=None,
                evidence_reference=evidence.reference,
                applied_modifiers=applied,
                reason="one-time screening on record",
            )

        if last_performed is not None and interval is not None:
            next_due = add_months(last_performed, interval)
        elif birth is not None:
            eligible_from = birth + relativedelta(years=min_age) if min_age is not None else birth
            next_due = add_months(eligible_from, rule.grace_months)
        else:
            next_due = as_of

        # ── Step 5: status ──────────────────────────────────────────────
        days_until = (next_due - as_of).days
        if days_until > self.lead_window_days:
            status, days_overdue = ScreeningStatus.UP_TO_DATE, 0
        elif days_until >= 0:
            status, days_overdue = ScreeningStatus.DUE, 0
        else:
            status, days_overdue = ScreeningStatus.OVERDUE, -days_until

        logger.debug(
            f"ScreeningRulesEngine [{rule.rule_id}]: last={last_performed} next={next_due} "
            f"-> {status.value}"
        )
        return ScreeningDetermination(
            rule_id=rule.rule_id,
            patient_id=record.patient_id,
            status=status,
            last_performed_date=last_performed,
            next_due_date=next_due,
            days_overdue=days_overdue,
            evaluated_on=as_of,
            interval_months=interval,
            evidence_reference=evidence.reference if evidence is not None else None,
            applied_modifiers=applied,
            reason="never recorded" if evidence is None else "",
        )

    # ── Internals ────────────────────────────────────────────────────────
    @staticmethod
    def _active_modifiers(rule: ScreeningRule, record: PatientRecord) -> List[RiskModifier]:
        return [m for m in rule.modifiers if _has_any(record, m.codes, m.source)]

    @staticmethod
    def _latest_evidence(
        rule: ScreeningRule,
        record: PatientRecord,
        as_of: date,
    ) -> Optional[ClinicalResource]:
        wanted = rule.evidence_keys
        best: Optional[ClinicalResource] = None
        best_key = None
        for resource in record.evidence_candidates():
            performed = resource.clinical_date()
            if performed is None or performed > as_of:
                continue
            if not (resource.code_keys() & wanted):
                continue
            key = (performed, resource.resource_type, resource.id)
            if best_key is None or key > best_key:
                best, best_key = resource, key
        return best

    @staticmethod
    def _not_applicable(
        rule: ScreeningRule,
        record: PatientRecord,
        as_of: date,
        reason: str,
    ) -> ScreeningDetermination:
        logger.debug(f"ScreeningRulesEngine [{rule.rule_id}]: not applicable ({reason})")
        return ScreeningDetermination(
            rule_id=rule.rule_id,
            patient_id=record.patient_id,
            status=ScreeningStatus.NOT_APPLICABLE,
            evaluated_on=as_of,
            interval_months=rule.interval_months,
            reason=reason,
        )

    @staticmethod
    def summarise(determinations: List[ScreeningDetermination]) -> Dict:
        """Compact counts + serialised determinations for JSON responses."""
        counts = {status.value: 0 for status in ScreeningStatus}
        for d in determinations:
            counts[d.status.value] += 1
        return {
            "total_rules": len(determinations),
            "counts": counts,
            "determinations": [d.to_dict() for d in determinations],
        }
