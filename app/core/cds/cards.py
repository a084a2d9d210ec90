"""
CDS Card Generator

Turns due/overdue ScreeningDeterminations into CDS Hooks cards, each with a
single suggestion carrying a FHIR resource template.  Up-to-date and
not-applicable determinations never produce a card.

Usage:
    from app.core.cds import CDSCardGenerator

    generator = CDSCardGenerator(engine.rules, critical_overdue_days=180)
    cards = generator.generate_cards(determinations)
    request = generator.confirm_action(cards[0], cards[0].suggestions[0].uuid)
    service.create(request.resource_type, request.body)

The generator never writes: ``confirm_action`` only returns the creation
request and persistence stays with the caller.
"""
from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional
from uuid import uuid4

from app.core.fhir.resources import LOINC, RECOMMENDATION_STATUS, Coding, format_instant
from app.core.screening.base import (
    ActionKind,
    ScreeningDetermination,
    ScreeningRule,
    ScreeningStatus,
)
from app.utils import get_logger
from app.utils.exceptions import ValidationError

logger = get_logger(__name__)

DEFAULT_CRITICAL_OVERDUE_DAYS = 180
SUMMARY_MAX_LENGTH = 140

DATE_VACCINE_DUE = Coding(LOINC, "30980-7", "Date vaccine due")


class CardIndicator(str, Enum):
    INFO     = "info"
    WARNING  = "warning"
    CRITICAL = "critical"


# Lower = more urgent, appears first
_INDICATOR_ORDER = {
    CardIndicator.CRITICAL: 0,
    CardIndicator.WARNING:  1,
    CardIndicator.INFO:     2,
}


@dataclass
class Action:
    """A CDS Hooks ``create`` action wrapping a resource template."""
    description: str
    resource: Dict[str, Any]
    type: str = "create"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "description": self.description,
            "resource": copy.deepcopy(self.resource),
        }


@dataclass
class Suggestion:
    label: str
    actions: List[Action] = field(default_factory=list)
    uuid: str = field(default_factory=lambda: str(uuid4()))
    is_recommended: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "label": self.label,
            "uuid": self.uuid,
            "isRecommended": self.is_recommended,
            "actions": [a.to_dict() for a in self.actions],
        }


@dataclass
class CDSCard:
    """
    One recommendation card.

    ``rule_id``, ``patient_id``, ``status`` and ``days_overdue`` are carried
    in the card's ``extension`` object on the wire so a confirmation can be
    traced back to the determination that produced it.
    """
    summary: str
    indicator: CardIndicator
    detail: str
    source: Dict[str, str]
    suggestions: List[Suggestion] = field(default_factory=list)
    rule_id: str = ""
    patient_id: str = ""
    status: ScreeningStatus = ScreeningStatus.DUE
    days_overdue: int = 0
    next_due_date: Optional[date] = None
    uuid: str = field(default_factory=lambda: str(uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uuid": self.uuid,
            "summary": self.summary,
            "indicator": self.indicator.value,
            "detail": self.detail,
            "source": dict(self.source),
            "suggestions": [s.to_dict() for s in self.suggestions],
            "selectionBehavior": "at-most-one",
            "extension": {
                "rule_id": self.rule_id,
                "patient_id": self.patient_id,
                "status": self.status.value,
                "days_overdue": self.days_overdue,
                "next_due_date": self.next_due_date.isoformat() if self.next_due_date else None,
            },
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CDSCard":
        """Rebuild a card echoed back by a client (confirmation requests)."""
        if not isinstance(data, dict):
            raise ValidationError("Card must be a JSON object", field="card")
        try:
            indicator = CardIndicator(data.get("indicator", CardIndicator.INFO.value))
        except ValueError:
            raise ValidationError(
                f"Unknown card indicator {data.get('indicator')!r}", field="indicator"
            )
        ext = data.get("extension") or {}
        if not isinstance(ext, dict):
            raise ValidationError("Card extension must be a JSON object", field="extension")
        suggestions = []
        for raw in data.get("suggestions") or []:
            if not isinstance(raw, dict):
                continue
            actions = [
                Action(
                    description=a.get("description", ""),
                    resource=a["resource"] if isinstance(a.get("resource"), dict) else {},
                    type=a.get("type", "create"),
                )
                for a in raw.get("actions") or []
                if isinstance(a, dict)
            ]
            suggestions.append(Suggestion(
                label=raw.get("label", ""),
                actions=actions,
                uuid=raw.get("uuid") or str(uuid4()),
                is_recommended=bool(raw.get("isRecommended", True)),
            ))
        try:
            status = ScreeningStatus(ext.get("status", ScreeningStatus.DUE.value))
        except ValueError:
            status = ScreeningStatus.DUE
        try:
            next_due = date.fromisoformat(ext["next_due_date"]) if ext.get("next_due_date") else None
        except (TypeError, ValueError):
            raise ValidationError(
                f"Invalid next_due_date {ext.get('next_due_date')!r}", field="extension.next_due_date"
            )
        try:
            days_overdue = int(ext.get("days_overdue") or 0)
        except (TypeError, ValueError):
            raise ValidationError(
                f"Invalid days_overdue {ext.get('days_overdue')!r}", field="extension.days_overdue"
            )
        return cls(
            summary=data.get("summary", ""),
            indicator=indicator,
            detail=data.get("detail", ""),
            source=dict(data["source"]) if isinstance(data.get("source"), dict) else {},
            suggestions=suggestions,
            rule_id=ext.get("rule_id", ""),
            patient_id=ext.get("patient_id", ""),
            status=status,
            days_overdue=days_overdue,
            next_due_date=next_due,
            uuid=data.get("uuid") or str(uuid4()),
        )


@dataclass
class ResourceCreationRequest:
    """A fully-formed resource ready for ``FHIRResourceService.create``."""
    resource_type: str
    body: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "method": "POST",
            "url": self.resource_type,
            "resourceType": self.resource_type,
            "resource": copy.deepcopy(self.body),
        }


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CDSCardGenerator:
    """
    Ranks and explains actionable screening determinations.

    Stateless apart from the rule lookup; safe to share across requests.
    """

    def __init__(
        self,
        rules: Iterable[ScreeningRule],
        critical_overdue_days: int = DEFAULT_CRITICAL_OVERDUE_DAYS,
        source_label: str = "USPSTF Preventive Services Recommendations",
        source_url: str = "https://www.uspreventiveservicestaskforce.org/",
        clock: Callable[[], datetime] = _utcnow,
    ):
        if critical_overdue_days < 0:
            raise ValueError("critical_overdue_days must be >= 0")
        self._rules: Dict[str, ScreeningRule] = {r.rule_id: r for r in rules}
        self.critical_overdue_days = critical_overdue_days
        self.source = {"label": source_label, "url": source_url}
        self._clock = clock

    # ── Public API ───────────────────────────────────────────────────────
    def generate_cards(self, determinations: Iterable[ScreeningDetermination]) -> List[CDSCard]:
        """
        Build one card per due/overdue determination.

        Returns:
            Cards ordered critical, warning, info; within a tier by days
            overdue (descending), then rule id.
        """
        cards: List[CDSCard] = []
        for determination in determinations:
            if not determination.is_actionable:
                continue
            rule = self._rules.get(determination.rule_id)
            if rule is None:
                logger.warning(f"CDSCardGenerator: no rule {determination.rule_id!r}, skipping card")
                continue
            cards.append(self._build_card(rule, determination))

        cards.sort(key=lambda c: (_INDICATOR_ORDER[c.indicator], -c.days_overdue, c.rule_id))
        logger.debug(f"CDSCardGenerator: {len(cards)} card(s) generated")
        return cards

    def indicator_for(self, determination: ScreeningDetermination) -> CardIndicator:
        if determination.status == ScreeningStatus.OVERDUE:
            if determination.days_overdue > self.critical_overdue_days:
                return CardIndicator.CRITICAL
            return CardIndicator.WARNING
        return CardIndicator.INFO

    def confirm_action(self, card: CDSCard, choice: str) -> ResourceCreationRequest:
        """
        Turn the chosen suggestion into a creation request.

        Args:
            card:   A card produced by ``generate_cards`` (or rebuilt via
                    ``CDSCard.from_dict``).
            choice: The suggestion's uuid or label.

        Raises:
            ValidationError: ``choice`` matches no suggestion on the card,
                or the suggestion has no create action.
        """
        suggestion = next(
            (s for s in card.suggestions if choice in (s.uuid, s.label)),
            None,
        )
        if suggestion is None:
            raise ValidationError(
                f"Card {card.uuid} has no suggestion {choice!r}",
                field="suggestion",
                details={"available": [s.uuid for s in card.suggestions]},
            )
        action = next((a for a in suggestion.actions if a.type == "create"), None)
        if action is None or not action.resource.get("resourceType"):
            raise ValidationError(
                f"Suggestion {choice!r} carries no resource to create",
                field="suggestion",
            )

        body = copy.deepcopy(action.resource)
        resource_type = body["resourceType"]
        now = self._clock()
        if resource_type == ActionKind.SERVICE_REQUEST.value:
            body["status"] = "active"
            body["intent"] = "order"
            body["authoredOn"] = format_instant(now)
        elif resource_type == ActionKind.IMMUNIZATION_RECOMMENDATION.value:
            body["date"] = format_instant(now)

        logger.info(f"CDSCardGenerator: confirmed {resource_type} for card {card.rule_id or card.uuid}")
        return ResourceCreationRequest(resource_type=resource_type, body=body)

    # ── Internals ────────────────────────────────────────────────────────
    def _build_card(self, rule: ScreeningRule, d: ScreeningDetermination) -> CDSCard:
        indicator = self.indicator_for(d)
        if d.status == ScreeningStatus.OVERDUE:
            summary = f"{rule.title}: overdue by {d.days_overdue} days"
        else:
            summary = f"{rule.title}: due"
        if len(summary) > SUMMARY_MAX_LENGTH:
            summary = summary[:SUMMARY_MAX_LENGTH - 3] + "..."

        if rule.action == ActionKind.IMMUNIZATION_RECOMMENDATION:
            resource = self._immunization_recommendation(rule, d)
            label = f"Recommend {rule.order_code.display or rule.title}"
        else:
            resource = self._service_request(rule, d)
            label = f"Order {rule.order_code.display or rule.title}"

        suggestion = Suggestion(
            label=label,
            actions=[Action(description=label, resource=resource)],
        )
        return CDSCard(
            summary=summary,
            indicator=indicator,
            detail=self.why_now(rule, d),
            source=dict(self.source),
            suggestions=[suggestion],
            rule_id=rule.rule_id,
            patient_id=d.patient_id,
            status=d.status,
            days_overdue=d.days_overdue,
            next_due_date=d.next_due_date,
        )

    @staticmethod
    def why_now(rule: ScreeningRule, d: ScreeningDetermination) -> str:
        if d.last_performed_date is not None:
            history = f"Last performed {d.last_performed_date.isoformat()}"
        else:
            history = "Last performed: never recorded"
        parts = [f"{history}; recommended {rule.interval_text(d.interval_months)}."]
        if d.next_due_date is not None:
            if d.status == ScreeningStatus.OVERDUE:
                parts.append(f"Was due {d.next_due_date.isoformat()} ({d.days_overdue} days ago).")
            else:
                parts.append(f"Due {d.next_due_date.isoformat()}.")
        if d.applied_modifiers:
            parts.append(f"Schedule adjusted for: {', '.join(d.applied_modifiers)}.")
        if rule.guideline:
            parts.append(rule.guideline)
        return " ".join(parts)

    @staticmethod
    def _service_request(rule: ScreeningRule, d: ScreeningDetermination) -> Dict[str, Any]:
        return {
            "resourceType": ActionKind.SERVICE_REQUEST.value,
            "status": "draft",
            "intent": "proposal",
            "code": rule.order_code.concept(),
            "subject": {"reference": f"Patient/{d.patient_id}"},
            "reasonCode": [{"text": f"{rule.title} {d.status.value}"}],
        }

    @staticmethod
    def _immunization_recommendation(rule: ScreeningRule, d: ScreeningDetermination) -> Dict[str, Any]:
        due = d.next_due_date or d.evaluated_on
        recommendation: Dict[str, Any] = {
            "vaccineCode": [rule.order_code.concept()],
            "forecastStatus": {
                "coding": [{"system": RECOMMENDATION_STATUS, "code": d.status.value}],
            },
        }
        if due is not None:
            recommendation["dateCriterion"] = [{
                "code": DATE_VACCINE_DUE.concept(),
                "value": due.isoformat(),
            }]
        return {
            "resourceType": ActionKind.IMMUNIZATION_RECOMMENDATION.value,
            "patient": {"reference": f"Patient/{d.patient_id}"},
            "date": (d.evaluated_on or date.today()).isoformat(),
            "recommendation": [recommendation],
        }
