"""
Preventive Screening Rule Table

USPSTF / ACIP-derived screening and vaccination schedule expressed as
structured ScreeningRule rows.  Loaded once at import, validated, and never
mutated at runtime.

Sources:
  - USPSTF A/B recommendations (breast, colorectal, cervical, lung cancer;
    hypertension; statin-use lipid screening; prediabetes/type 2 diabetes;
    osteoporosis; hepatitis C)
  - CDC/ACIP adult immunization schedule (influenza, recombinant zoster,
    pneumococcal conjugate)

Design principles:
  - Each rule is data, not code: age bounds, sex and risk codes are fields.
  - Modifiers only ever lower a starting age or shorten an interval.
  - Codes are module-level constants so they can be reviewed in one place.
"""
from __future__ import annotations

from typing import Dict, Iterable, Tuple

from app.core.fhir.resources import CVX, LOINC, SNOMED, Coding
from app.utils import get_logger
from app.utils.exceptions import RuleConfigurationError
from .base import (
    ActionKind,
    Eligibility,
    RiskModifier,
    ScreeningCategory,
    ScreeningRule,
    Sex,
    TriggerSource,
)

logger = get_logger(__name__)

# ── Evidence codes (LOINC / CVX) ─────────────────────────────────────────────
MAMMOGRAPHY_SCREENING  = Coding(LOINC, "24606-6", "MG Breast Screening")
MAMMOGRAPHY_DIAGNOSTIC = Coding(LOINC, "24604-1", "MG Breast Diagnostic Limited Views")
COLONOSCOPY_STUDY      = Coding(LOINC, "18746-8", "Colonoscopy study")
COLONOSCOPY_PROCEDURE  = Coding(SNOMED, "73761001", "Colonoscopy")
CERVICAL_CYTOLOGY      = Coding(LOINC, "10524-7", "Microscopic observation in Cervix by Cyto stain")
PAP_SMEAR              = Coding(LOINC, "19762-4", "General categories in Cervical or vaginal smear")
CT_CHEST               = Coding(LOINC, "24627-2", "CT Chest")
BP_PANEL               = Coding(LOINC, "85354-9", "Blood pressure panel with all children optional")
SYSTOLIC_BP            = Coding(LOINC, "8480-6", "Systolic blood pressure")
LIPID_PANEL            = Coding(LOINC, "57698-3", "Lipid panel with direct LDL")
TOTAL_CHOLESTEROL      = Coding(LOINC, "2093-3", "Cholesterol [Mass/volume] in Serum or Plasma")
HBA1C                  = Coding(LOINC, "4548-4", "Hemoglobin A1c/Hemoglobin.total in Blood")
DXA_BONE_DENSITY       = Coding(LOINC, "38269-7", "DXA Bone density")
HCV_ANTIBODY           = Coding(LOINC, "13955-0", "Hepatitis C virus Ab [Presence] in Serum")

FLU_IIV4               = Coding(CVX, "150", "Influenza, injectable, quadrivalent, preservative free")
FLU_IIV4_MDV           = Coding(CVX, "158", "Influenza, injectable, quadrivalent")
FLU_IIV3               = Coding(CVX, "140", "Influenza, seasonal, injectable, preservative free")
FLU_HD                 = Coding(CVX, "197", "Influenza, high-dose, quadrivalent")
ZOSTER_RECOMBINANT     = Coding(CVX, "187", "Zoster vaccine recombinant")
PCV15                  = Coding(CVX, "215", "Pneumococcal conjugate PCV15")
PCV20                  = Coding(CVX, "216", "Pneumococcal conjugate PCV20")
PPSV23                 = Coding(CVX, "33", "Pneumococcal polysaccharide PPV23")

# ── Risk codes (SNOMED CT) ───────────────────────────────────────────────────
FH_BREAST_CANCER     = Coding(SNOMED, "429740004", "Family history of malignant neoplasm of breast")
FH_COLON_CANCER      = Coding(SNOMED, "312824007", "Family history of cancer of colon")
BREAST_CANCER        = Coding(SNOMED, "254837009", "Malignant neoplasm of breast")
COLON_CANCER         = Coding(SNOMED, "363406005", "Malignant tumor of colon")
SMOKER               = Coding(SNOMED, "77176002", "Smoker")
EX_SMOKER            = Coding(SNOMED, "8517006", "Ex-smoker")
HYPERTENSION         = Coding(SNOMED, "38341003", "Hypertensive disorder")
OVERWEIGHT           = Coding(SNOMED, "238131007", "Overweight")
OBESITY              = Coding(SNOMED, "414916001", "Obesity")
DIABETES_MELLITUS    = Coding(SNOMED, "73211009", "Diabetes mellitus")
FH_DIABETES          = Coding(SNOMED, "160303001", "Family history of diabetes mellitus")

# ── Rule table ───────────────────────────────────────────────────────────────
SCREENING_RULES: Tuple[ScreeningRule, ...] = (
    ScreeningRule(
        rule_id="mammography",
        title="Breast cancer screening (mammography)",
        category=ScreeningCategory.CANCER,
        eligibility=Eligibility(min_age=40, max_age=74, sex=Sex.FEMALE),
        interval_months=24,
        evidence=(MAMMOGRAPHY_SCREENING, MAMMOGRAPHY_DIAGNOSTIC),
        order_code=MAMMOGRAPHY_SCREENING,
        modifiers=(
            RiskModifier(
                modifier_id="fh-breast-cancer",
                description="family history of breast cancer",
                codes=(FH_BREAST_CANCER, BREAST_CANCER),
                source=TriggerSource.FAMILY_HISTORY,
                interval_months=12,
            ),
        ),
        guideline="USPSTF 2024: biennial screening mammography for women aged 40-74",
    ),
    ScreeningRule(
        rule_id="colonoscopy",
        title="Colorectal cancer screening (colonoscopy)",
        category=ScreeningCategory.CANCER,
        eligibility=Eligibility(min_age=45, max_age=75),
        interval_months=120,
        evidence=(COLONOSCOPY_STUDY, COLONOSCOPY_PROCEDURE),
        order_code=COLONOSCOPY_PROCEDURE,
        modifiers=(
            RiskModifier(
                modifier_id="fh-colorectal-cancer",
                description="family history of colorectal cancer",
                codes=(FH_COLON_CANCER, COLON_CANCER),
                source=TriggerSource.FAMILY_HISTORY,
                min_age=40,
                interval_months=60,
            ),
        ),
        guideline="USPSTF 2021: colorectal cancer screening for adults aged 45-75",
    ),
    ScreeningRule(
        rule_id="cervical-cytology",
        title="Cervical cancer screening (cytology)",
        category=ScreeningCategory.CANCER,
        eligibility=Eligibility(min_age=21, max_age=65, sex=Sex.FEMALE),
        interval_months=36,
        evidence=(CERVICAL_CYTOLOGY, PAP_SMEAR),
        order_code=PAP_SMEAR,
        guideline="USPSTF 2018: cervical cytology every 3 years for women aged 21-65",
    ),
    ScreeningRule(
        rule_id="lung-ldct",
        title="Lung cancer screening (low-dose CT)",
        category=ScreeningCategory.CANCER,
        eligibility=Eligibility(min_age=50, max_age=80, risk_factors=(SMOKER, EX_SMOKER)),
        interval_months=12,
        evidence=(CT_CHEST,),
        order_code=CT_CHEST,
        guideline="USPSTF 2021: annual LDCT for adults 50-80 with a smoking history",
    ),
    ScreeningRule(
        rule_id="blood-pressure",
        title="Hypertension screening (blood pressure)",
        category=ScreeningCategory.CARDIOVASCULAR,
        eligibility=Eligibility(min_age=18),
        interval_months=12,
        evidence=(BP_PANEL, SYSTOLIC_BP),
        order_code=BP_PANEL,
        guideline="USPSTF 2021: blood pressure screening for adults 18 and older",
    ),
    ScreeningRule(
        rule_id="lipid-panel",
        title="Cardiovascular risk screening (lipid panel)",
        category=ScreeningCategory.CARDIOVASCULAR,
        eligibility=Eligibility(min_age=40, max_age=75),
        interval_months=60,
        evidence=(LIPID_PANEL, TOTAL_CHOLESTEROL),
        order_code=LIPID_PANEL,
        modifiers=(
            RiskModifier(
                modifier_id="hypertension",
                description="diagnosed hypertension",
                codes=(HYPERTENSION,),
                source=TriggerSource.CONDITION,
                interval_months=12,
            ),
        ),
        guideline="USPSTF 2022: lipid screening for statin-use assessment, adults 40-75",
    ),
    ScreeningRule(
        rule_id="diabetes-hba1c",
        title="Prediabetes and type 2 diabetes screening (HbA1c)",
        category=ScreeningCategory.METABOLIC,
        eligibility=Eligibility(min_age=35, max_age=70, risk_factors=(OVERWEIGHT, OBESITY)),
        interval_months=36,
        evidence=(HBA1C,),
        order_code=HBA1C,
        modifiers=(
            RiskModifier(
                modifier_id="fh-diabetes",
                description="family history of diabetes",
                codes=(FH_DIABETES, DIABETES_MELLITUS),
                source=TriggerSource.FAMILY_HISTORY,
                interval_months=12,
            ),
        ),
        guideline="USPSTF 2021: screen adults 35-70 with overweight or obesity",
    ),
    ScreeningRule(
        rule_id="osteoporosis-dxa",
        title="Osteoporosis screening (DXA)",
        category=ScreeningCategory.BONE_HEALTH,
        eligibility=Eligibility(min_age=65, sex=Sex.FEMALE),
        interval_months=24,
        evidence=(DXA_BONE_DENSITY,),
        order_code=DXA_BONE_DENSITY,
        guideline="USPSTF 2025: bone density screening for women 65 and older",
    ),
    ScreeningRule(
        rule_id="hepatitis-c",
        title="Hepatitis C virus screening",
        category=ScreeningCategory.OTHER,
        eligibility=Eligibility(min_age=18, max_age=79),
        interval_months=None,
        evidence=(HCV_ANTIBODY,),
        order_code=HCV_ANTIBODY,
        guideline="USPSTF 2020: one-time HCV screening for adults 18-79",
    ),
    ScreeningRule(
        rule_id="influenza-vaccine",
        title="Seasonal influenza vaccination",
        category=ScreeningCategory.IMMUNIZATION,
        eligibility=Eligibility(min_age=18),
        interval_months=12,
        evidence=(FLU_IIV4, FLU_IIV4_MDV, FLU_IIV3, FLU_HD),
        order_code=FLU_IIV4,
        action=ActionKind.IMMUNIZATION_RECOMMENDATION,
        guideline="ACIP: annual influenza vaccination for all adults",
    ),
    ScreeningRule(
        rule_id="zoster-vaccine",
        title="Recombinant zoster vaccination",
        category=ScreeningCategory.IMMUNIZATION,
        eligibility=Eligibility(min_age=50),
        interval_months=None,
        evidence=(ZOSTER_RECOMBINANT,),
        order_code=ZOSTER_RECOMBINANT,
        action=ActionKind.IMMUNIZATION_RECOMMENDATION,
        guideline="ACIP: recombinant zoster vaccine series for adults 50 and older",
    ),
    ScreeningRule(
        rule_id="pneumococcal-vaccine",
        title="Pneumococcal vaccination",
        category=ScreeningCategory.IMMUNIZATION,
        eligibility=Eligibility(min_age=65),
        interval_months=None,
        evidence=(PCV20, PCV15, PPSV23),
        order_code=PCV20,
        action=ActionKind.IMMUNIZATION_RECOMMENDATION,
        guideline="ACIP: pneumococcal conjugate vaccine for adults 65 and older",
    ),
)


def _invalid(rule_id: str, message: str) -> RuleConfigurationError:
    logger.error(f"Screening rule table: {rule_id}: {message}")
    return RuleConfigurationError(message, rule_id=rule_id)


def validate_rules(rules: Iterable[ScreeningRule]) -> Tuple[ScreeningRule, ...]:
    """
    Check table invariants and return the rules as a tuple.

    Raises:
        RuleConfigurationError: duplicate id, inverted age bounds, bad
            interval, empty evidence, or a modifier that widens a rule.
    """
    checked = tuple(rules)
    seen: Dict[str, ScreeningRule] = {}

    for rule in checked:
        rid = rule.rule_id
        if rid in seen:
            raise _invalid(rid, "duplicate rule id")
        seen[rid] = rule

        elig = rule.eligibility
        if elig.min_age is not None and elig.min_age < 0:
            raise _invalid(rid, "min_age must be >= 0")
        if elig.min_age is not None and elig.max_age is not None and elig.min_age > elig.max_age:
            raise _invalid(rid, f"min_age {elig.min_age} > max_age {elig.max_age}")
        if rule.interval_months is not None and rule.interval_months < 1:
            raise _invalid(rid, "interval_months must be >= 1")
        if rule.grace_months < 0:
            raise _invalid(rid, "grace_months must be >= 0")
        if not rule.evidence:
            raise _invalid(rid, "rule has no evidence codes")

        for mod in rule.modifiers:
            if not mod.codes:
                raise _invalid(rid, f"modifier {mod.modifier_id!r} has no trigger codes")
            if mod.min_age is not None and elig.min_age is not None and mod.min_age > elig.min_age:
                raise _invalid(rid, f"modifier {mod.modifier_id!r} raises the starting age")
            if mod.interval_months is not None:
                if rule.interval_months is None:
                    raise _invalid(rid, f"modifier {mod.modifier_id!r} sets an interval on a one-time rule")
                if not 1 <= mod.interval_months <= rule.interval_months:
                    raise _invalid(rid, f"modifier {mod.modifier_id!r} must shorten the interval")

    return checked


DEFAULT_RULES: Tuple[ScreeningRule, ...] = validate_rules(SCREENING_RULES)
