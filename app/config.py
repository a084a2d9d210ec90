"""
Service Configuration
=====================
Centralised settings for the FHIR store, screening engine and CDS cards.
Loads overrides from the project-level .env file.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# ── Paths ───────────────────────────────────────────────────────────────
PROJECT_ROOT = Path(__file__).resolve().parent.parent

# ── Load .env ───────────────────────────────────────────────────────────
load_dotenv(PROJECT_ROOT / ".env")

SERVICE_NAME = "Preventive Screening FHIR Service"
SERVICE_VERSION = "1.0.0"
FHIR_VERSION = "4.0.1"


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    """Runtime settings. Thresholds live here, not in the engine."""
    fhir_base_url: str = "http://localhost:8000/fhir"
    default_count: int = 20
    max_count: int = 100

    # Days before the due date at which a screening flips to "due"
    lead_window_days: int = 30
    # Overdue by more than this many days -> critical card
    critical_overdue_days: int = 180

    seed_sample_data: bool = True

    cds_source_label: str = "USPSTF Preventive Services Recommendations"
    cds_source_url: str = "https://www.uspreventiveservicestaskforce.org/"

    log_level: str = "INFO"
    log_file: Optional[str] = None

    def __post_init__(self):
        if self.default_count < 0 or self.max_count < 1:
            raise ValueError("FHIR page sizes must be positive")
        if self.lead_window_days < 0:
            raise ValueError("SCREENING_LEAD_WINDOW_DAYS must be >= 0")
        if self.critical_overdue_days < 0:
            raise ValueError("CDS_CRITICAL_OVERDUE_DAYS must be >= 0")

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            fhir_base_url=os.getenv("FHIR_BASE_URL", cls.fhir_base_url).rstrip("/"),
            default_count=_env_int("FHIR_DEFAULT_COUNT", cls.default_count),
            max_count=_env_int("FHIR_MAX_COUNT", cls.max_count),
            lead_window_days=_env_int("SCREENING_LEAD_WINDOW_DAYS", cls.lead_window_days),
            critical_overdue_days=_env_int("CDS_CRITICAL_OVERDUE_DAYS", cls.critical_overdue_days),
            seed_sample_data=_env_bool("FHIR_SEED_SAMPLE_DATA", cls.seed_sample_data),
            cds_source_label=os.getenv("CDS_SOURCE_LABEL", cls.cds_source_label),
            cds_source_url=os.getenv("CDS_SOURCE_URL", cls.cds_source_url),
            log_level=os.getenv("LOG_LEVEL", cls.log_level),
            log_file=os.getenv("LOG_FILE") or None,
        )
