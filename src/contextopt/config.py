"""Engine configuration.

Every policy threshold used by the pipeline lives here so callers can tune it
without touching the stages. A config is an immutable value passed explicitly
to each stage; ``None`` anywhere in the API means ``EngineConfig()``.
"""

import os
from dataclasses import dataclass, fields, replace
from datetime import date

ENV_PREFIX = "CONTEXTOPT_"


@dataclass(frozen=True)
class EngineConfig:
    """Tunable policy constants for the optimization engine."""

    # Classification
    freshness_days: int = 60
    reference_max_temporal_density: float = 0.02

    # Outdated detection
    outdated_min_tokens: int = 150
    retained_summary_tokens: int = 25

    # Bloat detection
    bloat_min_tokens: int = 600
    bloat_max_tokens: int = 2500
    bloat_factor: float = 4.0
    dense_line_tokens: int = 60

    # Duplicate detection
    duplicate_similarity: float = 0.8
    confirmed_duplicate_similarity: float = 0.95
    duplicate_min_shingles: int = 8
    shingle_size: int = 3

    # Verbosity detection
    verbose_min_tokens: int = 80
    verbose_filler_density: float = 0.03
    verbose_repeated_starts: float = 0.4
    verbose_min_ratio: float = 0.2
    verbose_max_ratio: float = 0.4

    # Supplementary heuristics
    stale_dates_count: int = 3
    max_code_blocks: int = 5

    # Severity bands
    high_severity_share: float = 0.2
    high_severity_tokens: int = 2000
    medium_severity_share: float = 0.05
    medium_severity_tokens: int = 500

    # Strategy bands (score is 0-100)
    conservative_from: int = 80
    aggressive_below: int = 50
    aggressive_high_issues: int = 3

    # Applier
    trim_min_kept_lines: int = 3

    # Reference date for date ages; None means the current date
    today: date | None = None

    def reference_date(self) -> date:
        """Date that section ages are measured against."""
        return self.today or date.today()

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> "EngineConfig":
        """Build a config from CONTEXTOPT_* environment variables.

        Example: CONTEXTOPT_FRESHNESS_DAYS=90 overrides freshness_days.
        Unset variables keep their defaults.
        """
        env = os.environ if environ is None else environ
        config = cls()
        overrides = {}
        for f in fields(cls):
            raw = env.get(f"{ENV_PREFIX}{f.name.upper()}")
            if raw is None or raw == "":
                continue
            if f.name == "today":
                overrides[f.name] = date.fromisoformat(raw)
            else:
                overrides[f.name] = type(getattr(config, f.name))(raw)
        return replace(config, **overrides)


DEFAULT_CONFIG = EngineConfig()
