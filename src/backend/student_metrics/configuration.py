"""
Configuration for the student metrics engine.
"""

from __future__ import annotations

import os
from typing import Any, Dict, Literal, Mapping, Optional

from pydantic import BaseModel, Field


# ========== 1. Lifecycle rules ==========

class LifecycleConfig(BaseModel):
    grace_period_days: int = 45
    """Days after expiration during which a late renewal still avoids churn"""

    lifetime_marker: str = "LTV"
    """Package text marker (case-insensitive) flagging a never-expiring package"""

    derive_end_date_from_package: bool = True
    """Derive a missing end date from an "N weeks" package description"""

    default_package_weeks: Optional[int] = None
    """Fallback package length when neither end date nor weeks are known; None keeps the end date empty"""


# ========== 2. Course category codes ==========

DEFAULT_CATEGORY_CODES: Dict[str, str] = {
    "KB": "Keyboard",
    "PN": "Piano",
    "GT": "Guitar",
    "VC": "Vocals",
    "DR": "Drums",
    "VL": "Violin",
    "BN": "Bansuri",
    "TB": "Tabla",
    "UK": "Ukulele",
    "AR": "Art",
    "DN": "Dance",
    "CH": "Chess",
}


class CategoryConfig(BaseModel):
    codes: Dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_CATEGORY_CODES))
    """Second identity segment -> course category"""

    fallback: str = "Other"
    """Category used for unknown or missing codes"""

    def lookup(self, code: Optional[str]) -> str:
        if not code:
            return self.fallback
        return self.codes.get(code.strip().upper(), self.fallback)


# ========== 3. Sheet provenance ==========

class SourceConfig(BaseModel):
    enrollment_sheets: Dict[str, str] = Field(
        default_factory=lambda: {
            "FormResponses1": "PrimaryForm",
            "OldFormResponses1": "LegacyForm",
            "RazorpayEnrollments": "PaymentGatewayImport",
        }
    )
    """Enrollment sheet/tab name -> source tag"""

    renewal_sheets: Dict[str, str] = Field(
        default_factory=lambda: {
            "Renewal": "PrimaryRenewal",
            "HistoricalRenewal": "HistoricalRenewal",
            "RazorpayRenewals": "PaymentGatewayRenewal",
        }
    )
    """Renewal sheet/tab name -> source tag"""


# ========== 4. Aggregation ==========

class AggregationConfig(BaseModel):
    multi_activity_scope: Literal["merged", "enrollment_rows"] = "merged"
    """
    How multi-activity students are detected:
    "merged" uses the full activity/category set of the merged identity,
    "enrollment_rows" only looks at the in-range enrollment rows.
    """

    percentage_precision: int = 1
    """Decimal places kept on every percentage"""

    default_top_n: int = 10
    """Default slice for category/activity breakdowns"""

    min_enrollments_for_drop_rate: int = 5
    """Activities below this size are left out of the drop-rate ranking"""

    activity_delimiter: str = ","
    """Separator of the activity cell"""


# ========== 5. Combined ==========

class MetricsConfig(BaseModel):
    """Configuration for the student metrics engine."""

    lifecycle: LifecycleConfig = LifecycleConfig()
    categories: CategoryConfig = CategoryConfig()
    sources: SourceConfig = SourceConfig()
    aggregation: AggregationConfig = AggregationConfig()

    @classmethod
    def from_configurable(cls, configurable: Optional[Mapping[str, Any]] = None) -> "MetricsConfig":
        """Build a config from an optional nested mapping, then apply environment overrides."""
        return load_metrics_config(configurable)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: Optional[int]) -> Optional[int]:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_str(name: str, default: str, allowed: Optional[set] = None) -> str:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    value = raw.strip()
    if allowed is not None and value not in allowed:
        return default
    return value


def load_metrics_config(configurable: Optional[Mapping[str, Any]] = None) -> MetricsConfig:
    cfg = MetricsConfig()
    configurable = configurable or {}

    lifecycle_cfg = configurable.get("lifecycle", {})
    cfg.lifecycle = LifecycleConfig(
        grace_period_days=_env_int(
            "STUDENT_METRICS_GRACE_PERIOD_DAYS",
            lifecycle_cfg.get("grace_period_days", cfg.lifecycle.grace_period_days),
        ),
        lifetime_marker=_env_str(
            "STUDENT_METRICS_LIFETIME_MARKER",
            lifecycle_cfg.get("lifetime_marker", cfg.lifecycle.lifetime_marker),
        ),
        derive_end_date_from_package=_env_bool(
            "STUDENT_METRICS_DERIVE_END_DATE",
            lifecycle_cfg.get("derive_end_date_from_package", cfg.lifecycle.derive_end_date_from_package),
        ),
        default_package_weeks=_env_int(
            "STUDENT_METRICS_DEFAULT_PACKAGE_WEEKS",
            lifecycle_cfg.get("default_package_weeks", cfg.lifecycle.default_package_weeks),
        ),
    )

    category_cfg = configurable.get("categories", {})
    cfg.categories = CategoryConfig(
        codes={
            **cfg.categories.codes,
            **{str(code).upper(): name for code, name in category_cfg.get("codes", {}).items()},
        },
        fallback=category_cfg.get("fallback", cfg.categories.fallback),
    )

    source_cfg = configurable.get("sources", {})
    cfg.sources = SourceConfig(
        enrollment_sheets=source_cfg.get("enrollment_sheets", cfg.sources.enrollment_sheets),
        renewal_sheets=source_cfg.get("renewal_sheets", cfg.sources.renewal_sheets),
    )

    aggregation_cfg = configurable.get("aggregation", {})
    cfg.aggregation = AggregationConfig(
        multi_activity_scope=_env_str(
            "STUDENT_METRICS_MULTI_ACTIVITY_SCOPE",
            aggregation_cfg.get("multi_activity_scope", cfg.aggregation.multi_activity_scope),
            allowed={"merged", "enrollment_rows"},
        ),
        percentage_precision=_env_int(
            "STUDENT_METRICS_PERCENTAGE_PRECISION",
            aggregation_cfg.get("percentage_precision", cfg.aggregation.percentage_precision),
        ),
        default_top_n=_env_int(
            "STUDENT_METRICS_TOP_N",
            aggregation_cfg.get("default_top_n", cfg.aggregation.default_top_n),
        ),
        min_enrollments_for_drop_rate=aggregation_cfg.get(
            "min_enrollments_for_drop_rate", cfg.aggregation.min_enrollments_for_drop_rate
        ),
        activity_delimiter=aggregation_cfg.get("activity_delimiter", cfg.aggregation.activity_delimiter),
    )

    return cfg
