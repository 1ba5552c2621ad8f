"""
Student lifecycle metrics.

This package turns tagged enrollment/renewal sheet rows into merged student
identities, classifies each student's subscription lifecycle at any date and
aggregates the result into snapshot, monthly and per-category metrics.
"""

from .classifier import LifecycleClassifier  # noqa: F401
from .configuration import MetricsConfig, load_metrics_config  # noqa: F401
from .dataset import StudentDataset  # noqa: F401
from .merger import IdentityMerger, derive_base_id, merge_records  # noqa: F401
from .models import (  # noqa: F401
    ActivityBreakdownRow,
    CategoryBreakdownRow,
    Classification,
    DashboardResult,
    DateRange,
    DrillDownMetric,
    EnrollmentRecord,
    EnrollmentSource,
    LifecycleStatus,
    MonthlyMetrics,
    RenewalRecord,
    RenewalSource,
    RenewalStats,
    StudentWithLTV,
    TrendPoint,
    TrendSeries,
    UnifiedMetrics,
    UnifiedStudent,
)
from .normalizer import ParseReport, RecordNormalizer, parse_sheet_date  # noqa: F401
from .repository import (  # noqa: F401
    RepositoryConfig,
    RepositoryError,
    SheetRowRepository,
    SQLSheetRepository,
    build_repository_from_env,
)
from .schema import RawRow, SheetBatch  # noqa: F401
from .service import (  # noqa: F401
    StudentMetricsService,
    compute_category_breakdown,
    compute_monthly_series,
    compute_snapshot,
)
