from __future__ import annotations

from dataclasses import dataclass, field, fields, is_dataclass
from datetime import datetime, time
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Sequence, Tuple


class EnrollmentSource(str, Enum):
    """Provenance of an enrollment row."""

    PRIMARY_FORM = "PrimaryForm"
    LEGACY_FORM = "LegacyForm"
    PAYMENT_GATEWAY_IMPORT = "PaymentGatewayImport"
    UNKNOWN = "UnknownEnrollment"

    @property
    def is_counted(self) -> bool:
        return self is not EnrollmentSource.UNKNOWN


class RenewalSource(str, Enum):
    """Provenance of a renewal row."""

    PRIMARY_RENEWAL = "PrimaryRenewal"
    HISTORICAL_RENEWAL = "HistoricalRenewal"
    PAYMENT_GATEWAY_RENEWAL = "PaymentGatewayRenewal"
    UNKNOWN = "UnknownRenewal"

    @property
    def is_counted(self) -> bool:
        return self is not RenewalSource.UNKNOWN


class LifecycleStatus(str, Enum):
    LIFETIME = "lifetime"
    ACTIVE_NOT_EXPIRED = "active"
    IN_GRACE = "inGrace"
    RENEWED = "renewed"
    CHURNED = "churned"

    @property
    def is_active(self) -> bool:
        return self is not LifecycleStatus.CHURNED


class DrillDownMetric(str, Enum):
    NEW_ENROLLMENTS = "newEnrollments"
    ELIGIBLE = "eligible"
    RENEWED = "renewed"
    CHURNED = "churned"
    IN_GRACE = "inGrace"
    MULTI_ACTIVITY = "multiActivity"
    ACTIVE_AT_START = "activeAtStart"
    LIFETIME_VALUE = "lifetimeValue"


@dataclass(frozen=True)
class EnrollmentRecord:
    """
    One enrollment row after normalization.

    ``id`` is the normalized identity key. Rows without an external student
    code get a synthesized id and ``has_external_id=False``; such records are
    never merged with any other record.
    """

    id: str
    name: str
    enrollment_date: datetime
    source: EnrollmentSource
    course_category: str = "Other"
    activities: FrozenSet[str] = frozenset()
    email: Optional[str] = None
    phone: Optional[str] = None
    end_date: Optional[datetime] = None
    fees: Optional[Decimal] = None
    package: Optional[str] = None
    notes: Optional[str] = None
    is_strike_off: bool = False
    has_external_id: bool = True
    row_number: Optional[int] = None


@dataclass(frozen=True)
class RenewalRecord:
    """
    One renewal event. ``end_date`` is the new expiration granted by it.
    """

    id: str
    name: str
    renewal_date: datetime
    source: RenewalSource
    course_category: str = "Other"
    activities: FrozenSet[str] = frozenset()
    email: Optional[str] = None
    phone: Optional[str] = None
    end_date: Optional[datetime] = None
    fees: Decimal = Decimal("0")
    package: Optional[str] = None
    has_external_id: bool = True
    row_number: Optional[int] = None


@dataclass(frozen=True)
class Term:
    """A service window contributed by one merged record."""

    start: datetime
    end: Optional[datetime]
    is_renewal: bool = False


@dataclass(frozen=True)
class UnifiedStudent:
    """
    Canonical student built by the merger from every record sharing a base id.

    ``end_date`` is the latest expiration across all merged records while
    ``terms`` keeps every individual window so the classifier can tell which
    expiration was in force on a past date.
    """

    id: str
    name: str
    enrollment_date: datetime
    activities: FrozenSet[str] = frozenset()
    course_categories: FrozenSet[str] = frozenset()
    renewal_dates: Tuple[datetime, ...] = ()
    terms: Tuple[Term, ...] = ()
    record_ids: Tuple[str, ...] = ()
    email: Optional[str] = None
    phone: Optional[str] = None
    end_date: Optional[datetime] = None
    fees: Optional[Decimal] = None
    package: Optional[str] = None
    is_lifetime: bool = False
    is_strike_off: bool = False
    has_enrollment: bool = True

    @property
    def is_multi_activity(self) -> bool:
        return len(self.activities) > 1 or len(self.course_categories) > 1


@dataclass(frozen=True)
class Classification:
    status: LifecycleStatus
    is_eligible_for_renewal: bool
    expiration: Optional[datetime] = None
    grace_end: Optional[datetime] = None


def as_naive(moment: datetime) -> datetime:
    """Drop any timezone; record dates are naive wall-clock values."""
    return moment.replace(tzinfo=None) if moment.tzinfo is not None else moment


@dataclass(frozen=True)
class DateRange:
    """
    Inclusive reporting window. Always call ``normalized()`` before comparing.
    """

    start_date: datetime
    end_date: datetime

    def normalized(self) -> "DateRange":
        start, end = as_naive(self.start_date), as_naive(self.end_date)
        if end < start:
            start, end = end, start
        return DateRange(
            start_date=datetime.combine(start.date(), time.min),
            end_date=datetime.combine(end.date(), time.max),
        )

    def contains(self, moment: Optional[datetime]) -> bool:
        if moment is None:
            return False
        return self.start_date <= moment <= self.end_date


@dataclass(frozen=True)
class StudentWithLTV:
    student: UnifiedStudent
    lifetime_value: Decimal
    status: Optional[LifecycleStatus] = None

    @property
    def id(self) -> str:
        return self.student.id

    def as_dict(self) -> Dict[str, Any]:
        return to_payload(self)


@dataclass(frozen=True)
class UnifiedMetrics:
    new_enrollments: int = 0
    eligible_students: int = 0
    renewed_students: int = 0
    churned_students: int = 0
    in_grace_students: int = 0
    multi_activity_students: int = 0
    renewal_percentage: float = 0.0
    churn_percentage: float = 0.0
    retention_percentage: float = 0.0
    net_growth_percentage: float = 0.0
    lifetime_value: Decimal = Decimal("0")
    start_of_period: int = 0
    end_of_period: int = 0

    def as_dict(self) -> Dict[str, Any]:
        return to_payload(self)


@dataclass(frozen=True)
class MonthlyMetrics:
    """
    One calendar month of the series. ``date`` is the first of the month,
    ``period_start``/``period_end`` are the bounds actually used, which are
    narrower for the first and last bucket of a range cut mid-month.
    """

    month: str
    date: datetime
    period_start: datetime
    period_end: datetime
    start_of_month: int = 0
    new_enrollments: int = 0
    renewals: int = 0
    dropped: int = 0
    end_of_month: int = 0
    eligible: int = 0
    churn_rate: float = 0.0
    retention_rate: float = 0.0
    net_growth_rate: float = 0.0
    renewal_rate: float = 0.0

    def as_dict(self) -> Dict[str, Any]:
        return to_payload(self)


@dataclass(frozen=True)
class CategoryBreakdownRow:
    course_category: str
    enrollments: int = 0
    renewals: int = 0
    churned: int = 0

    def as_dict(self) -> Dict[str, Any]:
        return to_payload(self)


@dataclass(frozen=True)
class ActivityBreakdownRow:
    activity: str
    enrollments: int = 0
    renewals: int = 0
    drop_rate: float = 0.0

    def as_dict(self) -> Dict[str, Any]:
        return to_payload(self)


@dataclass(frozen=True)
class RenewalStats:
    total_eligible: int = 0
    renewed: int = 0
    churned: int = 0
    in_grace: int = 0
    lifetime: int = 0
    renewal_percentage: float = 0.0
    churn_percentage: float = 0.0
    net_retention: float = 0.0
    renewed_students: Sequence[StudentWithLTV] = field(default_factory=tuple)
    churned_students: Sequence[StudentWithLTV] = field(default_factory=tuple)
    in_grace_students: Sequence[StudentWithLTV] = field(default_factory=tuple)

    def as_dict(self) -> Dict[str, Any]:
        return to_payload(self)


@dataclass(frozen=True)
class TrendPoint:
    timestamp: datetime
    value: float


@dataclass(frozen=True)
class TrendSeries:
    name: str
    points: Iterable[TrendPoint]
    unit: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return to_payload(self)


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


def to_payload(obj: Any) -> Any:
    """
    Convert the result dataclasses into a JSON-serialisable structure with
    camelCase keys, the shape the dashboard frontend reads.
    """

    if isinstance(obj, StudentWithLTV):
        payload = to_payload(obj.student)
        payload["lifetimeValue"] = to_payload(obj.lifetime_value)
        payload["status"] = to_payload(obj.status)
        return payload
    if is_dataclass(obj) and not isinstance(obj, type):
        return {_camel(item.name): to_payload(getattr(obj, item.name)) for item in fields(obj)}
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, Decimal):
        return float(obj)
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, (set, frozenset)):
        return sorted(to_payload(item) for item in obj)
    if isinstance(obj, dict):
        return {key: to_payload(value) for key, value in obj.items()}
    if isinstance(obj, Iterable) and not isinstance(obj, (str, bytes)):
        return [to_payload(item) for item in obj]
    return obj


def students_payload(students: Iterable[StudentWithLTV]) -> List[Dict[str, Any]]:
    return [student.as_dict() for student in students]


@dataclass(frozen=True)
class DashboardResult:
    snapshot: UnifiedMetrics
    monthly: Sequence[MonthlyMetrics] = field(default_factory=tuple)
    trends: Sequence[TrendSeries] = field(default_factory=tuple)
    categories: Sequence[CategoryBreakdownRow] = field(default_factory=tuple)
    activities: Sequence[ActivityBreakdownRow] = field(default_factory=tuple)
    renewal_stats: RenewalStats = field(default_factory=RenewalStats)
    report: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        """
        JSON-ready view of the whole dashboard. The parse report is already a
        plain mapping and is passed through untouched.
        """

        payload = to_payload(self)
        payload["report"] = self.report
        return payload
