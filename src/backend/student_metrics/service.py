from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import MAXYEAR, datetime, timedelta
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple, Union

from .configuration import MetricsConfig
from .dataset import StudentDataset
from .merger import base_id_of
from .models import (
    ActivityBreakdownRow,
    CategoryBreakdownRow,
    DashboardResult,
    DateRange,
    DrillDownMetric,
    EnrollmentRecord,
    LifecycleStatus,
    MonthlyMetrics,
    RenewalRecord,
    RenewalStats,
    StudentWithLTV,
    TrendPoint,
    TrendSeries,
    UnifiedMetrics,
    UnifiedStudent,
    as_naive,
)
from .schema import SheetBatch

logger = logging.getLogger(__name__)

ONE_TICK = timedelta(microseconds=1)
CATEGORY_SORT_KEYS = ("enrollments", "renewals", "churned")


def _resolve_now(now: Optional[datetime]) -> datetime:
    return as_naive(now) if now is not None else datetime.now()


def _instant_before(moment: datetime) -> datetime:
    return moment - ONE_TICK if moment > datetime.min else moment


def _percentage(numerator: float, denominator: float, precision: int) -> float:
    if not denominator:
        return 0.0
    return round(numerator / denominator * 100, precision)


def _monthrange(window: DateRange) -> Iterable[Tuple[datetime, datetime, datetime]]:
    """
    Yield ``(month_start, bucket_start, bucket_end)`` for every calendar month
    touched by the window; the edge buckets are clipped to the window.
    """

    cursor = window.start_date.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    while cursor <= window.end_date:
        if cursor.year == MAXYEAR and cursor.month == 12:
            yield cursor, max(cursor, window.start_date), window.end_date
            return
        next_month = (cursor.replace(day=28) + timedelta(days=4)).replace(day=1)
        yield cursor, max(cursor, window.start_date), min(next_month - ONE_TICK, window.end_date)
        cursor = next_month


@dataclass(frozen=True)
class _Snapshot:
    new_enrollments: Sequence[EnrollmentRecord]
    eligible: Sequence[Tuple[UnifiedStudent, Union[EnrollmentRecord, RenewalRecord]]]
    renewals: Sequence[RenewalRecord]
    churned: Sequence[UnifiedStudent]
    in_grace: Sequence[UnifiedStudent]
    multi_activity: Sequence[UnifiedStudent]
    active_at_start: Sequence[UnifiedStudent]
    in_range: Sequence[UnifiedStudent]


class StudentMetricsService:
    """
    Aggregates lifecycle metrics over one ``StudentDataset``.

    Every public method takes an explicit ``now`` (the "current" instant used
    for in-grace/churn status); when omitted it is captured once per call.
    Calls never mutate the dataset, so repeated calls with the same inputs
    return equal results.
    """

    def __init__(self, dataset: StudentDataset) -> None:
        self.dataset = dataset
        self.config = dataset.config

    @classmethod
    def from_records(
        cls,
        enrollments: Sequence[EnrollmentRecord],
        renewals: Sequence[RenewalRecord],
        config: Optional[MetricsConfig] = None,
    ) -> "StudentMetricsService":
        return cls(StudentDataset(enrollments=enrollments, renewals=renewals, config=config or MetricsConfig()))

    @classmethod
    def from_batches(
        cls,
        enrollment_batches: Sequence[SheetBatch],
        renewal_batches: Sequence[SheetBatch],
        config: Optional[MetricsConfig] = None,
    ) -> "StudentMetricsService":
        return cls(StudentDataset.from_batches(enrollment_batches, renewal_batches, config=config))

    # ------------------------------------------------------------------
    # Dashboard
    # ------------------------------------------------------------------

    def build(
        self,
        date_range: DateRange,
        now: Optional[datetime] = None,
        top_n: Optional[int] = None,
    ) -> DashboardResult:
        now = _resolve_now(now)
        top_n = top_n if top_n is not None else self.config.aggregation.default_top_n
        monthly = self.compute_monthly_series(date_range, now=now)
        return DashboardResult(
            snapshot=self.compute_snapshot(date_range, now=now),
            monthly=monthly,
            trends=self._trend_series(monthly),
            categories=self.compute_category_breakdown(date_range, now=now, top_n=top_n),
            activities=self.top_activities(limit=top_n, date_range=date_range),
            renewal_stats=self.compute_renewal_stats(now=now),
            report=self.dataset.report.as_dict(),
        )

    # ------------------------------------------------------------------
    # Point-in-time snapshot
    # ------------------------------------------------------------------

    def compute_snapshot(self, date_range: DateRange, now: Optional[datetime] = None) -> UnifiedMetrics:
        now = _resolve_now(now)
        window = date_range.normalized()
        snapshot = self._collect(window, now)
        precision = self.config.aggregation.percentage_precision

        new_count = len(snapshot.new_enrollments)
        eligible_count = len(snapshot.eligible)
        renewed_count = len(snapshot.renewals)
        churned_count = len(snapshot.churned)
        start_count = len(snapshot.active_at_start)
        end_count = start_count + new_count - churned_count

        churn_percentage = _percentage(churned_count, start_count, precision)
        retention_percentage = round(100 - churn_percentage, precision) if start_count else 0.0

        return UnifiedMetrics(
            new_enrollments=new_count,
            eligible_students=eligible_count,
            renewed_students=renewed_count,
            churned_students=churned_count,
            in_grace_students=len(snapshot.in_grace),
            multi_activity_students=len(snapshot.multi_activity),
            renewal_percentage=_percentage(renewed_count, eligible_count, precision),
            churn_percentage=churn_percentage,
            retention_percentage=retention_percentage,
            net_growth_percentage=_percentage(end_count - start_count, start_count, precision),
            lifetime_value=sum((self._ltv(student) for student in snapshot.in_range), Decimal("0")),
            start_of_period=start_count,
            end_of_period=end_count,
        )

    def _collect(self, window: DateRange, now: datetime) -> _Snapshot:
        return _Snapshot(
            new_enrollments=self.dataset.enrollments_between(window),
            eligible=self.dataset.expirations_between(window),
            renewals=self.dataset.valid_renewals_between(window),
            churned=self._churned_students(window, now),
            in_grace=self._in_grace_students(window, now),
            multi_activity=self._multi_activity_students(window),
            active_at_start=self.dataset.active_students_at(_instant_before(window.start_date)),
            in_range=self._students_with_events(window),
        )

    def _churned_students(self, window: DateRange, now: datetime) -> List[UnifiedStudent]:
        churned: List[UnifiedStudent] = []
        for student in self.dataset.iter_students():
            if any(window.contains(moment) for moment in self.dataset.classifier.churn_dates(student, now)):
                churned.append(student)
        return churned

    def _in_grace_students(self, window: DateRange, now: datetime) -> List[UnifiedStudent]:
        in_grace: List[UnifiedStudent] = []
        for student in self.dataset.iter_students():
            classification = self.dataset.classify(student, now)
            if classification.status is LifecycleStatus.IN_GRACE and window.contains(classification.expiration):
                in_grace.append(student)
        return in_grace

    def _multi_activity_students(self, window: DateRange) -> List[UnifiedStudent]:
        records = self.dataset.enrollments_between(window)
        if self.config.aggregation.multi_activity_scope == "enrollment_rows":
            activities: Dict[str, Set[str]] = defaultdict(set)
            categories: Dict[str, Set[str]] = defaultdict(set)
            for record in records:
                key = base_id_of(record)
                activities[key].update(record.activities)
                categories[key].add(record.course_category)
            return [
                self.dataset.students[key]
                for key in activities
                if len(activities[key]) > 1 or len(categories[key]) > 1
            ]

        seen: Set[str] = set()
        result: List[UnifiedStudent] = []
        for record in records:
            student = self.dataset.student_for(record)
            if student.id in seen:
                continue
            seen.add(student.id)
            if student.is_multi_activity:
                result.append(student)
        return result

    def _students_with_events(self, window: DateRange) -> List[UnifiedStudent]:
        seen: Set[str] = set()
        result: List[UnifiedStudent] = []
        events = (
            *self.dataset.enrollments_between(window, counted_only=False),
            *self.dataset.renewals_between(window, counted_only=False),
        )
        for record in events:
            student = self.dataset.student_for(record)
            if student.id not in seen:
                seen.add(student.id)
                result.append(student)
        return result

    # ------------------------------------------------------------------
    # Monthly cohort series
    # ------------------------------------------------------------------

    def compute_monthly_series(self, date_range: DateRange, now: Optional[datetime] = None) -> List[MonthlyMetrics]:
        now = _resolve_now(now)
        window = date_range.normalized()
        precision = self.config.aggregation.percentage_precision
        series: List[MonthlyMetrics] = []

        for month_start, bucket_start, bucket_end in _monthrange(window):
            bucket = DateRange(start_date=bucket_start, end_date=bucket_end)
            start_count = len(self.dataset.active_students_at(_instant_before(bucket_start)))
            new_count = len(self.dataset.enrollments_between(bucket))
            renewal_count = len(self.dataset.valid_renewals_between(bucket))
            dropped_count = len(self._churned_students(bucket, now))
            eligible_count = len(self.dataset.expirations_between(bucket))
            end_count = start_count + new_count - dropped_count

            churn_rate = _percentage(dropped_count, start_count, precision)
            series.append(
                MonthlyMetrics(
                    month=month_start.strftime("%b %Y"),
                    date=month_start,
                    period_start=bucket_start,
                    period_end=bucket_end,
                    start_of_month=start_count,
                    new_enrollments=new_count,
                    renewals=renewal_count,
                    dropped=dropped_count,
                    end_of_month=end_count,
                    eligible=eligible_count,
                    churn_rate=churn_rate,
                    retention_rate=round(100 - churn_rate, precision) if start_count else 0.0,
                    net_growth_rate=_percentage(end_count - start_count, start_count, precision),
                    renewal_rate=_percentage(renewal_count, eligible_count, precision),
                )
            )
        return series

    def compute_trend_series(self, date_range: DateRange, now: Optional[datetime] = None) -> List[TrendSeries]:
        return self._trend_series(self.compute_monthly_series(date_range, now=now))

    @staticmethod
    def _trend_series(monthly: Sequence[MonthlyMetrics]) -> List[TrendSeries]:
        columns = (
            ("Renewal Rate", "renewal_rate"),
            ("Churn Rate", "churn_rate"),
            ("Retention Rate", "retention_rate"),
            ("Net Growth Rate", "net_growth_rate"),
        )
        return [
            TrendSeries(
                name=name,
                points=[TrendPoint(timestamp=month.date, value=getattr(month, attribute)) for month in monthly],
                unit="%",
            )
            for name, attribute in columns
        ]

    # ------------------------------------------------------------------
    # Breakdowns
    # ------------------------------------------------------------------

    def compute_category_breakdown(
        self,
        date_range: DateRange,
        now: Optional[datetime] = None,
        sort_by: str = "enrollments",
        top_n: Optional[int] = None,
    ) -> List[CategoryBreakdownRow]:
        if sort_by not in CATEGORY_SORT_KEYS:
            raise ValueError(f"sort_by must be one of {CATEGORY_SORT_KEYS}, got {sort_by!r}")
        now = _resolve_now(now)
        window = date_range.normalized()
        stats: Dict[str, Dict[str, int]] = {}

        def _bump(category: str, key: str) -> None:
            stats.setdefault(category, {name: 0 for name in CATEGORY_SORT_KEYS})[key] += 1

        for record in self.dataset.enrollments_between(window):
            _bump(record.course_category, "enrollments")
        for record in self.dataset.valid_renewals_between(window):
            _bump(record.course_category, "renewals")
        for student in self._churned_students(window, now):
            for category in sorted(student.course_categories):
                _bump(category, "churned")

        rows = [CategoryBreakdownRow(course_category=category, **values) for category, values in stats.items()]
        rows = sorted(rows, key=lambda row: getattr(row, sort_by), reverse=True)
        return rows if top_n is None else rows[:top_n]

    def compute_activity_breakdown(self, date_range: Optional[DateRange] = None) -> List[ActivityBreakdownRow]:
        """
        Per-activity enrollments, renewal events and strike-off drop rate over
        merged students, optionally limited to students enrolled in a range.
        """

        window = date_range.normalized() if date_range is not None else None
        precision = self.config.aggregation.percentage_precision
        stats: Dict[str, Dict[str, int]] = {}

        for student in self.dataset.iter_students():
            if window is not None and not window.contains(student.enrollment_date):
                continue
            for activity in sorted(student.activities):
                data = stats.setdefault(activity, {"enrollments": 0, "renewals": 0, "drop_offs": 0})
                data["enrollments"] += 1
                data["renewals"] += len(student.renewal_dates)
                if student.is_strike_off:
                    data["drop_offs"] += 1

        rows = [
            ActivityBreakdownRow(
                activity=activity,
                enrollments=data["enrollments"],
                renewals=data["renewals"],
                drop_rate=_percentage(data["drop_offs"], data["enrollments"], precision),
            )
            for activity, data in stats.items()
        ]
        return sorted(rows, key=lambda row: row.enrollments, reverse=True)

    def top_activities(self, limit: int = 5, date_range: Optional[DateRange] = None) -> List[ActivityBreakdownRow]:
        return self.compute_activity_breakdown(date_range)[:limit]

    def highest_drop_rate_activities(
        self,
        limit: int = 5,
        min_enrollments: Optional[int] = None,
    ) -> List[ActivityBreakdownRow]:
        threshold = (
            min_enrollments if min_enrollments is not None else self.config.aggregation.min_enrollments_for_drop_rate
        )
        candidates = [row for row in self.compute_activity_breakdown() if row.enrollments >= threshold]
        return sorted(candidates, key=lambda row: row.drop_rate, reverse=True)[:limit]

    # ------------------------------------------------------------------
    # Renewal status summary
    # ------------------------------------------------------------------

    def compute_renewal_stats(self, now: Optional[datetime] = None) -> RenewalStats:
        now = _resolve_now(now)
        precision = self.config.aggregation.percentage_precision
        groups: Dict[LifecycleStatus, List[StudentWithLTV]] = defaultdict(list)
        eligible = 0
        lifetime = 0

        for student in self.dataset.iter_students():
            classification = self.dataset.classify(student, now)
            if classification.status is LifecycleStatus.LIFETIME:
                lifetime += 1
                continue
            if not classification.is_eligible_for_renewal:
                continue
            eligible += 1
            groups[classification.status].append(
                StudentWithLTV(student=student, lifetime_value=self._ltv(student), status=classification.status)
            )

        renewed = groups[LifecycleStatus.RENEWED]
        churned = groups[LifecycleStatus.CHURNED]
        in_grace = groups[LifecycleStatus.IN_GRACE]
        renewal_percentage = _percentage(len(renewed), eligible, precision)
        churn_percentage = _percentage(len(churned), eligible, precision)
        return RenewalStats(
            total_eligible=eligible,
            renewed=len(renewed),
            churned=len(churned),
            in_grace=len(in_grace),
            lifetime=lifetime,
            renewal_percentage=renewal_percentage,
            churn_percentage=churn_percentage,
            net_retention=round(renewal_percentage - churn_percentage, precision),
            renewed_students=tuple(renewed),
            churned_students=tuple(churned),
            in_grace_students=tuple(in_grace),
        )

    # ------------------------------------------------------------------
    # Drill-down lists
    # ------------------------------------------------------------------

    def students_for_metric(
        self,
        metric: DrillDownMetric,
        date_range: DateRange,
        now: Optional[datetime] = None,
    ) -> List[StudentWithLTV]:
        """Students behind one snapshot number, in encounter order."""

        now = _resolve_now(now)
        window = date_range.normalized()
        metric = DrillDownMetric(metric)

        if metric is DrillDownMetric.NEW_ENROLLMENTS:
            students = self._students_of(self.dataset.enrollments_between(window))
        elif metric is DrillDownMetric.ELIGIBLE:
            students = self._unique(student for student, _ in self.dataset.expirations_between(window))
        elif metric is DrillDownMetric.RENEWED:
            students = self._students_of(self.dataset.valid_renewals_between(window))
        elif metric is DrillDownMetric.CHURNED:
            students = self._churned_students(window, now)
        elif metric is DrillDownMetric.IN_GRACE:
            students = self._in_grace_students(window, now)
        elif metric is DrillDownMetric.MULTI_ACTIVITY:
            students = self._multi_activity_students(window)
        elif metric is DrillDownMetric.ACTIVE_AT_START:
            students = self.dataset.active_students_at(_instant_before(window.start_date))
        else:
            students = self._students_with_events(window)
        return self._with_ltv(students, now)

    def enrolled_students_by_category(self, category: str, date_range: DateRange) -> List[StudentWithLTV]:
        window = date_range.normalized()
        records = [record for record in self.dataset.enrollments_between(window) if record.course_category == category]
        return self._with_ltv(self._students_of(records))

    def churned_students_by_category(
        self,
        category: str,
        date_range: DateRange,
        now: Optional[datetime] = None,
    ) -> List[StudentWithLTV]:
        now = _resolve_now(now)
        churned = self._churned_students(date_range.normalized(), now)
        return self._with_ltv([student for student in churned if category in student.course_categories], now)

    def students_by_activity(self, activity: str) -> List[StudentWithLTV]:
        return self._with_ltv([student for student in self.dataset.iter_students() if activity in student.activities])

    # ------------------------------------------------------------------
    # Recency views, independent of the range filter
    # ------------------------------------------------------------------

    def enrollments_last_n_days(self, days: int, now: Optional[datetime] = None) -> List[StudentWithLTV]:
        now = _resolve_now(now)
        window = self._last_n_days(days, now)
        return self._with_ltv(self._students_of(self.dataset.enrollments_between(window)), now)

    def enrollments_today(self, now: Optional[datetime] = None) -> List[StudentWithLTV]:
        return self.enrollments_last_n_days(1, now)

    def renewals_last_n_days(self, days: int, now: Optional[datetime] = None) -> List[RenewalRecord]:
        return self.dataset.renewals_between(self._last_n_days(days, now))

    def renewals_today(self, now: Optional[datetime] = None) -> List[RenewalRecord]:
        return self.renewals_last_n_days(1, now)

    def currently_active_students(self, now: Optional[datetime] = None) -> List[StudentWithLTV]:
        now = _resolve_now(now)
        return self._with_ltv(self.dataset.active_students_at(now), now)

    def currently_active_multi_activity_students(self, now: Optional[datetime] = None) -> List[StudentWithLTV]:
        return [entry for entry in self.currently_active_students(now) if entry.student.is_multi_activity]

    @staticmethod
    def _last_n_days(days: int, now: Optional[datetime]) -> DateRange:
        now = _resolve_now(now)
        return DateRange(start_date=now - timedelta(days=max(days, 1) - 1), end_date=now).normalized()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _ltv(student: UnifiedStudent) -> Decimal:
        return student.fees if student.fees is not None else Decimal("0")

    def _with_ltv(self, students: Iterable[UnifiedStudent], now: Optional[datetime] = None) -> List[StudentWithLTV]:
        return [
            StudentWithLTV(
                student=student,
                lifetime_value=self._ltv(student),
                status=self.dataset.classify(student, now).status if now is not None else None,
            )
            for student in students
        ]

    def _students_of(self, records: Iterable) -> List[UnifiedStudent]:
        return self._unique(self.dataset.student_for(record) for record in records)

    @staticmethod
    def _unique(students: Iterable[UnifiedStudent]) -> List[UnifiedStudent]:
        seen: Set[str] = set()
        result: List[UnifiedStudent] = []
        for student in students:
            if student.id not in seen:
                seen.add(student.id)
                result.append(student)
        return result


def compute_snapshot(
    enrollments: Sequence[EnrollmentRecord],
    renewals: Sequence[RenewalRecord],
    date_range: DateRange,
    now: Optional[datetime] = None,
    config: Optional[MetricsConfig] = None,
) -> UnifiedMetrics:
    return StudentMetricsService.from_records(enrollments, renewals, config).compute_snapshot(date_range, now=now)


def compute_monthly_series(
    enrollments: Sequence[EnrollmentRecord],
    renewals: Sequence[RenewalRecord],
    date_range: DateRange,
    now: Optional[datetime] = None,
    config: Optional[MetricsConfig] = None,
) -> List[MonthlyMetrics]:
    return StudentMetricsService.from_records(enrollments, renewals, config).compute_monthly_series(date_range, now=now)


def compute_category_breakdown(
    enrollments: Sequence[EnrollmentRecord],
    renewals: Sequence[RenewalRecord],
    date_range: DateRange,
    now: Optional[datetime] = None,
    sort_by: str = "enrollments",
    top_n: Optional[int] = None,
    config: Optional[MetricsConfig] = None,
) -> List[CategoryBreakdownRow]:
    service = StudentMetricsService.from_records(enrollments, renewals, config)
    return service.compute_category_breakdown(date_range, now=now, sort_by=sort_by, top_n=top_n)
