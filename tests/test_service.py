"""Tests for the metrics aggregator: snapshot, monthly, breakdowns and drill-downs."""

from __future__ import annotations

import math
from dataclasses import fields
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from backend.student_metrics.configuration import AggregationConfig, MetricsConfig
from backend.student_metrics.models import DateRange, DrillDownMetric, LifecycleStatus, UnifiedMetrics
from backend.student_metrics.schema import SheetBatch
from backend.student_metrics.service import (
    StudentMetricsService,
    compute_category_breakdown,
    compute_monthly_series,
    compute_snapshot,
)

JAN_TO_APR = DateRange(start_date=datetime(2024, 1, 1), end_date=datetime(2024, 4, 30))


@pytest.fixture
def service(cohort) -> StudentMetricsService:
    enrollments, renewals = cohort
    return StudentMetricsService.from_records(enrollments, renewals)


def _ids(entries):
    return [entry.id for entry in entries]


# ---------------------------------------------------------------------------
# Snapshot
# ---------------------------------------------------------------------------

class TestSnapshot:
    def test_counts(self, service, cohort_now):
        metrics = service.compute_snapshot(JAN_TO_APR, now=cohort_now)

        assert metrics.new_enrollments == 4
        assert metrics.eligible_students == 3
        assert metrics.renewed_students == 1
        assert metrics.churned_students == 1
        assert metrics.in_grace_students == 1
        assert metrics.multi_activity_students == 1
        assert metrics.start_of_period == 2
        assert metrics.end_of_period == 5

    def test_percentages(self, service, cohort_now):
        metrics = service.compute_snapshot(JAN_TO_APR, now=cohort_now)

        assert metrics.renewal_percentage == 33.3
        assert metrics.churn_percentage == 50.0
        assert metrics.retention_percentage == 50.0
        assert metrics.net_growth_percentage == 150.0

    def test_lifetime_value_covers_students_with_events_in_range(self, service, cohort_now):
        metrics = service.compute_snapshot(JAN_TO_APR, now=cohort_now)
        assert metrics.lifetime_value == Decimal("8500")

    def test_inverted_range_is_swapped(self, service, cohort_now):
        inverted = DateRange(start_date=JAN_TO_APR.end_date, end_date=JAN_TO_APR.start_date)
        assert service.compute_snapshot(inverted, now=cohort_now) == service.compute_snapshot(
            JAN_TO_APR, now=cohort_now
        )

    def test_idempotent(self, cohort, cohort_now):
        enrollments, renewals = cohort
        first = compute_snapshot(enrollments, renewals, JAN_TO_APR, now=cohort_now)
        second = compute_snapshot(enrollments, renewals, JAN_TO_APR, now=cohort_now)
        assert first == second
        assert first.as_dict() == second.as_dict()

    def test_empty_input_is_zeroed(self):
        metrics = compute_snapshot([], [], JAN_TO_APR, now=datetime(2024, 4, 15))
        assert metrics == UnifiedMetrics()

    def test_no_nan_when_nobody_is_eligible(self, make_enrollment):
        service = StudentMetricsService.from_records(
            [make_enrollment("IN-KB-1-A", datetime(2024, 2, 1), end_date=datetime(2024, 12, 1))], []
        )
        metrics = service.compute_snapshot(JAN_TO_APR, now=datetime(2024, 4, 15))

        for item in fields(metrics):
            value = getattr(metrics, item.name)
            if isinstance(value, float):
                assert not math.isnan(value)
        assert metrics.renewal_percentage == 0.0
        assert metrics.churn_percentage == 0.0
        assert metrics.net_growth_percentage == 0.0

    def test_none_input_is_rejected(self):
        with pytest.raises(TypeError):
            compute_snapshot(None, [], JAN_TO_APR)

    def test_as_dict_uses_camel_case(self, service, cohort_now):
        payload = service.compute_snapshot(JAN_TO_APR, now=cohort_now).as_dict()
        assert payload["newEnrollments"] == 4
        assert payload["lifetimeValue"] == 8500.0
        assert payload["startOfPeriod"] == 2


class TestLifecycleScenarios:
    def test_multi_category_student_counts_once(self, make_enrollment):
        enrollments = [
            make_enrollment("IN-KB-100-JDOE", datetime(2024, 1, 1), course_category="Keyboard"),
            make_enrollment("IN-PN-100-JDOE", datetime(2024, 1, 1), course_category="Piano"),
        ]
        metrics = compute_snapshot(enrollments, [], JAN_TO_APR, now=datetime(2024, 4, 15))
        assert metrics.multi_activity_students == 1
        assert metrics.new_enrollments == 2

    def test_twelve_week_student_without_renewal(self, make_enrollment):
        enrollments = [make_enrollment("IN-KB-100-JDOE", datetime(2024, 1, 1), end_date=datetime(2024, 3, 25))]
        window = DateRange(start_date=datetime(2024, 1, 1), end_date=datetime(2024, 6, 30))

        in_april = compute_snapshot(enrollments, [], window, now=datetime(2024, 4, 1))
        assert in_april.in_grace_students == 1
        assert in_april.churned_students == 0

        in_june = compute_snapshot(enrollments, [], window, now=datetime(2024, 6, 1))
        assert in_june.in_grace_students == 0
        assert in_june.churned_students == 1

    def test_renewal_in_grace_keeps_student(self, make_enrollment, make_renewal):
        enrollments = [make_enrollment("IN-KB-100-JDOE", datetime(2024, 1, 1), end_date=datetime(2024, 3, 25))]
        renewals = [make_renewal("IN-KB-100-JDOE", datetime(2024, 4, 10), end_date=datetime(2024, 7, 3))]
        window = DateRange(start_date=datetime(2024, 1, 1), end_date=datetime(2024, 6, 30))

        metrics = compute_snapshot(enrollments, renewals, window, now=datetime(2024, 6, 1))
        assert metrics.churned_students == 0
        assert metrics.renewed_students == 1
        assert metrics.renewal_percentage == 100.0

    def test_early_renewal_is_not_counted(self, make_enrollment, make_renewal):
        enrollments = [make_enrollment("IN-KB-1-A", datetime(2024, 1, 1), end_date=datetime(2024, 3, 25))]
        renewals = [make_renewal("IN-KB-1-A", datetime(2024, 3, 1))]
        metrics = compute_snapshot(enrollments, renewals, JAN_TO_APR, now=datetime(2024, 4, 15))
        assert metrics.renewed_students == 0

    def test_same_renewal_from_two_sheets_counts_once(self, make_enrollment, make_renewal):
        enrollments = [make_enrollment("IN-KB-1-A", datetime(2024, 1, 1), end_date=datetime(2024, 3, 25))]
        renewals = [
            make_renewal("IN-KB-1-A", datetime(2024, 4, 2), end_date=datetime(2024, 6, 25)),
            make_renewal("IN-KB-1-A", datetime(2024, 4, 2), end_date=datetime(2024, 6, 25)),
        ]
        metrics = compute_snapshot(enrollments, renewals, JAN_TO_APR, now=datetime(2024, 4, 15))
        assert metrics.renewed_students == 1

    def test_unknown_sources_are_not_counted(self, make_cells):
        rows = [make_cells(student_id="IN-KB-1-A", start_date="2024-02-01")]
        service = StudentMetricsService.from_batches([SheetBatch(source="Scratch", rows=rows, has_header=False)], [])
        metrics = service.compute_snapshot(JAN_TO_APR, now=datetime(2024, 4, 15))
        assert metrics.new_enrollments == 0
        assert service.dataset.report.unknown_sources == 1


class TestBoundaryDates:
    @pytest.fixture
    def far_future_service(self, make_cells) -> StudentMetricsService:
        rows = [
            make_cells(
                student_id="IN-KB-100-JDOE",
                start_date="01/01/2024",
                end_date="12/31/9999",
                package="12 weeks",
            )
        ]
        return StudentMetricsService.from_batches(
            [SheetBatch(source="FormResponses1", rows=rows, has_header=False)], []
        )

    def test_far_future_end_date_is_rejected(self, far_future_service):
        window = DateRange(start_date=datetime(2024, 1, 1), end_date=datetime(2024, 6, 30))

        metrics = far_future_service.compute_snapshot(window, now=datetime(2024, 6, 1))
        series = far_future_service.compute_monthly_series(window, now=datetime(2024, 6, 1))
        dashboard = far_future_service.build(window, now=datetime(2024, 6, 1))

        assert far_future_service.dataset.report.invalid_end_dates == 1
        assert far_future_service.dataset.enrollments[0].end_date == datetime(2024, 3, 25)
        assert metrics.new_enrollments == 1
        assert metrics.churned_students == 1
        assert len(series) == 6
        assert dashboard.snapshot == metrics

    def test_open_ended_record_near_the_calendar_limit(self, make_enrollment):
        enrollments = [make_enrollment("IN-KB-1-A", datetime(2024, 1, 1), end_date=datetime.max)]
        window = DateRange(start_date=datetime(2024, 1, 1), end_date=datetime(2024, 6, 30))

        metrics = compute_snapshot(enrollments, [], window, now=datetime(2024, 6, 1))
        assert metrics.churned_students == 0
        assert metrics.end_of_period == 1

    def test_window_at_the_calendar_edges(self, make_enrollment):
        enrollments = [make_enrollment("IN-KB-1-A", datetime(2024, 1, 1), end_date=datetime(2024, 3, 25))]

        opening = DateRange(start_date=datetime.min, end_date=datetime(1, 1, 31))
        closing = DateRange(start_date=datetime(9999, 12, 1), end_date=datetime.max)

        assert compute_snapshot(enrollments, [], opening, now=datetime(2024, 6, 1)).new_enrollments == 0
        assert len(compute_monthly_series(enrollments, [], closing, now=datetime(2024, 6, 1))) == 1

    def test_aware_now_matches_naive_now(self, service, cohort_now):
        aware = service.compute_snapshot(JAN_TO_APR, now=cohort_now.replace(tzinfo=timezone.utc))
        assert aware == service.compute_snapshot(JAN_TO_APR, now=cohort_now)

    def test_aware_window_matches_naive_window(self, service, cohort_now):
        aware = DateRange(
            start_date=JAN_TO_APR.start_date.replace(tzinfo=timezone.utc),
            end_date=JAN_TO_APR.end_date.replace(tzinfo=timezone.utc),
        )
        assert service.compute_snapshot(aware, now=cohort_now) == service.compute_snapshot(JAN_TO_APR, now=cohort_now)
        assert len(service.compute_monthly_series(aware, now=cohort_now)) == 4


class TestMultiActivityScope:
    @pytest.fixture
    def records(self, make_enrollment, make_renewal):
        enrollments = [make_enrollment("IN-KB-1-A", datetime(2024, 2, 1), course_category="Keyboard")]
        renewals = [make_renewal("IN-AR-1-A", datetime(2024, 3, 1), course_category="Art")]
        return enrollments, renewals

    def test_merged_scope_uses_renewal_categories(self, records):
        metrics = compute_snapshot(*records, JAN_TO_APR, now=datetime(2024, 4, 15))
        assert metrics.multi_activity_students == 1

    def test_enrollment_rows_scope(self, records):
        config = MetricsConfig(aggregation=AggregationConfig(multi_activity_scope="enrollment_rows"))
        metrics = compute_snapshot(*records, JAN_TO_APR, now=datetime(2024, 4, 15), config=config)
        assert metrics.multi_activity_students == 0


# ---------------------------------------------------------------------------
# Monthly series
# ---------------------------------------------------------------------------

class TestMonthlySeries:
    def test_buckets(self, service, cohort_now):
        series = service.compute_monthly_series(JAN_TO_APR, now=cohort_now)

        assert [month.month for month in series] == ["Jan 2024", "Feb 2024", "Mar 2024", "Apr 2024"]
        assert [month.start_of_month for month in series] == [2, 4, 5, 5]
        assert [month.new_enrollments for month in series] == [2, 2, 0, 0]
        assert [month.renewals for month in series] == [0, 0, 1, 0]
        assert [month.dropped for month in series] == [0, 0, 0, 1]
        assert [month.end_of_month for month in series] == [4, 6, 5, 4]
        assert [month.eligible for month in series] == [0, 1, 1, 1]

    def test_rates(self, service, cohort_now):
        series = service.compute_monthly_series(JAN_TO_APR, now=cohort_now)
        april = series[-1]

        assert april.churn_rate == 20.0
        assert april.retention_rate == 80.0
        assert april.net_growth_rate == -20.0
        assert april.renewal_rate == 0.0
        assert series[2].renewal_rate == 100.0
        assert series[0].net_growth_rate == 100.0

    def test_partial_months_are_clipped(self, service, cohort_now):
        window = DateRange(start_date=datetime(2024, 1, 15), end_date=datetime(2024, 3, 10))
        series = service.compute_monthly_series(window, now=cohort_now)

        assert len(series) == 3
        assert series[0].date == datetime(2024, 1, 1)
        assert series[0].period_start == datetime(2024, 1, 15)
        assert series[1].period_start == datetime(2024, 2, 1)
        assert series[-1].period_end == datetime(2024, 3, 10, 23, 59, 59, 999999)
        assert series[0].new_enrollments == 1

    def test_empty_input(self):
        series = compute_monthly_series([], [], JAN_TO_APR, now=datetime(2024, 4, 15))
        assert len(series) == 4
        assert all(month.churn_rate == 0.0 and month.retention_rate == 0.0 for month in series)

    def test_trend_series(self, service, cohort_now):
        trends = service.compute_trend_series(JAN_TO_APR, now=cohort_now)

        assert [trend.name for trend in trends] == ["Renewal Rate", "Churn Rate", "Retention Rate", "Net Growth Rate"]
        churn = trends[1]
        assert [point.value for point in churn.points] == [0.0, 0.0, 0.0, 20.0]
        assert churn.unit == "%"


# ---------------------------------------------------------------------------
# Breakdowns
# ---------------------------------------------------------------------------

class TestCategoryBreakdown:
    def test_rows_sorted_by_enrollments(self, service, cohort_now):
        rows = service.compute_category_breakdown(JAN_TO_APR, now=cohort_now)
        assert [(row.course_category, row.enrollments, row.renewals, row.churned) for row in rows] == [
            ("Guitar", 1, 0, 0),
            ("Vocals", 1, 0, 0),
            ("Keyboard", 1, 0, 1),
            ("Drums", 1, 0, 0),
            ("Piano", 0, 1, 0),
        ]

    def test_sort_by_churned_keeps_encounter_order_for_ties(self, service, cohort_now):
        rows = service.compute_category_breakdown(JAN_TO_APR, now=cohort_now, sort_by="churned")
        assert [row.course_category for row in rows] == ["Keyboard", "Guitar", "Vocals", "Drums", "Piano"]

    def test_top_n(self, cohort, cohort_now):
        rows = compute_category_breakdown(*cohort, JAN_TO_APR, now=cohort_now, top_n=2)
        assert [row.course_category for row in rows] == ["Guitar", "Vocals"]

    def test_unknown_sort_key(self, service):
        with pytest.raises(ValueError):
            service.compute_category_breakdown(JAN_TO_APR, sort_by="fees")


class TestActivityBreakdown:
    def test_rows(self, service):
        rows = service.compute_activity_breakdown()
        assert [(row.activity, row.enrollments, row.renewals, row.drop_rate) for row in rows] == [
            ("Keyboard", 2, 0, 50.0),
            ("Piano", 1, 1, 0.0),
            ("Guitar", 1, 0, 0.0),
            ("Vocals", 1, 0, 0.0),
            ("Drums", 1, 0, 0.0),
        ]

    def test_top_activities(self, service):
        assert [row.activity for row in service.top_activities(limit=2)] == ["Keyboard", "Piano"]

    def test_highest_drop_rate_respects_minimum(self, service):
        assert service.highest_drop_rate_activities() == []
        assert [row.activity for row in service.highest_drop_rate_activities(min_enrollments=2)] == ["Keyboard"]


# ---------------------------------------------------------------------------
# Renewal stats
# ---------------------------------------------------------------------------

class TestRenewalStats:
    def test_stats(self, service, cohort_now):
        stats = service.compute_renewal_stats(now=cohort_now)

        assert stats.total_eligible == 2
        assert stats.renewed == 0
        assert stats.churned == 1
        assert stats.in_grace == 1
        assert stats.lifetime == 1
        assert stats.churn_percentage == 50.0
        assert stats.net_retention == -50.0
        assert _ids(stats.churned_students) == ["IN-1-ALICE"]
        assert _ids(stats.in_grace_students) == ["IN-5-EVE"]

    def test_renewed_within_grace(self, make_enrollment, make_renewal):
        service = StudentMetricsService.from_records(
            [make_enrollment("IN-KB-1-A", datetime(2024, 1, 1), end_date=datetime(2024, 3, 25))],
            [make_renewal("IN-KB-1-A", datetime(2024, 4, 10))],
        )
        stats = service.compute_renewal_stats(now=datetime(2024, 6, 1))
        assert stats.renewed == 1
        assert stats.renewal_percentage == 100.0
        assert stats.net_retention == 100.0


# ---------------------------------------------------------------------------
# Drill-downs and recency views
# ---------------------------------------------------------------------------

class TestDrillDown:
    @pytest.mark.parametrize(
        "metric, expected",
        [
            (DrillDownMetric.NEW_ENROLLMENTS, ["IN-3-CARA", "IN-4-DAN", "IN-5-EVE"]),
            (DrillDownMetric.ELIGIBLE, ["IN-1-ALICE", "IN-2-BOB", "IN-5-EVE"]),
            (DrillDownMetric.RENEWED, ["IN-2-BOB"]),
            (DrillDownMetric.CHURNED, ["IN-1-ALICE"]),
            (DrillDownMetric.IN_GRACE, ["IN-5-EVE"]),
            (DrillDownMetric.MULTI_ACTIVITY, ["IN-3-CARA"]),
            (DrillDownMetric.ACTIVE_AT_START, ["IN-1-ALICE", "IN-2-BOB"]),
            (DrillDownMetric.LIFETIME_VALUE, ["IN-3-CARA", "IN-4-DAN", "IN-5-EVE", "IN-2-BOB"]),
        ],
    )
    def test_students_for_metric(self, service, cohort_now, metric, expected):
        assert _ids(service.students_for_metric(metric, JAN_TO_APR, now=cohort_now)) == expected

    def test_metric_name_is_accepted(self, service, cohort_now):
        assert _ids(service.students_for_metric("churned", JAN_TO_APR, now=cohort_now)) == ["IN-1-ALICE"]

    def test_entries_carry_value_and_status(self, service, cohort_now):
        entry = service.students_for_metric(DrillDownMetric.RENEWED, JAN_TO_APR, now=cohort_now)[0]
        assert entry.lifetime_value == Decimal("1800")
        assert entry.status is LifecycleStatus.ACTIVE_NOT_EXPIRED
        payload = entry.as_dict()
        assert payload["id"] == "IN-2-BOB"
        assert payload["lifetimeValue"] == 1800.0
        assert payload["status"] == "active"

    def test_category_drill_downs(self, service, cohort_now):
        assert _ids(service.enrolled_students_by_category("Guitar", JAN_TO_APR)) == ["IN-3-CARA"]
        assert _ids(service.churned_students_by_category("Keyboard", JAN_TO_APR, now=cohort_now)) == ["IN-1-ALICE"]
        assert service.churned_students_by_category("Piano", JAN_TO_APR, now=cohort_now) == []

    def test_students_by_activity(self, service):
        assert _ids(service.students_by_activity("Keyboard")) == ["IN-1-ALICE", "IN-4-DAN"]


class TestRecencyViews:
    def test_enrollments_today(self, service):
        assert _ids(service.enrollments_today(now=datetime(2024, 1, 20, 15, 0))) == ["IN-4-DAN"]

    def test_enrollments_last_n_days(self, service):
        assert _ids(service.enrollments_last_n_days(7, now=datetime(2024, 2, 12))) == ["IN-3-CARA"]
        assert service.enrollments_last_n_days(7, now=datetime(2024, 3, 12)) == []

    def test_renewals_today(self, service):
        renewals = service.renewals_today(now=datetime(2024, 3, 20, 9, 0))
        assert [record.id for record in renewals] == ["IN-PN-2-BOB"]
        assert service.renewals_last_n_days(3, now=datetime(2024, 3, 25)) == []

    def test_currently_active(self, service, cohort_now):
        assert _ids(service.currently_active_students(now=cohort_now)) == [
            "IN-2-BOB",
            "IN-3-CARA",
            "IN-4-DAN",
            "IN-5-EVE",
        ]
        assert _ids(service.currently_active_multi_activity_students(now=cohort_now)) == ["IN-3-CARA"]


# ---------------------------------------------------------------------------
# Full dashboard
# ---------------------------------------------------------------------------

class TestBuild:
    def test_build_collects_every_view(self, service, cohort_now):
        result = service.build(JAN_TO_APR, now=cohort_now, top_n=3)

        assert result.snapshot.new_enrollments == 4
        assert len(result.monthly) == 4
        assert len(result.trends) == 4
        assert len(result.categories) == 3
        assert len(result.activities) == 3
        assert result.renewal_stats.lifetime == 1
        assert result.report["totalRows"] == 0

    def test_as_dict(self, service, cohort_now):
        payload = service.build(JAN_TO_APR, now=cohort_now).as_dict()

        assert payload["snapshot"]["churnedStudents"] == 1
        assert payload["monthly"][0]["month"] == "Jan 2024"
        assert payload["categories"][0]["courseCategory"] == "Guitar"
        assert payload["renewalStats"]["churnedStudents"][0]["id"] == "IN-1-ALICE"
        assert payload["trends"][0]["points"][0]["timestamp"] == "2024-01-01T00:00:00"
