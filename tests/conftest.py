"""Shared fixtures for the student metrics tests."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, List, Optional

import pytest

from backend.student_metrics.models import (
    EnrollmentRecord,
    EnrollmentSource,
    RenewalRecord,
    RenewalSource,
)
from backend.student_metrics.schema import COLUMN_LAYOUT

HEADER_ROW: List[Any] = [name for name, _ in sorted(COLUMN_LAYOUT.items(), key=lambda item: item[1])]


def build_cells(**values: Any) -> List[Any]:
    """A positional sheet row with the given named columns filled in."""
    cells: List[Any] = [None] * (max(COLUMN_LAYOUT.values()) + 1)
    for name, value in values.items():
        cells[COLUMN_LAYOUT[name]] = value
    return cells


@pytest.fixture
def make_cells() -> Callable[..., List[Any]]:
    return build_cells


@pytest.fixture
def header_row() -> List[Any]:
    return list(HEADER_ROW)


@pytest.fixture
def make_enrollment() -> Callable[..., EnrollmentRecord]:
    def _make(
        id: str,
        enrollment_date: datetime,
        end_date: Optional[datetime] = None,
        course_category: str = "Other",
        activities: tuple = (),
        fees: Optional[str] = "0",
        package: Optional[str] = None,
        **extra: Any,
    ) -> EnrollmentRecord:
        return EnrollmentRecord(
            id=id,
            name=extra.pop("name", id.split("-")[-1].title()),
            enrollment_date=enrollment_date,
            source=extra.pop("source", EnrollmentSource.PRIMARY_FORM),
            course_category=course_category,
            activities=frozenset(activities),
            end_date=end_date,
            fees=Decimal(fees) if fees is not None else None,
            package=package,
            **extra,
        )

    return _make


@pytest.fixture
def make_renewal() -> Callable[..., RenewalRecord]:
    def _make(
        id: str,
        renewal_date: datetime,
        end_date: Optional[datetime] = None,
        course_category: str = "Other",
        activities: tuple = (),
        fees: str = "0",
        package: Optional[str] = None,
        **extra: Any,
    ) -> RenewalRecord:
        return RenewalRecord(
            id=id,
            name=extra.pop("name", id.split("-")[-1].title()),
            renewal_date=renewal_date,
            source=extra.pop("source", RenewalSource.PRIMARY_RENEWAL),
            course_category=course_category,
            activities=frozenset(activities),
            end_date=end_date,
            fees=Decimal(fees),
            package=package,
            **extra,
        )

    return _make


@pytest.fixture
def cohort(make_enrollment, make_renewal):
    """
    Five students observed on 2024-04-15:

    * ALICE  enrolled 2023-12-01, expired 2024-02-23, churned 2024-04-08
    * BOB    enrolled 2023-12-15, expired 2024-03-08, renewed 2024-03-20
    * CARA   two courses (Guitar + Vocals) from 2024-02-10
    * DAN    lifetime package from 2024-01-20
    * EVE    enrolled 2024-01-05, expired 2024-04-01, in grace
    """

    enrollments = [
        make_enrollment(
            "IN-KB-1-ALICE",
            datetime(2023, 12, 1),
            end_date=datetime(2024, 2, 23),
            course_category="Keyboard",
            activities=("Keyboard",),
            fees="1000",
            is_strike_off=True,
        ),
        make_enrollment(
            "IN-PN-2-BOB",
            datetime(2023, 12, 15),
            end_date=datetime(2024, 3, 8),
            course_category="Piano",
            activities=("Piano",),
            fees="1000",
        ),
        make_enrollment(
            "IN-GT-3-CARA",
            datetime(2024, 2, 10),
            end_date=datetime(2024, 5, 4),
            course_category="Guitar",
            activities=("Guitar",),
            fees="500",
        ),
        make_enrollment(
            "IN-VC-3-CARA",
            datetime(2024, 2, 10),
            end_date=datetime(2024, 5, 4),
            course_category="Vocals",
            activities=("Vocals",),
            fees="500",
        ),
        make_enrollment(
            "IN-KB-4-DAN",
            datetime(2024, 1, 20),
            course_category="Keyboard",
            activities=("Keyboard",),
            fees="5000",
            package="LTV Keyboard",
        ),
        make_enrollment(
            "IN-DR-5-EVE",
            datetime(2024, 1, 5),
            end_date=datetime(2024, 4, 1),
            course_category="Drums",
            activities=("Drums",),
            fees="700",
        ),
    ]
    renewals = [
        make_renewal(
            "IN-PN-2-BOB",
            datetime(2024, 3, 20),
            end_date=datetime(2024, 6, 12),
            course_category="Piano",
            activities=("Piano",),
            fees="800",
        ),
    ]
    return enrollments, renewals


@pytest.fixture
def cohort_now() -> datetime:
    return datetime(2024, 4, 15)
