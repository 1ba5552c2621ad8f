"""
Identity merger: collapses records of one person into a ``UnifiedStudent``.

Student codes look like ``COUNTRY-CAT-REGION-NAME``; the second segment is
the course category, so ``IN-KB-100-JDOE`` and ``IN-PN-100-JDOE`` are the
same student enrolled in two courses.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Sequence, Set, Union

from .configuration import MetricsConfig
from .models import EnrollmentRecord, RenewalRecord, Term, UnifiedStudent
from .normalizer import ParseReport, is_lifetime_package

logger = logging.getLogger(__name__)


def derive_base_id(identity: str) -> str:
    parts = identity.split("-")
    if len(parts) > 2:
        return "-".join([parts[0], *parts[2:]])
    return identity


def base_id_of(record: Union[EnrollmentRecord, RenewalRecord]) -> str:
    """Base id of a record; synthesized identities are never split."""
    if not record.has_external_id:
        return record.id
    return derive_base_id(record.id)


@dataclass
class _StudentAccumulator:
    id: str
    name: str
    enrollment_date: datetime
    activities: Set[str] = field(default_factory=set)
    course_categories: Set[str] = field(default_factory=set)
    renewal_dates: Set[datetime] = field(default_factory=set)
    terms: Set[Term] = field(default_factory=set)
    record_ids: Set[str] = field(default_factory=set)
    email: Optional[str] = None
    phone: Optional[str] = None
    end_date: Optional[datetime] = None
    fees: Optional[Decimal] = None
    package: Optional[str] = None
    is_lifetime: bool = False
    is_strike_off: bool = False
    has_enrollment: bool = True

    def extend_end_date(self, end_date: Optional[datetime]) -> None:
        if end_date is not None and (self.end_date is None or end_date > self.end_date):
            self.end_date = end_date

    def add_fees(self, amount: Optional[Decimal]) -> None:
        if amount is None:
            return
        self.fees = amount if self.fees is None else self.fees + amount

    def freeze(self) -> UnifiedStudent:
        return UnifiedStudent(
            id=self.id,
            name=self.name,
            enrollment_date=self.enrollment_date,
            activities=frozenset(self.activities),
            course_categories=frozenset(self.course_categories),
            renewal_dates=tuple(sorted(self.renewal_dates)),
            terms=tuple(sorted(self.terms, key=lambda term: (term.start, term.end or datetime.max, term.is_renewal))),
            record_ids=tuple(sorted(self.record_ids)),
            email=self.email,
            phone=self.phone,
            end_date=self.end_date,
            fees=self.fees,
            package=self.package,
            is_lifetime=self.is_lifetime,
            is_strike_off=self.is_strike_off,
            has_enrollment=self.has_enrollment,
        )


class IdentityMerger:
    """
    Builds the base-id -> ``UnifiedStudent`` map.

    Enrollment records are folded in first so that every renewal can find its
    student; a renewal with no enrollment becomes a standalone student.
    """

    def __init__(self, config: Optional[MetricsConfig] = None) -> None:
        self.config = config or MetricsConfig()

    def merge(
        self,
        enrollments: Sequence[EnrollmentRecord],
        renewals: Sequence[RenewalRecord],
        report: Optional[ParseReport] = None,
    ) -> Dict[str, UnifiedStudent]:
        if enrollments is None or renewals is None:
            raise TypeError("enrollments and renewals must be sequences, not None")

        students: Dict[str, _StudentAccumulator] = {}
        for record in enrollments:
            self._merge_enrollment(students, record)

        unmatched: List[str] = []
        for renewal in renewals:
            key = base_id_of(renewal)
            existing = students.get(key)
            if existing is None or not existing.has_enrollment:
                unmatched.append(key)
                if report is not None:
                    report.record("unmatched_renewals", renewal.source.value, renewal.row_number or 0, renewal.id)
            self._merge_renewal(students, renewal)

        if unmatched:
            logger.debug("Synthesized %d renewal-only students", len(set(unmatched)))
        return {key: accumulator.freeze() for key, accumulator in students.items()}

    def _is_lifetime(self, package: Optional[str]) -> bool:
        return is_lifetime_package(package, self.config.lifecycle.lifetime_marker)

    def _merge_enrollment(self, students: Dict[str, _StudentAccumulator], record: EnrollmentRecord) -> None:
        key = base_id_of(record)
        student = students.get(key)
        if student is None:
            student = _StudentAccumulator(id=key, name=record.name, enrollment_date=record.enrollment_date)
            students[key] = student
        elif record.enrollment_date < student.enrollment_date:
            student.enrollment_date = record.enrollment_date

        student.activities.update(record.activities)
        student.course_categories.add(record.course_category)
        student.terms.add(Term(start=record.enrollment_date, end=record.end_date))
        student.record_ids.add(record.id)
        student.extend_end_date(record.end_date)
        student.add_fees(record.fees)
        student.is_strike_off = student.is_strike_off or record.is_strike_off

        if record.name and record.name != "Unknown":
            student.name = record.name
        student.email = record.email or student.email
        student.phone = record.phone or student.phone
        self._apply_package(student, record.package)

    def _merge_renewal(self, students: Dict[str, _StudentAccumulator], renewal: RenewalRecord) -> None:
        key = base_id_of(renewal)
        student = students.get(key)
        if student is None:
            student = _StudentAccumulator(
                id=key,
                name=renewal.name,
                enrollment_date=renewal.renewal_date,
                email=renewal.email,
                phone=renewal.phone,
                has_enrollment=False,
            )
            students[key] = student
        elif not student.has_enrollment and renewal.renewal_date < student.enrollment_date:
            student.enrollment_date = renewal.renewal_date

        student.renewal_dates.add(renewal.renewal_date)
        student.terms.add(Term(start=renewal.renewal_date, end=renewal.end_date, is_renewal=True))
        student.record_ids.add(renewal.id)
        student.course_categories.add(renewal.course_category)
        student.activities.update(renewal.activities)
        student.extend_end_date(renewal.end_date)
        student.add_fees(renewal.fees)
        self._apply_package(student, renewal.package)

    def _apply_package(self, student: _StudentAccumulator, package: Optional[str]) -> None:
        if student.is_lifetime:
            return
        if self._is_lifetime(package):
            student.is_lifetime = True
            student.package = package
        elif package:
            student.package = package


def merge_records(
    enrollments: Sequence[EnrollmentRecord],
    renewals: Sequence[RenewalRecord],
    config: Optional[MetricsConfig] = None,
) -> Dict[str, UnifiedStudent]:
    return IdentityMerger(config).merge(enrollments, renewals)
