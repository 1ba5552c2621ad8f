from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterator, List, Optional, Sequence, Tuple, Union

from .classifier import LifecycleClassifier
from .configuration import MetricsConfig
from .merger import IdentityMerger, base_id_of
from .models import Classification, DateRange, EnrollmentRecord, RenewalRecord, UnifiedStudent
from .normalizer import ParseReport, RecordNormalizer
from .schema import SheetBatch

logger = logging.getLogger(__name__)


@dataclass
class StudentDataset:
    """
    One immutable snapshot: normalized records, the merged student map and
    the classifier configured for it. Records keep their input order so
    every downstream tie-break follows encounter order.
    """

    enrollments: Sequence[EnrollmentRecord]
    renewals: Sequence[RenewalRecord]
    config: MetricsConfig = field(default_factory=MetricsConfig)
    report: ParseReport = field(default_factory=ParseReport)

    def __post_init__(self) -> None:
        if self.enrollments is None or self.renewals is None:
            raise TypeError("enrollments and renewals must be sequences, not None")
        self.enrollments = tuple(self.enrollments)
        self.renewals = tuple(self.renewals)
        self.classifier = LifecycleClassifier.from_config(self.config)
        self.students: Dict[str, UnifiedStudent] = IdentityMerger(self.config).merge(
            self.enrollments, self.renewals, report=self.report
        )

    @classmethod
    def from_batches(
        cls,
        enrollment_batches: Sequence[SheetBatch],
        renewal_batches: Sequence[SheetBatch],
        config: Optional[MetricsConfig] = None,
    ) -> "StudentDataset":
        config = config or MetricsConfig()
        parsed = RecordNormalizer(config).parse(enrollment_batches, renewal_batches)
        dataset = cls(
            enrollments=parsed.enrollments,
            renewals=parsed.renewals,
            config=config,
            report=parsed.report,
        )
        logger.info("Parsed sheet snapshot: %s students=%d", parsed.report.summary(), len(dataset.students))
        return dataset

    def student_for(self, record: Union[EnrollmentRecord, RenewalRecord]) -> UnifiedStudent:
        return self.students[base_id_of(record)]

    def iter_students(self) -> Iterator[UnifiedStudent]:
        return iter(self.students.values())

    def classify(self, student: UnifiedStudent, as_of: datetime) -> Classification:
        return self.classifier.classify(student, as_of)

    def enrollments_between(self, window: DateRange, counted_only: bool = True) -> List[EnrollmentRecord]:
        return [
            record
            for record in self.enrollments
            if window.contains(record.enrollment_date) and (record.source.is_counted or not counted_only)
        ]

    def renewals_between(self, window: DateRange, counted_only: bool = True) -> List[RenewalRecord]:
        return [
            record
            for record in self.renewals
            if window.contains(record.renewal_date) and (record.source.is_counted or not counted_only)
        ]

    def valid_renewals_between(self, window: DateRange) -> List[RenewalRecord]:
        """
        Valid renewal events inside the window, one per student and date:
        the same payment imported from two overlapping sheets counts once.
        """

        seen: set = set()
        events: List[RenewalRecord] = []
        for record in self.renewals_between(window):
            key = (base_id_of(record), record.renewal_date)
            if key in seen:
                continue
            if not self.classifier.is_valid_renewal(self.student_for(record), record.renewal_date):
                continue
            seen.add(key)
            events.append(record)
        return events

    def expirations_between(
        self, window: DateRange
    ) -> List[Tuple[UnifiedStudent, Union[EnrollmentRecord, RenewalRecord]]]:
        """
        Renewal-eligible instances: every enrollment and renewal whose own end
        date falls in the window, skipping lifetime students.
        """

        instances: List[Tuple[UnifiedStudent, Union[EnrollmentRecord, RenewalRecord]]] = []
        for record in (*self.enrollments, *self.renewals):
            if not window.contains(record.end_date):
                continue
            student = self.student_for(record)
            if student.is_lifetime:
                continue
            instances.append((student, record))
        return instances

    def active_students_at(self, as_of: datetime) -> List[UnifiedStudent]:
        return [student for student in self.students.values() if self.classifier.is_active(student, as_of)]
