"""
Record normalizer: raw sheet rows -> typed enrollment and renewal records.

Parsing is non-fatal by contract. A row that cannot become a record is
skipped and accounted for in the ``ParseReport`` returned with the batch; a
batch never aborts because of one bad cell.
"""

from __future__ import annotations

import logging
import math
import re
from collections import Counter
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Sequence, Tuple

from pydantic import ValidationError

from .configuration import MetricsConfig
from .models import EnrollmentRecord, EnrollmentSource, RenewalRecord, RenewalSource
from .schema import RawRow, SheetBatch

logger = logging.getLogger(__name__)

SHEETS_EPOCH = datetime(1899, 12, 30)
MAX_SHEETS_SERIAL = 2958465  # 9999-12-31
STRIKE_OFF_MARKERS = {"STRIKE", "INACTIVE"}

# Tried in order; the first format that parses wins.
TEXT_DATE_FORMATS: Tuple[str, ...] = (
    "%Y-%m-%d",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%dT%H:%M:%S",
    "%Y/%m/%d",
    "%m/%d/%Y",
    "%m/%d/%Y %H:%M:%S",
    "%m/%d/%Y %H:%M",
    "%d-%m-%Y",
    "%d-%m-%Y %H:%M:%S",
    "%d/%m/%Y",
    "%d/%m/%Y %H:%M:%S",
    "%d.%m.%Y",
    "%m/%d/%y",
    "%d-%m-%y",
    "%d %b %Y",
    "%d %B %Y",
    "%d-%b-%Y",
    "%b %d, %Y",
    "%B %d, %Y",
    "%b %d %Y",
    "%a %b %d %Y",
)

_SERIAL_TEXT = re.compile(r"^\d{5}(\.\d+)?$")
_CURRENCY_WORDS = re.compile(r"(?i)\b(inr|usd|rs)\b\.?")
_CURRENCY_NOISE = re.compile(r"[\s,$₹€£]")
_PACKAGE_WEEKS = re.compile(r"(\d+)\s*weeks?", re.IGNORECASE)
_WHITESPACE = re.compile(r"\s+")


def parse_sheet_date(value: Any) -> Optional[datetime]:
    """
    Parse a spreadsheet cell into a naive ``datetime``.

    Accepts spreadsheet day serials (numbers, or five-digit numeric text),
    ``datetime``/``date`` objects and the text formats of ``TEXT_DATE_FORMATS``
    followed by ISO 8601 as a last resort. Returns ``None`` when nothing
    matches.
    """

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value.replace(tzinfo=None)
    if isinstance(value, date):
        return datetime.combine(value, time.min)
    if isinstance(value, (int, float)):
        return _from_serial(float(value))

    text = _WHITESPACE.sub(" ", str(value).strip())
    if not text:
        return None
    if _SERIAL_TEXT.match(text):
        return _from_serial(float(text))

    for fmt in TEXT_DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue

    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed.replace(tzinfo=None)


def _from_serial(serial: float) -> Optional[datetime]:
    if not math.isfinite(serial) or serial <= 0 or serial > MAX_SHEETS_SERIAL:
        return None
    return SHEETS_EPOCH + timedelta(seconds=round(serial * 86400))


def parse_amount(value: Any) -> Optional[Decimal]:
    """Strip currency symbols and separators; ``None`` when not a number."""

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, float) and not math.isfinite(value):
        return None
    if isinstance(value, (int, float)):
        return Decimal(str(value))

    cleaned = _CURRENCY_NOISE.sub("", _CURRENCY_WORDS.sub("", str(value)))
    if not cleaned:
        return None
    try:
        amount = Decimal(cleaned)
    except InvalidOperation:
        return None
    return amount if amount.is_finite() else None


def parse_activities(text: Optional[str], delimiter: str = ",") -> FrozenSet[str]:
    if not text:
        return frozenset()
    return frozenset(part.strip() for part in text.split(delimiter) if part.strip())


def normalize_identity(raw: Optional[str]) -> str:
    if not raw:
        return ""
    return _WHITESPACE.sub("", raw).upper()


def fallback_identity(name: Optional[str], source: str, row_number: int) -> str:
    """Identity for rows without a student code; unique per sheet row."""
    return normalize_identity(f"{name or 'UNKNOWN'}#{source}#{row_number}")


def category_code(identity: str) -> Optional[str]:
    parts = identity.split("-")
    if len(parts) < 2:
        return None
    return parts[1]


def is_strike_off(status: Optional[str]) -> bool:
    return bool(status) and status.strip().upper() in STRIKE_OFF_MARKERS


def extract_package_weeks(package: Optional[str]) -> Optional[int]:
    """``"12 weeks - 24 sessions"`` -> 12."""
    if not package:
        return None
    match = _PACKAGE_WEEKS.search(package)
    return int(match.group(1)) if match else None


def is_lifetime_package(package: Optional[str], marker: str = "LTV") -> bool:
    return bool(package) and bool(marker) and marker.upper() in package.upper()


@dataclass(frozen=True)
class RowIssue:
    source: str
    row_number: int
    kind: str
    detail: str = ""


@dataclass
class ParseReport:
    """
    Diagnostics for one parsing pass, returned alongside the records.

    Counters are always complete; ``issues`` keeps the first ``max_issues``
    row-level entries for display.
    """

    total_rows: int = 0
    enrollment_records: int = 0
    renewal_records: int = 0
    missing_ids: int = 0
    invalid_dates: int = 0
    invalid_end_dates: int = 0
    invalid_fees: int = 0
    duplicates: int = 0
    unmatched_renewals: int = 0
    malformed_rows: int = 0
    unknown_sources: int = 0
    issues: List[RowIssue] = field(default_factory=list)
    max_issues: int = 200

    def record(self, kind: str, source: str, row_number: int, detail: str = "") -> None:
        setattr(self, kind, getattr(self, kind) + 1)
        logger.debug("Row %s of %s: %s %s", row_number, source, kind, detail)
        if len(self.issues) < self.max_issues:
            self.issues.append(RowIssue(source=source, row_number=row_number, kind=kind, detail=detail))

    def as_dict(self) -> Dict[str, Any]:
        return {
            "totalRows": self.total_rows,
            "enrollmentRecords": self.enrollment_records,
            "renewalRecords": self.renewal_records,
            "missingIds": self.missing_ids,
            "invalidDates": self.invalid_dates,
            "invalidEndDates": self.invalid_end_dates,
            "invalidFees": self.invalid_fees,
            "duplicates": self.duplicates,
            "unmatchedRenewals": self.unmatched_renewals,
            "malformedRows": self.malformed_rows,
            "unknownSources": self.unknown_sources,
            "issues": [
                {"source": issue.source, "row": issue.row_number, "kind": issue.kind, "detail": issue.detail}
                for issue in self.issues
            ],
        }

    def summary(self) -> str:
        return (
            f"rows={self.total_rows} enrollments={self.enrollment_records} renewals={self.renewal_records} "
            f"missing_ids={self.missing_ids} invalid_dates={self.invalid_dates} duplicates={self.duplicates} "
            f"unmatched_renewals={self.unmatched_renewals} malformed={self.malformed_rows}"
        )


@dataclass(frozen=True)
class ParsedSnapshot:
    enrollments: Tuple[EnrollmentRecord, ...]
    renewals: Tuple[RenewalRecord, ...]
    report: ParseReport


@dataclass(frozen=True)
class _CommonFields:
    id: str
    has_external_id: bool
    name: str
    event_date: datetime
    end_date: Optional[datetime]
    course_category: str
    activities: FrozenSet[str]
    fees: Optional[Decimal]


class RecordNormalizer:
    """Turns tagged sheet batches into enrollment and renewal records."""

    def __init__(self, config: Optional[MetricsConfig] = None) -> None:
        self.config = config or MetricsConfig()
        # end dates past this point leave no room for the grace period
        self._latest_end_date = datetime.max - timedelta(days=self.config.lifecycle.grace_period_days)

    def resolve_enrollment_source(self, tag: str) -> EnrollmentSource:
        mapped = self.config.sources.enrollment_sheets.get(tag, tag)
        try:
            return EnrollmentSource(mapped)
        except ValueError:
            return EnrollmentSource.UNKNOWN

    def resolve_renewal_source(self, tag: str) -> RenewalSource:
        mapped = self.config.sources.renewal_sheets.get(tag, tag)
        try:
            return RenewalSource(mapped)
        except ValueError:
            return RenewalSource.UNKNOWN

    def parse(
        self,
        enrollment_batches: Sequence[SheetBatch],
        renewal_batches: Sequence[SheetBatch],
    ) -> ParsedSnapshot:
        if enrollment_batches is None or renewal_batches is None:
            raise TypeError("enrollment_batches and renewal_batches must be sequences, not None")

        report = ParseReport()
        enrollments: List[EnrollmentRecord] = []
        renewals: List[RenewalRecord] = []
        for batch in enrollment_batches:
            enrollments.extend(self.normalize_enrollments(batch, report))
        for batch in renewal_batches:
            renewals.extend(self.normalize_renewals(batch, report))

        self._count_duplicates(enrollments, report)
        return ParsedSnapshot(enrollments=tuple(enrollments), renewals=tuple(renewals), report=report)

    def normalize_enrollments(self, batch: SheetBatch, report: ParseReport) -> List[EnrollmentRecord]:
        source = self.resolve_enrollment_source(batch.source)
        if source is EnrollmentSource.UNKNOWN:
            report.record("unknown_sources", batch.source, 0, "enrollment sheet not in configuration")

        records: List[EnrollmentRecord] = []
        for row in self._iter_rows(batch, report):
            common = self._common_fields(row, batch.source, report, date_label="start date")
            if common is None:
                continue
            records.append(
                EnrollmentRecord(
                    id=common.id,
                    name=common.name,
                    enrollment_date=common.event_date,
                    source=source,
                    course_category=common.course_category,
                    activities=common.activities,
                    email=row.email,
                    phone=row.phone,
                    end_date=common.end_date,
                    fees=common.fees,
                    package=row.package,
                    notes=row.notes,
                    is_strike_off=is_strike_off(row.status),
                    has_external_id=common.has_external_id,
                    row_number=row.row_number,
                )
            )
        report.enrollment_records += len(records)
        return records

    def normalize_renewals(self, batch: SheetBatch, report: ParseReport) -> List[RenewalRecord]:
        source = self.resolve_renewal_source(batch.source)
        if source is RenewalSource.UNKNOWN:
            report.record("unknown_sources", batch.source, 0, "renewal sheet not in configuration")

        records: List[RenewalRecord] = []
        for row in self._iter_rows(batch, report):
            common = self._common_fields(row, batch.source, report, date_label="renewal date")
            if common is None:
                continue
            records.append(
                RenewalRecord(
                    id=common.id,
                    name=common.name,
                    renewal_date=common.event_date,
                    source=source,
                    course_category=common.course_category,
                    activities=common.activities,
                    email=row.email,
                    phone=row.phone,
                    end_date=common.end_date,
                    fees=common.fees if common.fees is not None else Decimal("0"),
                    package=row.package,
                    has_external_id=common.has_external_id,
                    row_number=row.row_number,
                )
            )
        report.renewal_records += len(records)
        return records

    def _iter_rows(self, batch: SheetBatch, report: ParseReport) -> Iterable[RawRow]:
        for offset, cells in enumerate(batch.data_rows()):
            row_number = batch.row_number_at(offset)
            if cells is None or (isinstance(cells, (list, tuple)) and not any(_has_value(c) for c in cells)):
                continue
            report.total_rows += 1
            if not isinstance(cells, (list, tuple)):
                report.record("malformed_rows", batch.source, row_number, f"expected a list of cells, got {type(cells).__name__}")
                continue
            try:
                row = RawRow.from_cells(cells, row_number)
            except ValidationError as exc:
                report.record("malformed_rows", batch.source, row_number, str(exc.errors()[0].get("msg", "")))
                continue
            yield row

    def _common_fields(
        self,
        row: RawRow,
        source: str,
        report: ParseReport,
        date_label: str,
    ) -> Optional[_CommonFields]:
        identity = normalize_identity(row.student_id)
        has_external_id = bool(identity)
        if not has_external_id:
            identity = fallback_identity(row.name, source, row.row_number)
            report.record("missing_ids", source, row.row_number, f"generated {identity}")

        event_date = parse_sheet_date(row.start_date)
        if event_date is None:
            report.record("invalid_dates", source, row.row_number, f"{date_label}: {row.start_date!r}")
            return None

        end_date = parse_sheet_date(row.end_date)
        if end_date is not None and end_date > self._latest_end_date:
            end_date = None
        if end_date is None and row.end_date is not None:
            report.record("invalid_end_dates", source, row.row_number, f"end date: {row.end_date!r}")
        if end_date is None:
            end_date = self._derive_end_date(event_date, row.package)

        fees = parse_amount(row.fees)
        if fees is None and row.fees is not None:
            report.record("invalid_fees", source, row.row_number, f"fees: {row.fees!r}")

        code = category_code(identity) if has_external_id else None
        activities = parse_activities(row.activity, self.config.aggregation.activity_delimiter)
        return _CommonFields(
            id=identity,
            has_external_id=has_external_id,
            name=row.name or "Unknown",
            event_date=event_date,
            end_date=end_date,
            course_category=self.config.categories.lookup(code),
            activities=activities,
            fees=fees,
        )

    def _derive_end_date(self, start: datetime, package: Optional[str]) -> Optional[datetime]:
        lifecycle = self.config.lifecycle
        if is_lifetime_package(package, lifecycle.lifetime_marker):
            return None
        weeks = extract_package_weeks(package) if lifecycle.derive_end_date_from_package else None
        if weeks is None:
            weeks = lifecycle.default_package_weeks
        if weeks is None or weeks > (self._latest_end_date - start).days // 7:
            return None
        return start + timedelta(weeks=weeks)

    @staticmethod
    def _count_duplicates(enrollments: Sequence[EnrollmentRecord], report: ParseReport) -> None:
        seen: Counter = Counter()
        for record in enrollments:
            seen[record.id] += 1
            if seen[record.id] > 1:
                report.record("duplicates", record.source.value, record.row_number or 0, record.id)


def _has_value(cell: Any) -> bool:
    if cell is None:
        return False
    if isinstance(cell, str):
        return bool(cell.strip())
    return True
