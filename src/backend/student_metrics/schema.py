"""
Named view over the fixed-width sheet rows.

Enrollment and renewal tabs share one column layout; ``RawRow`` maps the
positional cells onto named, validated fields so nothing downstream indexes
into an untyped list.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional, Sequence, Union

from pydantic import BaseModel, ConfigDict, field_validator

CellValue = Union[datetime, float, int, str]

COLUMN_LAYOUT: Dict[str, int] = {
    "timestamp": 0,
    "email": 1,
    "name": 2,
    "country_code": 3,
    "phone": 4,
    "package": 5,
    "activity": 6,
    "start_date": 7,
    "schedule": 8,
    "fees": 9,
    "fees_remaining": 10,
    "end_date": 16,
    "due_date": 17,
    "notes": 19,
    "student_id": 20,
    "status": 21,
}

TEXT_FIELDS = (
    "email",
    "name",
    "country_code",
    "phone",
    "package",
    "activity",
    "schedule",
    "notes",
    "student_id",
    "status",
)
VALUE_FIELDS = ("timestamp", "start_date", "fees", "fees_remaining", "end_date", "due_date")


class RawRow(BaseModel):
    """One sheet row with its columns addressed by name."""

    model_config = ConfigDict(frozen=True)

    row_number: int
    timestamp: Optional[CellValue] = None
    email: Optional[str] = None
    name: Optional[str] = None
    country_code: Optional[str] = None
    phone: Optional[str] = None
    package: Optional[str] = None
    activity: Optional[str] = None
    start_date: Optional[CellValue] = None
    schedule: Optional[str] = None
    fees: Optional[CellValue] = None
    fees_remaining: Optional[CellValue] = None
    end_date: Optional[CellValue] = None
    due_date: Optional[CellValue] = None
    notes: Optional[str] = None
    student_id: Optional[str] = None
    status: Optional[str] = None

    @field_validator(*TEXT_FIELDS, mode="before")
    @classmethod
    def _coerce_text(cls, value: Any) -> Optional[str]:
        if value is None:
            return None
        if isinstance(value, float) and value.is_integer():
            value = int(value)
        text = str(value).strip()
        return text or None

    @field_validator(*VALUE_FIELDS, mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, bool):
            return str(value)
        if isinstance(value, str):
            return value.strip() or None
        return value

    @classmethod
    def from_cells(cls, cells: Sequence[Any], row_number: int) -> "RawRow":
        values: Dict[str, Any] = {"row_number": row_number}
        for name, index in COLUMN_LAYOUT.items():
            values[name] = cells[index] if index < len(cells) else None
        return cls(**values)


@dataclass(frozen=True)
class SheetBatch:
    """
    Rows of one sheet/tab together with the provenance they came from.

    ``source`` is either a sheet name known to the configuration or a source
    tag value such as ``"PrimaryForm"``. When ``has_header`` is true the first
    row is skipped and data rows are numbered from 2, like the sheet UI.
    ``row_numbers``, when given, carries the sheet row number of each data row
    for batches assembled from a subset of the sheet.
    """

    source: str
    rows: Sequence[Sequence[Any]]
    has_header: bool = True
    row_numbers: Optional[Sequence[int]] = None

    @property
    def first_row_number(self) -> int:
        return 2 if self.has_header else 1

    def row_number_at(self, offset: int) -> int:
        if self.row_numbers is not None and offset < len(self.row_numbers):
            return self.row_numbers[offset]
        return self.first_row_number + offset

    def data_rows(self) -> Sequence[Sequence[Any]]:
        return self.rows[1:] if self.has_header else self.rows
