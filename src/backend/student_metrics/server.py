from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field, ValidationInfo, field_validator

from .configuration import MetricsConfig, load_metrics_config
from .models import DateRange, DrillDownMetric, as_naive, students_payload
from .repository import RepositoryError, SheetRowRepository, build_repository_from_env
from .schema import SheetBatch
from .service import StudentMetricsService

app = FastAPI(title="Student Metrics API", version="0.1.0")
config: MetricsConfig = load_metrics_config()
repository: Optional[SheetRowRepository] = build_repository_from_env(metrics_config=config)


class SheetPayload(BaseModel):
    source: str
    rows: List[List[Any]] = Field(default_factory=list)
    has_header: bool = True


class DashboardRequest(BaseModel):
    start_date: datetime
    end_date: datetime
    now: Optional[datetime] = None
    top_n: Optional[int] = Field(default=None, ge=1)
    enrollment_sheets: Optional[List[SheetPayload]] = None
    renewal_sheets: Optional[List[SheetPayload]] = None

    @field_validator("start_date", "now", mode="after")
    @classmethod
    def _strip_timezone(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_naive(value) if value is not None else None

    @field_validator("end_date", mode="after")
    @classmethod
    def _validate_range(cls, end_date: datetime, info: ValidationInfo) -> datetime:
        end_date = as_naive(end_date)
        start_date = info.data.get("start_date")
        if start_date and end_date < start_date:
            raise ValueError("end_date must not be before start_date")
        return end_date

    @property
    def date_range(self) -> DateRange:
        return DateRange(start_date=self.start_date, end_date=self.end_date)


class StudentListRequest(DashboardRequest):
    metric: DrillDownMetric
    category: Optional[str] = None


class DashboardResponse(BaseModel):
    data: Dict[str, Any]
    source: str


class StudentListResponse(BaseModel):
    data: List[Dict[str, Any]]
    source: str


@app.get("/health")
async def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.post("/dashboard", response_model=DashboardResponse)
async def dashboard_endpoint(request: DashboardRequest) -> DashboardResponse:
    service, source = await _load_service(request)
    dashboard = service.build(request.date_range, now=request.now, top_n=request.top_n)
    return DashboardResponse(data=dashboard.as_dict(), source=source)


@app.post("/dashboard/students", response_model=StudentListResponse)
async def students_endpoint(request: StudentListRequest) -> StudentListResponse:
    service, source = await _load_service(request)
    students = service.students_for_metric(request.metric, request.date_range, now=request.now)
    if request.category:
        students = [entry for entry in students if request.category in entry.student.course_categories]
    return StudentListResponse(data=students_payload(students), source=source)


async def _load_service(request: DashboardRequest) -> Tuple[StudentMetricsService, str]:
    enrollment_batches, renewal_batches, source = await _load_batches(request)
    if not enrollment_batches and not renewal_batches:
        raise HTTPException(status_code=400, detail="No sheet rows available for the requested window.")
    return StudentMetricsService.from_batches(enrollment_batches, renewal_batches, config=config), source


async def _load_batches(
    request: DashboardRequest,
) -> Tuple[Sequence[SheetBatch], Sequence[SheetBatch], str]:
    if repository is not None:
        try:
            enrollment_batches, renewal_batches = repository.load()
        except RepositoryError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        return enrollment_batches, renewal_batches, "database"

    if request.enrollment_sheets is None and request.renewal_sheets is None:
        raise HTTPException(
            status_code=500,
            detail=(
                "STUDENT_METRICS_DATABASE_URL is not configured; "
                "supply enrollment_sheets/renewal_sheets in the request body for ad-hoc queries."
            ),
        )

    return (
        tuple(_convert_sheet_payload(payload) for payload in request.enrollment_sheets or ()),
        tuple(_convert_sheet_payload(payload) for payload in request.renewal_sheets or ()),
        "inline",
    )


def _convert_sheet_payload(payload: SheetPayload) -> SheetBatch:
    return SheetBatch(source=payload.source, rows=tuple(payload.rows), has_header=payload.has_header)
