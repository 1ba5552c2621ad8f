from __future__ import annotations

import json
import logging
import os
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine, Row
from sqlalchemy.exc import SQLAlchemyError

from .configuration import MetricsConfig
from .schema import SheetBatch

logger = logging.getLogger(__name__)


class RepositoryError(RuntimeError):
    """Raised when the sheet snapshot cannot be read."""


class SheetRowRepository:
    """
    Interface for loading the raw sheet snapshot.

    Concrete implementations return enrollment batches and renewal batches,
    each tagged with the sheet it came from; parsing happens downstream.
    """

    def load(self) -> Tuple[Sequence[SheetBatch], Sequence[SheetBatch]]:
        raise NotImplementedError


class SQLSheetRepository(SheetRowRepository):
    """
    Load sheet rows mirrored into a relational snapshot table.

    Expected table:
      - sheet_rows(sheet_name, row_number, cells_json)

    ``cells_json`` holds the positional cell list of one data row (header
    rows are not stored). Sheets are routed to enrollment or renewal batches
    by the configured sheet tables; anything else is skipped with a warning.
    """

    def __init__(self, engine: Engine, config: Optional[MetricsConfig] = None):
        self.engine = engine
        self.config = config or MetricsConfig()

    def load(self) -> Tuple[Sequence[SheetBatch], Sequence[SheetBatch]]:
        query = text(
            """
            SELECT sheet_name, row_number, cells_json
            FROM sheet_rows
            ORDER BY sheet_name ASC, row_number ASC
            """
        )
        try:
            with self.engine.connect() as connection:
                rows = connection.execute(query).fetchall()
        except SQLAlchemyError as exc:
            logger.warning("Failed to load sheet rows: %s", exc)
            raise RepositoryError("sheet snapshot is unavailable") from exc

        sheets: Dict[str, List[Tuple[int, List[Any]]]] = OrderedDict()
        for row in rows:
            sheets.setdefault(str(row.sheet_name), []).append((int(row.row_number), self._row_to_cells(row)))

        enrollment_batches: List[SheetBatch] = []
        renewal_batches: List[SheetBatch] = []
        for sheet_name, numbered in sheets.items():
            batch = SheetBatch(
                source=sheet_name,
                rows=tuple(cells for _, cells in numbered),
                has_header=False,
                row_numbers=tuple(number for number, _ in numbered),
            )
            if sheet_name in self.config.sources.enrollment_sheets:
                enrollment_batches.append(batch)
            elif sheet_name in self.config.sources.renewal_sheets:
                renewal_batches.append(batch)
            else:
                logger.warning("Skipping sheet %r: not configured as an enrollment or renewal source", sheet_name)
        return tuple(enrollment_batches), tuple(renewal_batches)

    @staticmethod
    def _row_to_cells(row: Row) -> List[Any]:
        cells = row.cells_json
        if isinstance(cells, str):
            try:
                cells = json.loads(cells)
            except json.JSONDecodeError:
                logger.debug("Row %s of %s holds invalid JSON", row.row_number, row.sheet_name)
                cells = []
        if not isinstance(cells, list):
            cells = []
        return cells


@dataclass(frozen=True)
class RepositoryConfig:
    database_url: Optional[str] = None

    @classmethod
    def from_env(cls) -> "RepositoryConfig":
        return cls(database_url=os.getenv("STUDENT_METRICS_DATABASE_URL"))


def build_repository_from_env(
    config: Optional[RepositoryConfig] = None,
    metrics_config: Optional[MetricsConfig] = None,
) -> Optional[SheetRowRepository]:
    cfg = config or RepositoryConfig.from_env()
    if cfg.database_url:
        engine = create_engine(cfg.database_url)
        return SQLSheetRepository(engine, metrics_config)
    return None
