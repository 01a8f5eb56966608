"""
Grid state manager: the single owner of the literature table.

Uploading a paper creates one row and fills it column by column, in
display order, one model call at a time. Adding a column fills that
column for every paper concurrently. Every completed call is applied to
the cell addressed by (row_id, column_id), and only if it is still the
newest call issued for that cell, so re-triggering a cell before the
previous call returns is harmless and deletes during a call are
tolerated. State is snapshotted to the persistence adapter after every
transition.
"""

import asyncio
import copy
import itertools
import logging
import time
from dataclasses import fields
from typing import Awaitable, Callable, Dict, List, Optional, Set, Tuple

from litgrid.grid.persistence import PersistenceAdapter
from litgrid.grid.state import (
    CellStatus,
    CellValue,
    Column,
    InvalidTransitionError,
    PreconditionError,
    Row,
    Snapshot,
)
from litgrid.models.analyzer import DEFAULT_COLUMNS, analyze_cell, default_prompt_for
from litgrid.models.llm_client import DEFAULT_CONFIGURATION, Configuration, GenerationError
from litgrid.utils.pdf_parser import ExtractedDocument, extract_document

logger = logging.getLogger(__name__)

INTERRUPTED_MESSAGE = "Generation interrupted before completion; regenerate this cell."
QUOTA_WARNING = (
    "Local storage is full, recent changes were not saved. "
    "Consider deleting some old rows."
)

Extractor = Callable[[bytes], ExtractedDocument]
Generator = Callable[[Configuration, str, str], Awaitable[str]]


class GridStateManager:

    def __init__(
        self,
        persistence: Optional[PersistenceAdapter] = None,
        extractor: Extractor = extract_document,
        generator: Generator = analyze_cell,
        on_change: Optional[Callable[[Snapshot], None]] = None,
        on_warning: Optional[Callable[[str], None]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.persistence = persistence
        self.on_change = on_change
        self.on_warning = on_warning
        self._extractor = extractor
        self._generator = generator
        self._clock = clock

        self.config: Configuration = DEFAULT_CONFIGURATION
        self._columns: List[Column] = []
        self._rows: List[Row] = []

        # Call numbers come from one counter; the latest per (row_id, column_id) wins
        self._calls = itertools.count(1)
        self._seq: Dict[Tuple[str, str], int] = {}

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------

    @property
    def columns(self) -> List[Column]:
        return list(self._columns)

    @property
    def rows(self) -> List[Row]:
        return list(self._rows)

    def get_row(self, row_id: str) -> Optional[Row]:
        return next((r for r in self._rows if r.id == row_id), None)

    def get_column(self, column_id: str) -> Optional[Column]:
        return next((c for c in self._columns if c.id == column_id), None)

    def snapshot(self) -> Snapshot:
        return Snapshot(
            config=self.config,
            columns=copy.deepcopy(self._columns),
            rows=copy.deepcopy(self._rows),
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(self) -> "GridStateManager":
        """Restore the last snapshot, or start from the defaults. Never raises."""

        snapshot = self.persistence.load() if self.persistence is not None else None
        self._seq.clear()

        if snapshot is None:
            self.config = DEFAULT_CONFIGURATION
            self._columns = [Column(**c) for c in DEFAULT_COLUMNS]
            self._rows = []
            logger.info("No saved table found, starting from defaults")
            return self

        self.config = snapshot.config
        self._columns = snapshot.columns
        self._rows = snapshot.rows

        changed = False
        for row in self._rows:
            changed = self._reconcile(row) or changed

        logger.info(
            "Restored table with %d column(s) and %d row(s)",
            len(self._columns),
            len(self._rows),
        )
        if changed:
            self._commit()
        return self

    # One cell per current column; calls cut short by a restart become failures
    def _reconcile(self, row: Row) -> bool:
        cells = {}
        for column in self._columns:
            cell = row.cells.get(column.id, CellValue.pending())
            if cell.status == CellStatus.GENERATING:
                cell = CellValue.failed(INTERRUPTED_MESSAGE)
            cells[column.id] = cell

        changed = cells != row.cells or list(cells) != list(row.cells)
        row.cells = cells
        return changed

    # ------------------------------------------------------------------
    # Rows
    # ------------------------------------------------------------------

    async def add_row(self, file_name: str, data: bytes) -> str:
        """Upload one paper and fill every column for it.

        Raises PreconditionError (nothing changed) for a missing file or
        a missing API key, and re-raises the extractor's error after
        removing the half-created row. Generation failures never raise;
        they end up in the affected cell.
        """

        if not data:
            raise PreconditionError("Please choose a PDF file first.")
        if self.config.provider.needs_api_key and not self.config.api_key.strip():
            raise PreconditionError("Please enter your API Key first.")

        row_id = self._new_id({r.id for r in self._rows})
        row = Row(
            id=row_id,
            file_name=file_name or "untitled.pdf",
            cells={c.id: CellValue.pending() for c in self._columns},
        )
        self._rows.append(row)
        self._commit()
        logger.info("Added row %s for %s", row_id, row.file_name)

        try:
            document = await asyncio.to_thread(self._extractor, data)
        except Exception:
            logger.error("Extraction failed for %s, removing row %s", row.file_name, row_id)
            self._rows = [r for r in self._rows if r.id != row_id]
            self._commit()
            raise

        row = self.get_row(row_id)
        if row is None:
            return row_id

        row.extracted_text = document.text
        row.thumbnail = document.thumbnail
        for column_id in row.cells:
            self._apply(row, column_id, CellValue.pending())
        self._commit()

        # Strictly one column after another, in display order
        for column in self.columns:
            if self.get_row(row_id) is None:
                break
            await self.regenerate_cell(row_id, column.id)

        return row_id

    def delete_row(self, row_id: str) -> None:
        if self.get_row(row_id) is None:
            return

        self._rows = [r for r in self._rows if r.id != row_id]
        self._seq = {k: v for k, v in self._seq.items() if k[0] != row_id}
        self._commit()
        logger.info("Deleted row %s", row_id)

    # ------------------------------------------------------------------
    # Columns
    # ------------------------------------------------------------------

    async def add_column(self, title: str) -> Column:
        """Append a column and fill it for every paper that has text."""

        title = (title or "").strip()
        if not title:
            raise PreconditionError("Column title must not be empty.")

        column_id = self._new_id({c.id for c in self._columns}, prefix="col_")
        column = Column(id=column_id, title=title, prompt=default_prompt_for(title))

        self._columns.append(column)
        for row in self._rows:
            row.cells[column_id] = CellValue.pending()
        self._commit()
        logger.info("Added column %s (%s)", column_id, title)

        targets = [r.id for r in self._rows if r.extracted_text]
        await asyncio.gather(*(self.regenerate_cell(row_id, column_id) for row_id in targets))

        return column

    def delete_column(self, column_id: str) -> None:
        if self.get_column(column_id) is None:
            return

        self._columns = [c for c in self._columns if c.id != column_id]
        for row in self._rows:
            row.cells.pop(column_id, None)
        self._seq = {k: v for k, v in self._seq.items() if k[1] != column_id}
        self._commit()
        logger.info("Deleted column %s", column_id)

    def update_column_prompt(self, column_id: str, prompt: str) -> None:
        column = self.get_column(column_id)
        if column is None:
            return

        column.prompt = prompt
        self._commit()

    def rename_column(self, column_id: str, title: str) -> None:
        title = (title or "").strip()
        if not title:
            raise PreconditionError("Column title must not be empty.")

        column = self.get_column(column_id)
        if column is None:
            return

        column.title = title
        self._commit()

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    def update_configuration(self, **patch) -> Configuration:
        known = {f.name for f in fields(Configuration)}
        unknown = set(patch) - known
        if unknown:
            raise PreconditionError(f"Unknown configuration field(s): {sorted(unknown)}")

        self.config = self.config.updated(**patch)
        self._commit()
        return self.config

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    async def regenerate_cell(self, row_id: str, column_id: str) -> None:
        """(Re)generate one cell. Silent no-op without a row, column or text."""

        row = self.get_row(row_id)
        column = self.get_column(column_id)
        if row is None or column is None or not row.extracted_text:
            return

        key = (row_id, column_id)
        seq = next(self._calls)
        self._seq[key] = seq

        self._set_cell(row_id, column_id, CellValue.generating())
        logger.debug("Generating %s/%s (call %d)", row_id, column_id, seq)

        try:
            text = await self._generator(self.config, column.prompt, row.extracted_text)
            result = CellValue.ready(text)
        except GenerationError as exc:
            logger.warning("Generation failed for %s/%s: %s", row_id, column_id, exc)
            result = CellValue.failed(str(exc))
        except Exception as exc:
            # Any failure stays inside this cell
            logger.exception("Unexpected error generating %s/%s", row_id, column_id)
            result = CellValue.failed(str(exc) or exc.__class__.__name__)

        self._set_cell(row_id, column_id, result, seq=seq)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _new_id(self, taken: Set[str], prefix: str = "") -> str:
        stamp = int(self._clock() * 1000)
        while f"{prefix}{stamp}" in taken:
            stamp += 1
        return f"{prefix}{stamp}"

    def _apply(self, row: Row, column_id: str, value: CellValue) -> None:
        current = row.cells[column_id]
        if not current.can_become(value):
            raise InvalidTransitionError(
                f"Cell {row.id}/{column_id}: {current.status.value} -> {value.status.value}"
            )
        row.cells[column_id] = value

    # Returns False when the target is gone or a newer call owns the cell
    def _set_cell(
        self,
        row_id: str,
        column_id: str,
        value: CellValue,
        seq: Optional[int] = None,
    ) -> bool:

        row = self.get_row(row_id)
        if row is None or column_id not in row.cells:
            logger.debug("Dropping result for removed cell %s/%s", row_id, column_id)
            return False

        if seq is not None and self._seq.get((row_id, column_id)) != seq:
            logger.debug("Dropping stale result for %s/%s (call %d)", row_id, column_id, seq)
            return False

        self._apply(row, column_id, value)
        self._commit()
        return True

    def _commit(self):
        snapshot = self.snapshot()

        if self.persistence is not None and not self.persistence.save(snapshot):
            if self.on_warning is not None:
                self.on_warning(QUOTA_WARNING)

        if self.on_change is not None:
            self.on_change(snapshot)
