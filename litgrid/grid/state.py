"""
Data model for the literature grid.

Rows are uploaded papers, columns are user-defined prompts, and each
(row, column) intersection holds a CellValue that tracks where its
generation is at. Everything here is plain data with dict round-trips
for the persisted snapshot; the GridStateManager is the only writer.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from litgrid.models.llm_client import Configuration


class PreconditionError(ValueError):
    """User input rejected before any state was touched."""


class InvalidTransitionError(Exception):
    pass


class CellStatus(str, Enum):
    PENDING = "pending"
    GENERATING = "generating"
    READY = "ready"
    FAILED = "failed"


# Pending -> Pending re-arms a row after extraction,
# Generating -> Generating is a re-trigger while a call is in flight
_ALLOWED = {
    CellStatus.PENDING: {CellStatus.PENDING, CellStatus.GENERATING},
    CellStatus.GENERATING: {CellStatus.GENERATING, CellStatus.READY, CellStatus.FAILED},
    CellStatus.READY: {CellStatus.GENERATING},
    CellStatus.FAILED: {CellStatus.GENERATING},
}

_DISPLAY = {
    CellStatus.PENDING: "Waiting for analysis...",
    CellStatus.GENERATING: "Analyzing...",
}


@dataclass(frozen=True)
class CellValue:
    status: CellStatus = CellStatus.PENDING
    value: str = ""  # generated text when ready, error message when failed

    @classmethod
    def pending(cls) -> "CellValue":
        return cls(CellStatus.PENDING)

    @classmethod
    def generating(cls) -> "CellValue":
        return cls(CellStatus.GENERATING)

    @classmethod
    def ready(cls, text: str) -> "CellValue":
        return cls(CellStatus.READY, text)

    @classmethod
    def failed(cls, message: str) -> "CellValue":
        return cls(CellStatus.FAILED, message)

    @property
    def is_settled(self) -> bool:
        return self.status in (CellStatus.READY, CellStatus.FAILED)

    def can_become(self, new: "CellValue") -> bool:
        return new.status in _ALLOWED[self.status]

    def display_text(self) -> str:
        if self.status == CellStatus.READY:
            return self.value
        if self.status == CellStatus.FAILED:
            return f"Error: {self.value}"
        return _DISPLAY[self.status]

    def to_dict(self) -> Dict[str, str]:
        return {"status": self.status.value, "value": self.value}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CellValue":
        return cls(CellStatus(data["status"]), str(data.get("value", "")))


@dataclass
class Column:
    id: str
    title: str
    prompt: str

    def to_dict(self) -> Dict[str, str]:
        return {"id": self.id, "title": self.title, "prompt": self.prompt}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Column":
        return cls(id=str(data["id"]), title=str(data["title"]), prompt=str(data["prompt"]))


@dataclass
class Row:
    id: str
    file_name: str
    extracted_text: str = ""
    thumbnail: Optional[str] = None
    cells: Dict[str, CellValue] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "file_name": self.file_name,
            "extracted_text": self.extracted_text,
            "thumbnail": self.thumbnail,
            "cells": {col_id: cell.to_dict() for col_id, cell in self.cells.items()},
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Row":
        return cls(
            id=str(data["id"]),
            file_name=str(data["file_name"]),
            extracted_text=str(data.get("extracted_text", "")),
            thumbnail=data.get("thumbnail"),
            cells={
                str(col_id): CellValue.from_dict(cell)
                for col_id, cell in data.get("cells", {}).items()
            },
        )


@dataclass
class Snapshot:
    config: Configuration
    columns: List[Column]
    rows: List[Row]

    # Flat table for display/export: one dict per row keyed by column title
    def to_records(self) -> List[Dict[str, str]]:
        records = []
        for row in self.rows:
            record = {"File": row.file_name}
            for column in self.columns:
                cell = row.cells.get(column.id, CellValue.pending())
                record[column.title] = cell.display_text()
            records.append(record)
        return records

    def to_dict(self) -> Dict[str, Any]:
        return {
            "config": self.config.to_dict(),
            "columns": [c.to_dict() for c in self.columns],
            "rows": [r.to_dict() for r in self.rows],
        }

    # Raises KeyError / TypeError / ValueError on malformed input
    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Snapshot":
        snapshot = cls(
            config=Configuration.from_dict(data["config"]),
            columns=[Column.from_dict(c) for c in data["columns"]],
            rows=[Row.from_dict(r) for r in data["rows"]],
        )

        for kind, items in (("column", snapshot.columns), ("row", snapshot.rows)):
            ids = [item.id for item in items]
            if len(ids) != len(set(ids)):
                raise ValueError(f"Duplicate {kind} ids in snapshot")

        return snapshot
