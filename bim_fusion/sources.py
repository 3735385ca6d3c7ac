"""
sources.py — External tabular sources (cost, schedule, carbon sheets, …).

A source is only joined once both halves of its mapping are set.  Any edit
to a mapping marks the source dirty; ``SourceRegistry.refresh`` refetches
dirty sources one at a time so a broken file never blocks the others.
"""

from __future__ import annotations

import csv
import logging
from pathlib import Path
from typing import Optional, Protocol

import openpyxl

from bim_fusion.records import ExternalSource, SourceMapping, SourceStats, SyncStatus

log = logging.getLogger(__name__)


class SourceLoadError(RuntimeError):
    """A source file could not be fetched or parsed."""


class SourceLoader(Protocol):
    def load(self, source: ExternalSource) -> tuple[list[str], list[dict]]: ...


# ── File loading ──────────────────────────────────────────────────────────────

def _clean_header(value, index: int) -> str:
    text = "" if value is None else str(value).strip()
    return text or f"Column{index + 1}"


def read_csv(path: Path) -> tuple[list[str], list[dict]]:
    with open(path, newline="", encoding="utf-8-sig") as f:
        reader = csv.reader(f)
        try:
            raw_headers = next(reader)
        except StopIteration:
            return [], []
        headers = [_clean_header(h, i) for i, h in enumerate(raw_headers)]
        rows: list[dict] = []
        for raw in reader:
            if not any(cell.strip() for cell in raw):
                continue
            rows.append({h: (raw[i] if i < len(raw) else "") for i, h in enumerate(headers)})
    return headers, rows


def read_xlsx(path: Path) -> tuple[list[str], list[dict]]:
    """First worksheet; header row first, blank rows skipped."""
    wb = openpyxl.load_workbook(path, read_only=True, data_only=True)
    try:
        ws = wb.worksheets[0]
        it = ws.iter_rows(values_only=True)
        try:
            raw_headers = next(it)
        except StopIteration:
            return [], []
        headers = [_clean_header(h, i) for i, h in enumerate(raw_headers)]
        rows: list[dict] = []
        for raw in it:
            if all(cell is None or str(cell).strip() == "" for cell in raw):
                continue
            rows.append({h: (raw[i] if i < len(raw) else None) for i, h in enumerate(headers)})
    finally:
        wb.close()
    return headers, rows


class FileSourceLoader:
    """Loads ``.csv`` and ``.xlsx`` files from ``source.path``."""

    def load(self, source: ExternalSource) -> tuple[list[str], list[dict]]:
        if not source.path:
            raise SourceLoadError(f"{source.file_name}: no path configured")
        path = Path(source.path)
        suffix = path.suffix.lower()
        try:
            if suffix == ".csv":
                return read_csv(path)
            if suffix in (".xlsx", ".xlsm"):
                return read_xlsx(path)
        except Exception as exc:
            # openpyxl surfaces corrupt workbooks as a grab-bag of exception types
            raise SourceLoadError(f"{path.name}: {exc}") from exc
        raise SourceLoadError(f"{path.name}: unsupported file type '{suffix}'")


# ── Registry ──────────────────────────────────────────────────────────────────

class SourceRegistry:
    """Ordered collection of sources; iteration order is join order."""

    def __init__(self, sources: list[ExternalSource] | None = None) -> None:
        self._sources: dict[str, ExternalSource] = {}
        for src in sources or []:
            self.add(src)

    def __iter__(self):
        return iter(list(self._sources.values()))

    def __len__(self) -> int:
        return len(self._sources)

    def get(self, source_id: str) -> Optional[ExternalSource]:
        return self._sources.get(source_id)

    def add(self, source: ExternalSource) -> ExternalSource:
        self._sources[source.source_id] = source
        return source

    def add_file(self, source_id: str, path, model_key: str = "", file_key: str = "") -> ExternalSource:
        path = Path(path)
        return self.add(ExternalSource(
            source_id=source_id,
            file_name=path.name,
            path=str(path),
            mapping=SourceMapping(model_key, file_key),
            is_dirty=True,
        ))

    def remove(self, source_id: str) -> None:
        self._sources.pop(source_id, None)

    def update_mapping(self, source_id: str, model_key: str | None = None,
                       file_key: str | None = None) -> ExternalSource:
        src = self._sources[source_id]
        src.mapping = SourceMapping(
            model_key if model_key is not None else src.mapping.model_key,
            file_key if file_key is not None else src.mapping.file_key,
        )
        src.is_dirty = True
        src.sync_status = SyncStatus.PENDING
        return src

    def refresh(self, loader: SourceLoader) -> dict[str, Optional[str]]:
        """
        Refetch every dirty source.

        Returns ``{source_id: error or None}`` for the sources attempted.
        A failure leaves the source dirty with status ``error``; it does not
        stop the loop.
        """
        outcome: dict[str, Optional[str]] = {}
        for src in self:
            if not src.is_dirty:
                continue
            try:
                headers, rows = loader.load(src)
            except Exception as exc:
                log.error("  Source %s failed: %s", src.source_id, exc)
                src.sync_status = SyncStatus.ERROR
                src.last_error = str(exc)
                outcome[src.source_id] = str(exc)
                continue
            src.headers = headers
            src.rows = rows
            src.is_dirty = False
            src.last_error = None
            src.sync_status = SyncStatus.PENDING
            log.info("  Source %s: %s (%d rows)", src.source_id, src.file_name, len(rows))
            outcome[src.source_id] = None
        return outcome

    def joinable(self) -> list[ExternalSource]:
        return [s for s in self if s.mapping.is_complete and s.last_error is None]


def classify_source(source: ExternalSource, stats: SourceStats | None) -> SyncStatus:
    """success: matches > 0 · warning: no matches / incomplete mapping · error: load failed."""
    if source.last_error:
        return SyncStatus.ERROR
    if not source.mapping.is_complete or stats is None:
        return SyncStatus.WARNING
    return SyncStatus.SUCCESS if stats.match_count > 0 else SyncStatus.WARNING
