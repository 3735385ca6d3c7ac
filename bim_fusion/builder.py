"""
builder.py — MasterDataBuilder: one explicit sync → one fused dataset.

    leaf ids ──▶ bulk fetch (all attributes) ──▶ join external sources
             ──▶ calculated columns ──▶ schema ──▶ MasterDataset

The build never raises for data problems.  A missing model or hierarchy is
reported through ``BuildResult.error``; per-record calculation failures
become None values.

``DatasetStore`` holds the published snapshot.  A build is assembled in full
before ``publish`` swaps the reference, so readers see either the old
dataset or the new one, never a mix.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from bim_fusion.formula import apply_calculations
from bim_fusion.model_source import ModelSource
from bim_fusion.records import (
    Calculation,
    ElementRecord,
    ExternalSource,
    MasterDataset,
    SchemaEntry,
    SourceStats,
    stringify,
)
from bim_fusion.schema import SchemaTransformer

log = logging.getLogger(__name__)


@dataclass
class BuildResult:
    dataset: MasterDataset
    stats: dict[str, SourceStats] = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def join_key(value) -> str:
    """Join values compare lower-cased and trimmed."""
    return "" if value is None else stringify(value).strip().lower()


def build_join_index(source: ExternalSource) -> dict[str, dict]:
    """``join_key(row[file_key]) → row``; later duplicate rows win."""
    index: dict[str, dict] = {}
    file_key = source.mapping.file_key
    for row in source.rows:
        key = join_key(row.get(file_key))
        if key:
            index[key] = row
    return index


def _dedupe(ids: list) -> list:
    seen: set = set()
    out = []
    for i in ids:
        if i not in seen:
            seen.add(i)
            out.append(i)
    return out


class MasterDataBuilder:
    """Builds a MasterDataset from a model plus external sources."""

    def __init__(self, model: Optional[ModelSource], transformer: SchemaTransformer | None = None) -> None:
        self.model = model
        self.transformer = transformer or SchemaTransformer()

    async def build(
        self,
        sources: list[ExternalSource] | None = None,
        calculations: list[Calculation] | None = None,
        schema: list[SchemaEntry] | None = None,
    ) -> BuildResult:
        sources = sources or []
        calculations = calculations or []

        if self.model is None:
            return BuildResult(MasterDataset(), error="No model loaded")

        # 1. Leaf ids
        try:
            ids = _dedupe(await self.model.leaf_ids())
        except Exception as exc:
            log.error("Hierarchy unavailable: %s", exc)
            return BuildResult(MasterDataset(), error=f"Model hierarchy unavailable: {exc}")
        if not ids:
            return BuildResult(MasterDataset(), error="Model hierarchy has no leaf elements")

        # 2. Bulk fetch, no projection
        try:
            fetched = await self.model.bulk_properties(ids, None)
        except Exception as exc:
            log.error("Bulk property fetch failed: %s", exc)
            return BuildResult(MasterDataset(), error=f"Property fetch failed: {exc}")

        records: list[ElementRecord] = []
        seen: set = set()
        for rec in fetched:
            if rec.id in seen:
                continue
            seen.add(rec.id)
            records.append(rec.copy())
        log.info("Fetched %d element(s)", len(records))

        # 3. Joins, one index per source per build
        stats: dict[str, SourceStats] = {}
        for src in sources:
            if not src.mapping.is_complete:
                continue
            index = build_join_index(src)
            model_key = src.mapping.model_key
            matches = 0
            for rec in records:
                row = index.get(join_key(rec.attributes.get(model_key)))
                if row is None:
                    continue
                rec.attributes.update(row)
                matches += 1
            stats[src.source_id] = SourceStats(matches, len(src.rows), src.file_name)
            log.info("  %s: %d/%d rows matched", src.file_name, matches, len(src.rows))

        # 4–5. Calculations, then schema
        for rec in records:
            apply_calculations(rec.attributes, calculations)
            if schema:
                rec.attributes = self.transformer.apply(rec.attributes, schema)

        return BuildResult(MasterDataset(records), stats)


class DatasetStore:
    """Holds the currently published snapshot; single writer."""

    def __init__(self) -> None:
        self._snapshot = MasterDataset()
        self.generation = 0

    @property
    def snapshot(self) -> MasterDataset:
        return self._snapshot

    def publish(self, dataset: MasterDataset) -> None:
        self._snapshot = dataset
        self.generation += 1
