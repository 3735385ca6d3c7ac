"""
session.py — FusionSession: the object a dashboard holds on to.

Owns one model, its external sources, calculated columns and schema, and
the currently published MasterDataset.  Nothing here is module-level state;
every collaborator is injected.

    session = FusionSession(IfcModelSource.open("model.ifc"))
    session.add_source("cost.csv", model_key="Tag", file_key="Element ID")
    report  = asyncio.run(session.sync())
    result  = asyncio.run(session.aggregate(AggregationQuery(["Category"])))
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional, Sequence

from bim_fusion.aec_client import AecDataModelClient
from bim_fusion.aggregation import AggregationEngine, AggregationQuery
from bim_fusion.builder import DatasetStore, MasterDataBuilder
from bim_fusion.discovery import PropertyDiscoveryService, build_catalog, default_layers
from bim_fusion.formula import validate_calculations
from bim_fusion.model_source import ModelSource
from bim_fusion.records import (
    Calculation,
    ElementId,
    ExternalSource,
    FilterCondition,
    MasterDataset,
    SchemaEntry,
    SourceStats,
    SyncStatus,
)
from bim_fusion.sources import FileSourceLoader, SourceLoader, SourceRegistry, classify_source

log = logging.getLogger(__name__)


@dataclass
class SyncReport:
    dataset_size: int = 0
    stats: dict[str, SourceStats] = field(default_factory=dict)
    statuses: dict[str, SyncStatus] = field(default_factory=dict)
    source_errors: dict[str, str] = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class FusionSession:

    def __init__(
        self,
        model: Optional[ModelSource] = None,
        loader: SourceLoader | None = None,
        aec_client: AecDataModelClient | None = None,
        discovery: PropertyDiscoveryService | None = None,
    ) -> None:
        self.model = model
        self.loader = loader or FileSourceLoader()
        self.discovery = discovery or PropertyDiscoveryService(default_layers(aec_client))
        self.sources = SourceRegistry()
        self.calculations: list[Calculation] = []
        self.schema: list[SchemaEntry] = []
        self.store = DatasetStore()
        self._model_names: Optional[list[str]] = None
        self._catalog: Optional[list[str]] = None

    # ── Configuration ─────────────────────────────────────────────────────────

    def set_model(self, model: Optional[ModelSource]) -> None:
        """Swap the model; the published dataset and catalog no longer apply."""
        self.model = model
        self._model_names = None
        self._catalog = None
        self.store.publish(MasterDataset())
        for src in self.sources:
            src.sync_status = SyncStatus.PENDING

    def add_source(self, path, model_key: str = "", file_key: str = "",
                   source_id: str | None = None) -> ExternalSource:
        source_id = source_id or f"source-{len(self.sources) + 1}"
        self._catalog = None
        return self.sources.add_file(source_id, path, model_key, file_key)

    def remove_source(self, source_id: str) -> None:
        self.sources.remove(source_id)
        self._catalog = None

    def update_mapping(self, source_id: str, model_key: str | None = None,
                       file_key: str | None = None) -> ExternalSource:
        self._catalog = None
        return self.sources.update_mapping(source_id, model_key, file_key)

    def set_calculations(self, calculations: list[Calculation]) -> None:
        errors = validate_calculations(calculations)
        if errors:
            raise ValueError("; ".join(errors))
        self.calculations = list(calculations)
        self._catalog = None

    def set_schema(self, entries: list[SchemaEntry]) -> None:
        self.schema = list(entries)

    @property
    def dataset(self) -> MasterDataset:
        return self.store.snapshot

    # ── Discovery ─────────────────────────────────────────────────────────────

    async def discover(self) -> list[str]:
        """Model attributes ∪ source headers ∪ calculated columns, sorted."""
        if self._catalog is not None:
            return list(self._catalog)
        model_names = self._model_names
        if model_names is None:
            model_names = await self.discovery.discover(self.model)
            # an empty result is retried on the next call
            if not model_names:
                return build_catalog(model_names, self.sources, self.calculations)
            self._model_names = model_names
        self._catalog = build_catalog(model_names, self.sources, self.calculations)
        return list(self._catalog)

    async def unique_values(self, attribute: str) -> list[str]:
        if self.dataset:
            return AggregationEngine.unique_values(self.dataset, attribute)
        return await self.discovery.unique_values(self.model, attribute)

    # ── Sync ──────────────────────────────────────────────────────────────────

    async def sync(self) -> SyncReport:
        """
        Refresh dirty sources, rebuild, publish.

        The previous snapshot stays published when the build fails.
        """
        log.info("Refreshing %d source(s)", len(self.sources))
        outcome = await asyncio.to_thread(self.sources.refresh, self.loader)
        source_errors = {sid: err for sid, err in outcome.items() if err}

        builder = MasterDataBuilder(self.model)
        result = await builder.build(self.sources.joinable(), self.calculations, self.schema or None)

        statuses: dict[str, SyncStatus] = {}
        for src in self.sources:
            src.sync_status = classify_source(src, result.stats.get(src.source_id))
            statuses[src.source_id] = src.sync_status

        if not result.ok:
            log.error("Sync failed: %s", result.error)
            return SyncReport(0, result.stats, statuses, source_errors, result.error)

        self.store.publish(result.dataset)
        self._catalog = None
        log.info("Published %d record(s) (generation %d)", len(result.dataset), self.store.generation)
        return SyncReport(len(result.dataset), result.stats, statuses, source_errors)

    # ── Queries ───────────────────────────────────────────────────────────────

    async def aggregate(self, query: AggregationQuery, live: bool = False):
        """Cached path over the published dataset when there is one."""
        engine = AggregationEngine(self.model)
        return await engine.run(query, None if live else self.dataset)

    async def search_elements(self, filters: Sequence[FilterCondition]) -> list[ElementId]:
        return await AggregationEngine(self.model).search_elements(filters)
