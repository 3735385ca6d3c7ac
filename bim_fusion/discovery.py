"""
discovery.py — Property catalog discovery.

No single introspection call is guaranteed to exist on every backend, or to
finish in bounded time, so discovery walks an ordered chain of layers and
stops at the first one that yields names:

    1. AecMetadataLayer   — declared definitions from the cloud graph
    2. PropertyDbLayer    — raw attribute definitions (45 s budget)
    3. DeepScanLayer      — union of names over ≤ 100 leaf elements
    4. DirectSampleLayer  — fixed probe ids, for models without a hierarchy

Layers run one after another, never concurrently.  A layer that errors is
logged and treated as empty; ``discover`` itself never raises.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Iterable, Optional, Sequence

from bim_fusion.aec_client import AecDataModelClient, is_cloud_version
from bim_fusion.config import DEEP_SCAN_SAMPLE_SIZE, DIRECT_SAMPLE_IDS, PDB_TIMEOUT_SEC
from bim_fusion.model_source import ModelSource, has_capability
from bim_fusion.records import Calculation, ElementRecord, ExternalSource, stringify

log = logging.getLogger(__name__)


def _sorted_names(records: Iterable[ElementRecord]) -> list[str]:
    names: set[str] = set()
    for rec in records:
        names.update(k for k in rec.attributes if k)
    return sorted(names)


# ── Layers ────────────────────────────────────────────────────────────────────

class DiscoveryLayer:
    """One link in the chain: return names, or an empty list."""

    name = "layer"

    async def discover(self, model: ModelSource) -> list[str]:
        raise NotImplementedError


class AecMetadataLayer(DiscoveryLayer):
    name = "aec-data-model"

    def __init__(self, client: AecDataModelClient | None) -> None:
        self.client = client

    async def discover(self, model: ModelSource) -> list[str]:
        if self.client is None or not has_capability(model, "version_id"):
            return []
        version_id = await model.version_id()
        if not is_cloud_version(version_id):
            log.debug("  version id %r is not cloud hosted — skipping", version_id)
            return []
        return await asyncio.to_thread(self.client.property_names, version_id)


class PropertyDbLayer(DiscoveryLayer):
    """
    Enumerate the model's local attribute definitions.

    The call is awaited for at most *timeout_sec*; after that the layer
    resolves to an empty list and the underlying call is left to finish on
    its own (it may not support cancellation).
    """

    name = "property-db"

    def __init__(self, timeout_sec: float = PDB_TIMEOUT_SEC) -> None:
        self.timeout_sec = timeout_sec

    async def discover(self, model: ModelSource) -> list[str]:
        if not has_capability(model, "attribute_names"):
            return []
        task = asyncio.ensure_future(model.attribute_names())
        done, _ = await asyncio.wait({task}, timeout=self.timeout_sec)
        if task not in done:
            log.warning("  Property DB scan timed out after %.0fs", self.timeout_sec)
            task.add_done_callback(_consume_result)
            return []
        return sorted({n for n in task.result() if n})


def _consume_result(task: asyncio.Future) -> None:
    # a late failure must not surface as "exception was never retrieved"
    if not task.cancelled() and task.exception() is not None:
        log.debug("  Late property DB failure: %s", task.exception())


class DeepScanLayer(DiscoveryLayer):
    name = "deep-scan"

    def __init__(self, sample_size: int = DEEP_SCAN_SAMPLE_SIZE) -> None:
        self.sample_size = sample_size

    async def discover(self, model: ModelSource) -> list[str]:
        leaves = (await model.leaf_ids())[: self.sample_size]
        if not leaves:
            return []
        log.info("  Deep scan sampling %d nodes", len(leaves))
        return _sorted_names(await model.bulk_properties(leaves, None))


class DirectSampleLayer(DiscoveryLayer):
    name = "direct-sample"

    def __init__(self, sample_ids: Sequence[int] = DIRECT_SAMPLE_IDS) -> None:
        self.sample_ids = list(sample_ids)

    async def discover(self, model: ModelSource) -> list[str]:
        return _sorted_names(await model.bulk_properties(self.sample_ids, None))


def default_layers(client: AecDataModelClient | None = None) -> list[DiscoveryLayer]:
    return [
        AecMetadataLayer(client),
        PropertyDbLayer(),
        DeepScanLayer(),
        DirectSampleLayer(),
    ]


# ── Service ───────────────────────────────────────────────────────────────────

class PropertyDiscoveryService:
    """Drives the layer chain; first non-empty layer wins."""

    def __init__(self, layers: list[DiscoveryLayer] | None = None) -> None:
        self.layers = layers if layers is not None else default_layers()

    async def discover(self, model: Optional[ModelSource]) -> list[str]:
        if model is None:
            log.warning("Discovery failed: no model")
            return []

        for i, layer in enumerate(self.layers, 1):
            log.info("[%d/%d] Discovery layer: %s", i, len(self.layers), layer.name)
            try:
                names = await layer.discover(model)
            except Exception as exc:
                log.warning("  %s skipped: %s", layer.name, exc)
                continue
            if names:
                log.info("  %s returned %d properties", layer.name, len(names))
                return sorted(set(names))

        log.warning("Discovery found no properties on any layer")
        return []

    async def unique_values(self, model: Optional[ModelSource], attribute: str) -> list[str]:
        """Sorted distinct values of *attribute* across all leaf elements."""
        if model is None:
            return []
        try:
            ids = await model.leaf_ids()
            records = await model.bulk_properties(ids, [attribute])
        except Exception as exc:
            log.warning("Unique value scan for %r failed: %s", attribute, exc)
            return []
        values = {stringify(r.attributes[attribute]) for r in records if attribute in r.attributes}
        return sorted(values)


def build_catalog(
    model_names: Iterable[str],
    sources: Iterable[ExternalSource] = (),
    calculations: Iterable[Calculation] = (),
) -> list[str]:
    """Union of model attributes, source headers and calculated columns."""
    names: set[str] = {n for n in model_names if n}
    for src in sources:
        names.update(h for h in src.headers if h)
    for calc in calculations:
        if calc.name:
            names.add(calc.name)
    return sorted(names)
