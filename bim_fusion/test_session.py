"""
test_session.py — FusionSession end to end: sources → sync → aggregate.

Run:
    python -m bim_fusion.test_session
"""

from __future__ import annotations

import asyncio
import tempfile
from pathlib import Path
from unittest.mock import MagicMock

from bim_fusion.aggregation import AggregationQuery
from bim_fusion.discovery import PropertyDiscoveryService
from bim_fusion.records import Calculation, SchemaEntry, SchemaType, SyncStatus
from bim_fusion.session import FusionSession
from bim_fusion.test_helpers import FailingModelSource, sample_model


class _CountingDiscovery(PropertyDiscoveryService):
    def __init__(self) -> None:
        super().__init__([])
        self.calls = 0

    async def discover(self, model):
        self.calls += 1
        return ["Category", "Tag"]


class _SlowStartDiscovery(PropertyDiscoveryService):
    """First call times out with nothing; later calls find the attributes."""

    def __init__(self) -> None:
        super().__init__([])
        self.calls = 0

    async def discover(self, model):
        self.calls += 1
        return [] if self.calls == 1 else ["Category", "Tag"]


def _write_cost_csv(folder: Path) -> Path:
    path = folder / "cost.csv"
    path.write_text("Element ID,Unit Cost\nw-01,10\nD-01,4\nZZ,1\n", encoding="utf-8")
    return path


def test_sync_publishes_and_classifies():
    with tempfile.TemporaryDirectory() as tmp:
        cost = _write_cost_csv(Path(tmp))
        session = FusionSession(sample_model(), discovery=_CountingDiscovery())
        session.add_source(cost, "Tag", "Element ID", source_id="cost")
        session.add_source(cost, "Tag", "", source_id="half")
        session.add_source(Path(tmp) / "missing.csv", "Tag", "Element ID", source_id="gone")
        session.set_calculations([Calculation("Total", "[Unit Cost] * [Cost]")])

        report = asyncio.run(session.sync())

    assert report.ok and report.dataset_size == 3
    assert report.statuses == {
        "cost": SyncStatus.SUCCESS,
        "half": SyncStatus.WARNING,
        "gone": SyncStatus.ERROR,
    }
    assert report.stats["cost"].match_count == 2
    assert "gone" in report.source_errors
    assert session.dataset.get(1).attributes["Total"] == 1000.0
    assert session.dataset.get(2).attributes["Total"] == 0.0
    assert session.store.generation == 1
    print("  ✅  sync(): publish + success / warning / error per source")


def test_aggregate_uses_published_dataset():
    model = sample_model()
    session = FusionSession(model, discovery=_CountingDiscovery())
    query = AggregationQuery(["Category"], sum_attribute="Cost")

    live = asyncio.run(session.aggregate(query))
    live_calls = len(model.bulk_calls)
    assert live_calls == 1

    asyncio.run(session.sync())
    after_sync = len(model.bulk_calls)
    cached = asyncio.run(session.aggregate(query))
    assert len(model.bulk_calls) == after_sync
    assert cached == live

    forced = asyncio.run(session.aggregate(query, live=True))
    assert len(model.bulk_calls) == after_sync + 1
    assert forced == cached
    print("  ✅  Cached path once a dataset is published")


def test_schema_applied_on_sync():
    session = FusionSession(sample_model(), discovery=_CountingDiscovery())
    session.set_schema([
        SchemaEntry("Model", "Category", "Kind"),
        SchemaEntry("Model", "Cost", type=SchemaType.NUMBER),
    ])
    asyncio.run(session.sync())
    assert session.dataset.get(3).attributes == {"Kind": "Door", "Cost": 50.0}
    result = asyncio.run(session.aggregate(AggregationQuery(["Kind"])))
    assert sorted(result) == ["Door", "Wall"]
    print("  ✅  Schema aliases visible to aggregation")


def test_catalog_cache_and_invalidation():
    discovery = _CountingDiscovery()
    with tempfile.TemporaryDirectory() as tmp:
        cost = _write_cost_csv(Path(tmp))
        session = FusionSession(sample_model(), discovery=discovery)
        session.add_source(cost, "Tag", "Element ID", source_id="cost")
        session.set_calculations([Calculation("Total", "[Unit Cost]")])

        assert asyncio.run(session.discover()) == ["Category", "Tag", "Total"]
        asyncio.run(session.sync())
        catalog = asyncio.run(session.discover())

    assert catalog == ["Category", "Element ID", "Tag", "Total", "Unit Cost"]
    assert discovery.calls == 1

    session.update_mapping("cost", model_key="Name")
    assert asyncio.run(session.discover()) == catalog
    assert discovery.calls == 1

    session.set_model(sample_model())
    asyncio.run(session.discover())
    assert discovery.calls == 2
    assert len(session.dataset) == 0
    print("  ✅  Catalog cached; model swap re-runs discovery")


def test_failed_sync_keeps_previous_snapshot():
    session = FusionSession(sample_model(), discovery=_CountingDiscovery())
    asyncio.run(session.sync())
    published = session.dataset

    session.model = FailingModelSource()
    report = asyncio.run(session.sync())
    assert not report.ok
    assert report.error.startswith("Model hierarchy unavailable")
    assert session.dataset is published

    session.set_model(None)
    assert asyncio.run(session.sync()).error == "No model loaded"
    print("  ✅  Failed sync leaves the last good dataset published")


def test_empty_discovery_is_retried():
    discovery = _SlowStartDiscovery()
    session = FusionSession(sample_model(), discovery=discovery)
    assert asyncio.run(session.discover()) == []
    assert asyncio.run(session.discover()) == ["Category", "Tag"]
    assert asyncio.run(session.discover()) == ["Category", "Tag"]
    assert discovery.calls == 2
    print("  ✅  Empty discovery result is not cached")


def test_sync_survives_loader_exception():
    loader = MagicMock()

    def _load(src):
        if src.source_id == "bad":
            raise OSError("connection reset")
        return ["Element ID", "Unit Cost"], [{"Element ID": "W-01", "Unit Cost": "10"}]

    loader.load.side_effect = _load
    session = FusionSession(sample_model(), loader=loader, discovery=_CountingDiscovery())
    session.add_source("bad.csv", "Tag", "Element ID", source_id="bad")
    session.add_source("good.csv", "Tag", "Element ID", source_id="good")
    report = asyncio.run(session.sync())

    assert report.ok
    assert report.source_errors == {"bad": "connection reset"}
    assert report.statuses == {"bad": SyncStatus.ERROR, "good": SyncStatus.SUCCESS}
    assert session.dataset.get(1).attributes["Unit Cost"] == "10"
    print("  ✅  One source raising OSError does not abort the sync")


def test_invalid_calculations_rejected():
    session = FusionSession(sample_model())
    try:
        session.set_calculations([Calculation("A", "1"), Calculation("A", "2")])
    except ValueError as exc:
        assert "duplicate" in str(exc)
    else:
        raise AssertionError("duplicate calculation accepted")
    assert session.calculations == []
    print("  ✅  Invalid calculation list → ValueError")


def test_unique_values_and_search():
    session = FusionSession(sample_model(), discovery=PropertyDiscoveryService([]))
    assert asyncio.run(session.unique_values("Material")) == ["Concrete", "Steel", "Steel frame"]
    asyncio.run(session.sync())
    assert asyncio.run(session.unique_values("Category")) == ["Door", "Wall"]
    assert asyncio.run(session.search_elements([])) == []
    print("  ✅  unique_values live before sync, cached after")


def main():
    print("=" * 60)
    print("  Fusion session")
    print("=" * 60)
    print()

    test_sync_publishes_and_classifies()
    test_aggregate_uses_published_dataset()
    test_schema_applied_on_sync()
    test_catalog_cache_and_invalidation()
    test_failed_sync_keeps_previous_snapshot()
    test_empty_discovery_is_retried()
    test_sync_survives_loader_exception()
    test_invalid_calculations_rejected()
    test_unique_values_and_search()

    print()
    print("=" * 60)
    print("  ALL SESSION TESTS PASSED ✅")
    print("=" * 60)


if __name__ == "__main__":
    main()
