"""
test_builder.py — MasterDataBuilder joins, calculations and schema.

Run:
    python -m bim_fusion.test_builder
"""

from __future__ import annotations

import asyncio

from bim_fusion.builder import DatasetStore, MasterDataBuilder, build_join_index, join_key
from bim_fusion.records import (
    Calculation,
    ElementRecord,
    ExternalSource,
    MasterDataset,
    SchemaEntry,
    SchemaType,
    SourceMapping,
)
from bim_fusion.test_helpers import FailingModelSource, FakeModelSource, sample_model


def _cost_sheet(**mapping) -> ExternalSource:
    return ExternalSource(
        source_id="cost",
        file_name="cost.csv",
        headers=["Element ID", "Unit Cost", "Supplier"],
        rows=[
            {"Element ID": " w-01 ", "Unit Cost": "12.5", "Supplier": "Acme"},
            {"Element ID": "D-01", "Unit Cost": "40", "Supplier": "DoorCo"},
            {"Element ID": "X-99", "Unit Cost": "1", "Supplier": "Nobody"},
        ],
        mapping=SourceMapping(**mapping) if mapping else SourceMapping("Tag", "Element ID"),
    )


def test_join_match_count_and_fields():
    result = asyncio.run(MasterDataBuilder(sample_model()).build([_cost_sheet()]))
    assert result.ok
    stats = result.stats["cost"]
    assert stats.match_count == 2
    assert stats.total_rows == 3
    assert stats.file_name == "cost.csv"

    wall = result.dataset.get(1)
    assert wall.attributes["Supplier"] == "Acme"
    assert wall.attributes["Unit Cost"] == "12.5"
    assert wall.attributes["Element ID"] == " w-01 "
    assert "Supplier" not in result.dataset.get(2).attributes
    assert result.dataset.get(3).attributes["Supplier"] == "DoorCo"
    print("  ✅  K matches, matched records carry every row field")


def test_bulk_fetch_requests_all_attributes():
    model = sample_model()
    asyncio.run(MasterDataBuilder(model).build())
    ids, names = model.bulk_calls[0]
    assert ids == [1, 2, 3]
    assert names is None
    print("  ✅  Builder bulk-fetches with no projection")


def test_incomplete_mapping_is_not_joined():
    src = _cost_sheet(model_key="Tag", file_key="")
    result = asyncio.run(MasterDataBuilder(sample_model()).build([src]))
    assert "cost" not in result.stats
    assert all("Supplier" not in r.attributes for r in result.dataset)
    print("  ✅  Half-mapped source skipped")


def test_later_duplicate_rows_win():
    src = _cost_sheet()
    src.rows.append({"Element ID": "W-01", "Unit Cost": "99", "Supplier": "Late"})
    assert build_join_index(src)["w-01"]["Supplier"] == "Late"
    result = asyncio.run(MasterDataBuilder(sample_model()).build([src]))
    assert result.dataset.get(1).attributes["Supplier"] == "Late"
    print("  ✅  Duplicate file keys: last row wins")


def test_join_key_normalisation():
    assert join_key("  AbC ") == "abc"
    assert join_key(None) == ""
    assert join_key(12) == "12"
    assert join_key(101.0) == "101"
    assert join_key(True) == "true"
    print("  ✅  join_key trims and lower-cases")


def test_float_model_keys_join_integer_sheet_values():
    model = FakeModelSource({7: {"Name": "Beam", "Mark": 101.0}})
    sheet = ExternalSource(
        source_id="marks",
        file_name="marks.csv",
        headers=["Mark No", "Grade"],
        rows=[{"Mark No": "101", "Grade": "S355"}],
        mapping=SourceMapping("Mark", "Mark No"),
    )
    result = asyncio.run(MasterDataBuilder(model).build([sheet]))
    assert result.stats["marks"].match_count == 1
    assert result.dataset.get(7).attributes["Grade"] == "S355"
    print("  ✅  101.0 in the model joins '101' in the sheet")


def test_calculations_then_schema():
    calcs = [Calculation("Total", "[Unit Cost] * 2"), Calculation("Bad", "[Cost] ** 2")]
    schema = [
        SchemaEntry("Model", "Category"),
        SchemaEntry("Calc", "Total", "Total Cost", SchemaType.NUMBER),
        SchemaEntry("Calc", "Bad"),
    ]
    result = asyncio.run(MasterDataBuilder(sample_model()).build([_cost_sheet()], calcs, schema))
    assert result.dataset.get(1).attributes == {"Category": "Wall", "Total Cost": 25.0, "Bad": None}
    # no row matched → Unit Cost missing → 0
    assert result.dataset.get(2).attributes["Total Cost"] == 0.0
    print("  ✅  Calculations evaluated before the schema projection")


def test_model_is_not_mutated():
    model = sample_model()
    asyncio.run(MasterDataBuilder(model).build([_cost_sheet()]))
    assert "Supplier" not in model.elements[1]
    print("  ✅  Source model attributes untouched")


def test_pipeline_errors_are_returned():
    no_model = asyncio.run(MasterDataBuilder(None).build())
    assert no_model.error == "No model loaded" and len(no_model.dataset) == 0

    broken = asyncio.run(MasterDataBuilder(FailingModelSource()).build())
    assert broken.error.startswith("Model hierarchy unavailable")

    empty = asyncio.run(MasterDataBuilder(FakeModelSource({})).build())
    assert empty.error == "Model hierarchy has no leaf elements"
    assert not empty.ok
    print("  ✅  Build failures surface as error strings")


def test_dataset_store_swaps_snapshots():
    store = DatasetStore()
    assert len(store.snapshot) == 0 and store.generation == 0
    old = store.snapshot
    new = MasterDataset([ElementRecord(1, "a", {"x": 1})])
    store.publish(new)
    assert store.snapshot is new and store.generation == 1
    assert len(old) == 0
    print("  ✅  publish swaps the snapshot reference")


def test_master_dataset_rejects_duplicate_ids():
    try:
        MasterDataset([ElementRecord(1), ElementRecord(1)])
    except ValueError:
        pass
    else:
        raise AssertionError("duplicate ids accepted")
    print("  ✅  Duplicate ids rejected")


def main():
    print("=" * 60)
    print("  Master data builder")
    print("=" * 60)
    print()

    test_join_match_count_and_fields()
    test_bulk_fetch_requests_all_attributes()
    test_incomplete_mapping_is_not_joined()
    test_later_duplicate_rows_win()
    test_join_key_normalisation()
    test_float_model_keys_join_integer_sheet_values()
    test_calculations_then_schema()
    test_model_is_not_mutated()
    test_pipeline_errors_are_returned()
    test_dataset_store_swaps_snapshots()
    test_master_dataset_rejects_duplicate_ids()

    print()
    print("=" * 60)
    print("  ALL BUILDER TESTS PASSED ✅")
    print("=" * 60)


if __name__ == "__main__":
    main()
