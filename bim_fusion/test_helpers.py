"""
test_helpers.py — In-memory ModelSource and sample data shared by the tests.
"""

from __future__ import annotations

import asyncio
from typing import Optional, Sequence

from bim_fusion.records import ElementRecord, MasterDataset


class FakeModelSource:
    """
    Dict-backed ModelSource.

    ``attribute_names`` / ``version_id`` are only present when the matching
    constructor argument is given, so capability detection sees a real gap.
    """

    def __init__(
        self,
        elements: dict[int, dict],
        names: list[str] | None = None,
        version: str | None = None,
        names_delay: float = 0.0,
    ) -> None:
        self.elements = elements
        self.bulk_calls: list[tuple[list[int], Optional[list[str]]]] = []
        self._names_delay = names_delay
        if names is not None:
            self._names = names
            self.attribute_names = self._attribute_names
        if version is not None:
            self._version = version
            self.version_id = self._version_id

    async def leaf_ids(self) -> list[int]:
        return list(self.elements)

    async def bulk_properties(
        self, ids: Sequence[int], names: Optional[Sequence[str]] = None,
    ) -> list[ElementRecord]:
        self.bulk_calls.append((list(ids), list(names) if names is not None else None))
        out = []
        for i in ids:
            if i not in self.elements:
                continue
            attrs = dict(self.elements[i])
            if names is not None:
                attrs = {k: v for k, v in attrs.items() if k in names}
            out.append(ElementRecord(i, str(self.elements[i].get("Name", "")), attrs))
        return out

    async def _attribute_names(self) -> list[str]:
        if self._names_delay:
            await asyncio.sleep(self._names_delay)
        return list(self._names)

    async def _version_id(self) -> Optional[str]:
        return self._version


class FailingModelSource:
    async def leaf_ids(self) -> list[int]:
        raise RuntimeError("instance tree not loaded")

    async def bulk_properties(self, ids, names=None):
        raise RuntimeError("instance tree not loaded")


SAMPLE_ELEMENTS = {
    1: {"Name": "Wall A", "Category": "Wall", "Cost": 100, "Material": "Steel frame", "Tag": "W-01"},
    2: {"Name": "Wall B", "Category": "Wall", "Cost": 200, "Material": "Concrete", "Tag": "W-02"},
    3: {"Name": "Door A", "Category": "Door", "Cost": 50, "Material": "Steel", "Tag": "D-01"},
}


def sample_model(**kwargs) -> FakeModelSource:
    return FakeModelSource({k: dict(v) for k, v in SAMPLE_ELEMENTS.items()}, **kwargs)


def sample_dataset() -> MasterDataset:
    return MasterDataset([
        ElementRecord(i, attrs["Name"], dict(attrs)) for i, attrs in SAMPLE_ELEMENTS.items()
    ])
