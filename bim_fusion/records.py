"""
records.py — Data model shared by discovery, fusion and aggregation.

Attribute bags are dynamically keyed, so every value is one of a closed set of
scalar variants (``AttributeValue``).  Code that consumes a value dispatches on
its runtime type through the helpers at the bottom of this module
(``stringify``, ``parse_float``, ``is_empty``) instead of guessing.
"""

from __future__ import annotations

import datetime as dt
import math
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterator, Optional, Union

from bim_fusion.config import UNDEFINED_VALUE

# ── Scalar variants ───────────────────────────────────────────────────────────

AttributeValue = Union[str, int, float, bool, dt.datetime, None]
Attributes = dict[str, AttributeValue]
ElementId = int


@dataclass
class ElementRecord:
    """One leaf element of the model hierarchy and its attribute bag."""
    id: ElementId
    name: str = ""
    attributes: Attributes = field(default_factory=dict)

    def get(self, name: str) -> AttributeValue:
        return self.attributes.get(name)

    def copy(self) -> "ElementRecord":
        return ElementRecord(self.id, self.name, dict(self.attributes))


# ── External tabular sources ──────────────────────────────────────────────────

class SyncStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


@dataclass
class SourceMapping:
    """Paired join keys: model attribute name ↔ file column name."""
    model_key: str = ""
    file_key: str = ""

    @property
    def is_complete(self) -> bool:
        return bool(self.model_key and self.file_key)


@dataclass
class ExternalSource:
    source_id: str
    file_name: str
    headers: list[str] = field(default_factory=list)
    rows: list[dict] = field(default_factory=list)
    mapping: SourceMapping = field(default_factory=SourceMapping)
    is_dirty: bool = True
    sync_status: SyncStatus = SyncStatus.PENDING
    path: Optional[str] = None
    last_error: Optional[str] = None


@dataclass
class SourceStats:
    """Join statistics emitted per source by one build."""
    match_count: int
    total_rows: int
    file_name: str


# ── Calculations & schema ─────────────────────────────────────────────────────

@dataclass
class Calculation:
    name: str
    formula: str


class SchemaType(str, Enum):
    TEXT = "text"
    NUMBER = "number"
    DATE = "date"
    BOOLEAN = "boolean"


@dataclass
class SchemaEntry:
    source_name: str
    original_name: str
    alias: str = ""
    type: SchemaType = SchemaType.TEXT
    include: bool = True

    @property
    def destination(self) -> str:
        return self.alias.strip() if self.alias and self.alias.strip() else self.original_name


# ── Filters ───────────────────────────────────────────────────────────────────

class FilterOperator(str, Enum):
    EQUALS = "equals"
    CONTAINS = "contains"
    NOT_EQUALS = "not_equals"


class LogicalOperator(str, Enum):
    AND = "AND"
    OR = "OR"


@dataclass
class FilterCondition:
    attribute: str
    operator: FilterOperator = FilterOperator.EQUALS
    value: str = ""


# ── Master dataset ────────────────────────────────────────────────────────────

class MasterDataset:
    """Ordered, immutable snapshot of fused records.

    Ids are unique; a duplicate id is rejected at construction so readers can
    index by id without ambiguity.
    """

    def __init__(self, records: list[ElementRecord] | tuple = ()) -> None:
        self._records: tuple[ElementRecord, ...] = tuple(records)
        self._by_id: dict[ElementId, ElementRecord] = {}
        for rec in self._records:
            if rec.id in self._by_id:
                raise ValueError(f"Duplicate element id in dataset: {rec.id}")
            self._by_id[rec.id] = rec

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[ElementRecord]:
        return iter(self._records)

    def __bool__(self) -> bool:
        return bool(self._records)

    def get(self, element_id: ElementId) -> Optional[ElementRecord]:
        return self._by_id.get(element_id)

    @property
    def ids(self) -> list[ElementId]:
        return [r.id for r in self._records]

    def columns(self) -> list[str]:
        """Every attribute name present on at least one record, sorted."""
        names: set[str] = set()
        for rec in self._records:
            names.update(rec.attributes)
        return sorted(names)

    def to_rows(self) -> list[dict]:
        """Flat ``{"id", "name", **attributes}`` rows for export."""
        return [{"id": r.id, "name": r.name, **r.attributes} for r in self._records]


# ── Aggregation output ────────────────────────────────────────────────────────

@dataclass
class GroupBucket:
    ids: list[ElementId] = field(default_factory=list)
    count: int = 0
    sum: float = 0.0


GroupKey = Union[str, tuple]
AggregationResult = dict[str, GroupBucket]
MultiAggregationResult = dict[tuple, list[ElementId]]


# ── Value helpers ─────────────────────────────────────────────────────────────

_LEADING_NUMBER_RE = re.compile(r"^\s*([+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?)")


def is_empty(value) -> bool:
    """True for the empty variants: missing, None or ''."""
    return value is None or (isinstance(value, str) and value == "")


def parse_float(value) -> Optional[float]:
    """
    Leading-number parse: ``"12.5 m²"`` → 12.5, ``"abc"`` → None.

    Booleans and dates are not numbers.  NaN/inf collapse to None.
    """
    if value is None or isinstance(value, (bool, dt.datetime, dt.date)):
        return None
    if isinstance(value, (int, float)):
        f = float(value)
    else:
        m = _LEADING_NUMBER_RE.match(str(value))
        if not m:
            return None
        f = float(m.group(1))
    if math.isnan(f) or math.isinf(f):
        return None
    return f


def stringify(value) -> str:
    """Canonical text form used for comparisons and group keys."""
    if value is None:
        return UNDEFINED_VALUE
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        if value.is_integer():
            return str(int(value))
        return repr(value)
    if isinstance(value, (dt.datetime, dt.date)):
        return value.isoformat()
    return str(value)
