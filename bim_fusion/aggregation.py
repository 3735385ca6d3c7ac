"""
aggregation.py — Group / filter / sum over model elements.

Two entry paths feed the same grouping core:

    live    AggregationEngine.aggregate_live(...)    — bulk-fetches only the
            attributes it needs from the model, for a scope or all leaves
    cached  AggregationEngine.aggregate_cached(...)  — reads a published
            MasterDataset; optional timeline cutoff and cross-filter scope

Because both paths end in ``group_single`` / ``group_multi`` with the same
filter evaluation, equivalent inputs give identical group → count maps.

Filter semantics: a missing attribute compares as the string "Undefined",
so a condition on "Undefined" deliberately matches missing data.
"""

from __future__ import annotations

import datetime as dt
import json
import logging
from dataclasses import dataclass, field
from typing import Collection, Iterable, Optional, Sequence, Union

from bim_fusion.config import PRESENCE_ATTRIBUTE, UNDEFINED_VALUE
from bim_fusion.model_source import ModelSource
from bim_fusion.records import (
    AggregationResult,
    Attributes,
    ElementId,
    ElementRecord,
    FilterCondition,
    FilterOperator,
    GroupBucket,
    LogicalOperator,
    MasterDataset,
    MultiAggregationResult,
    parse_float,
    stringify,
)
from bim_fusion.schema import parse_date

log = logging.getLogger(__name__)


@dataclass
class AggregationQuery:
    """What a chart, table or KPI widget asks for."""
    group_by: list[str]
    filters: list[FilterCondition] = field(default_factory=list)
    logical_operator: LogicalOperator = LogicalOperator.AND
    sum_attribute: Optional[str] = None
    scope: Optional[Collection[ElementId]] = None
    date_attribute: Optional[str] = None       # cached path only
    reference_date: Optional[dt.datetime] = None  # cached path only

    @property
    def is_multi(self) -> bool:
        return len(self.group_by) > 1


# ── Filters ───────────────────────────────────────────────────────────────────

def _compare_value(attrs: Attributes, attribute: str) -> str:
    value = attrs.get(attribute)
    return UNDEFINED_VALUE if value is None else stringify(value)


def _operator(value) -> Optional[FilterOperator]:
    try:
        return FilterOperator(value)
    except ValueError:
        return None


def condition_passes(attrs: Attributes, cond: FilterCondition) -> bool:
    op = _operator(cond.operator)
    if op is None:
        return True
    val = _compare_value(attrs, cond.attribute)
    target = str(cond.value)
    if op == FilterOperator.EQUALS:
        return val == target
    if op == FilterOperator.CONTAINS:
        return target.lower() in val.lower()
    if op == FilterOperator.NOT_EQUALS:
        return val != target
    return True


def passes_filters(
    attrs: Attributes,
    conditions: Sequence[FilterCondition],
    logical_operator: LogicalOperator = LogicalOperator.AND,
) -> bool:
    if not conditions:
        return True
    results = [condition_passes(attrs, c) for c in conditions]
    # anything other than OR combines with AND
    op = getattr(logical_operator, "value", logical_operator)
    if str(op).strip().upper() == LogicalOperator.OR.value:
        return any(results)
    return all(results)


# ── Grouping core ─────────────────────────────────────────────────────────────

def group_single(
    records: Iterable[ElementRecord],
    attribute: str,
    conditions: Sequence[FilterCondition] = (),
    logical_operator: LogicalOperator = LogicalOperator.AND,
    sum_attribute: Optional[str] = None,
) -> AggregationResult:
    """``value → GroupBucket(ids, count, sum)``; elements lacking the value are skipped."""
    result: AggregationResult = {}
    for rec in records:
        if not passes_filters(rec.attributes, conditions, logical_operator):
            continue
        value = rec.attributes.get(attribute)
        if value is None:
            continue
        bucket = result.setdefault(stringify(value), GroupBucket())
        bucket.ids.append(rec.id)
        bucket.count += 1
        if sum_attribute:
            num = parse_float(rec.attributes.get(sum_attribute))
            if num is not None:
                bucket.sum += num
    return result


def group_multi(
    records: Iterable[ElementRecord],
    attributes: Sequence[str],
    conditions: Sequence[FilterCondition] = (),
    logical_operator: LogicalOperator = LogicalOperator.AND,
) -> MultiAggregationResult:
    """``(v1, v2, …) → ids``; missing components become "Undefined"."""
    result: MultiAggregationResult = {}
    for rec in records:
        if not passes_filters(rec.attributes, conditions, logical_operator):
            continue
        key = tuple(_compare_value(rec.attributes, a) for a in attributes)
        result.setdefault(key, []).append(rec.id)
    return result


# ── Cached-path pre-filters ───────────────────────────────────────────────────

def _as_datetime(value) -> Optional[dt.datetime]:
    if isinstance(value, dt.datetime):
        # aware values compare as naive UTC
        if value.tzinfo is not None:
            return value.astimezone(dt.timezone.utc).replace(tzinfo=None)
        return value
    if isinstance(value, dt.date):
        return dt.datetime(value.year, value.month, value.day)
    if value is None or value == "":
        return None
    return parse_date(str(value))


def apply_date_cutoff(
    records: Iterable[ElementRecord], date_attribute: str, reference: dt.datetime | dt.date,
) -> list[ElementRecord]:
    """Keep records whose *date_attribute* parses to a date ≤ *reference*."""
    ref = _as_datetime(reference)
    kept = []
    for rec in records:
        when = _as_datetime(rec.attributes.get(date_attribute))
        if when is not None and ref is not None and when <= ref:
            kept.append(rec)
    return kept


def apply_scope(records: Iterable[ElementRecord], scope: Collection[ElementId]) -> list[ElementRecord]:
    scope_set = set(scope)
    return [r for r in records if r.id in scope_set]


# ── Engine ────────────────────────────────────────────────────────────────────

class AggregationEngine:
    """Live and cached aggregation over one model."""

    def __init__(self, model: Optional[ModelSource]) -> None:
        self.model = model

    # -- live path ---------------------------------------------------------------

    async def _target_ids(self, scope: Optional[Collection[ElementId]]) -> list[ElementId]:
        if scope is not None:
            return list(scope)
        return await self.model.leaf_ids()

    async def _fetch(self, scope, attributes: Iterable[Optional[str]]) -> list[ElementRecord]:
        ids = await self._target_ids(scope)
        if not ids:
            return []
        wanted: list[str] = []
        for a in [*attributes, PRESENCE_ATTRIBUTE]:
            if a and a not in wanted:
                wanted.append(a)
        return await self.model.bulk_properties(ids, wanted)

    async def aggregate_live(
        self,
        attribute: str,
        conditions: Sequence[FilterCondition] = (),
        logical_operator: LogicalOperator = LogicalOperator.AND,
        sum_attribute: Optional[str] = None,
        scope: Optional[Collection[ElementId]] = None,
    ) -> AggregationResult:
        if self.model is None:
            return {}
        try:
            records = await self._fetch(
                scope, [attribute, *(c.attribute for c in conditions), sum_attribute],
            )
        except Exception as exc:
            log.error("Bulk properties failed: %s", exc)
            return {}
        return group_single(records, attribute, conditions, logical_operator, sum_attribute)

    async def aggregate_live_multi(
        self,
        attributes: Sequence[str],
        conditions: Sequence[FilterCondition] = (),
        logical_operator: LogicalOperator = LogicalOperator.AND,
        scope: Optional[Collection[ElementId]] = None,
    ) -> MultiAggregationResult:
        if self.model is None or not attributes:
            return {}
        try:
            records = await self._fetch(scope, [*attributes, *(c.attribute for c in conditions)])
        except Exception as exc:
            log.error("Bulk properties failed: %s", exc)
            return {}
        return group_multi(records, attributes, conditions, logical_operator)

    # -- cached path -------------------------------------------------------------

    @staticmethod
    def _prefilter(
        dataset: MasterDataset,
        scope: Optional[Collection[ElementId]],
        date_attribute: Optional[str],
        reference_date,
    ) -> list[ElementRecord]:
        records = list(dataset)
        if date_attribute and reference_date is not None:
            records = apply_date_cutoff(records, date_attribute, reference_date)
        if scope is not None:
            records = apply_scope(records, scope)
        return records

    def aggregate_cached(
        self,
        dataset: MasterDataset,
        attribute: str,
        conditions: Sequence[FilterCondition] = (),
        logical_operator: LogicalOperator = LogicalOperator.AND,
        sum_attribute: Optional[str] = None,
        scope: Optional[Collection[ElementId]] = None,
        date_attribute: Optional[str] = None,
        reference_date=None,
    ) -> AggregationResult:
        records = self._prefilter(dataset, scope, date_attribute, reference_date)
        return group_single(records, attribute, conditions, logical_operator, sum_attribute)

    def aggregate_cached_multi(
        self,
        dataset: MasterDataset,
        attributes: Sequence[str],
        conditions: Sequence[FilterCondition] = (),
        logical_operator: LogicalOperator = LogicalOperator.AND,
        scope: Optional[Collection[ElementId]] = None,
        date_attribute: Optional[str] = None,
        reference_date=None,
    ) -> MultiAggregationResult:
        if not attributes:
            return {}
        records = self._prefilter(dataset, scope, date_attribute, reference_date)
        return group_multi(records, attributes, conditions, logical_operator)

    # -- dispatch ----------------------------------------------------------------

    async def run(
        self, query: AggregationQuery, dataset: MasterDataset | None = None,
    ) -> Union[AggregationResult, MultiAggregationResult]:
        """Cached path when a non-empty dataset is given, live path otherwise."""
        if not query.group_by:
            return {}
        if dataset:
            if query.is_multi:
                return self.aggregate_cached_multi(
                    dataset, query.group_by, query.filters, query.logical_operator,
                    query.scope, query.date_attribute, query.reference_date,
                )
            return self.aggregate_cached(
                dataset, query.group_by[0], query.filters, query.logical_operator,
                query.sum_attribute, query.scope, query.date_attribute, query.reference_date,
            )
        if query.is_multi:
            return await self.aggregate_live_multi(
                query.group_by, query.filters, query.logical_operator, query.scope,
            )
        return await self.aggregate_live(
            query.group_by[0], query.filters, query.logical_operator,
            query.sum_attribute, query.scope,
        )

    # -- lookups -----------------------------------------------------------------

    async def search_elements(self, filters: Sequence[FilterCondition]) -> list[ElementId]:
        """
        Ids of leaves satisfying every filter, with loose attribute matching.

        An attribute matches a filter when its name equals or contains the
        filter's attribute (case-insensitive); a ``category`` filter also
        matches any ``*category*`` or ``type`` attribute.  ``equals`` accepts a
        substring hit as well.
        """
        if self.model is None or not filters:
            return []
        try:
            ids = await self.model.leaf_ids()
            records = await self.model.bulk_properties(ids, None)
        except Exception as exc:
            log.error("Element search failed: %s", exc)
            return []
        return [r.id for r in records if all(_loose_match(r.attributes, f) for f in filters)]

    @staticmethod
    def unique_values(dataset: MasterDataset, attribute: str) -> list[str]:
        return sorted({stringify(r.attributes[attribute]) for r in dataset
                       if r.attributes.get(attribute) is not None})


def _loose_match(attrs: Attributes, f: FilterCondition) -> bool:
    target_attr = f.attribute.lower()
    target_val = str(f.value).lower()
    op = _operator(f.operator) or FilterOperator.EQUALS
    for name, value in attrs.items():
        pname = name.lower()
        name_hit = (pname == target_attr or target_attr in pname
                    or (target_attr == "category" and ("category" in pname or pname == "type")))
        if not name_hit:
            continue
        pval = stringify(value).lower()
        if op == FilterOperator.CONTAINS and target_val in pval:
            return True
        if op == FilterOperator.NOT_EQUALS and pval != target_val:
            return True
        if op == FilterOperator.EQUALS and (pval == target_val or target_val in pval):
            return True
    return False


# ── Table projection ─────────────────────────────────────────────────────────

def group_label(key) -> str:
    """Display label for a single or tuple group key."""
    if isinstance(key, tuple):
        return json.dumps(list(key), ensure_ascii=False)
    return str(key)


def table_rows(
    result: Union[AggregationResult, MultiAggregationResult],
    attributes: Sequence[str],
) -> list[dict]:
    """
    One row per group: the group's attribute values, ``count``,
    ``percentage`` (of all elements in the result, 1 decimal) and ``ids``.
    """
    rows: list[dict] = []
    for key, entry in result.items():
        ids = entry.ids if isinstance(entry, GroupBucket) else list(entry)
        values = key if isinstance(key, tuple) else (key,)
        row = {name: values[i] if i < len(values) else None for i, name in enumerate(attributes)}
        row["count"] = len(ids)
        row["ids"] = ids
        rows.append(row)

    total = sum(r["count"] for r in rows)
    for r in rows:
        r["percentage"] = round(r["count"] / (total or 1) * 100, 1)
    return rows
