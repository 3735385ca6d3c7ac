"""
charts.py — AggregationResult → chart series.

Colours are assigned by group index from a fixed 20-colour palette, so a
group keeps its colour as long as its position does.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Union

from bim_fusion.aggregation import group_label
from bim_fusion.config import CHART_COLORS
from bim_fusion.records import AggregationResult, GroupBucket, MultiAggregationResult

AGGREGATION_TYPES = ("count", "sum")
CHART_TYPES = ("bar", "pie", "line")


@dataclass
class ChartSeries:
    labels: list[str]
    values: list[float]
    colors: list[str]
    ids_by_label: dict[str, list[int]] = field(default_factory=dict)
    dataset_label: str = "Count"
    border_width: int = 1


def chart_series(
    result: Union[AggregationResult, MultiAggregationResult],
    aggregation_type: str = "count",
    chart_type: str = "bar",
) -> ChartSeries:
    """
    Sum is plotted only when asked for and the result carries sums
    (multi-attribute results never do); otherwise the group counts.
    """
    if aggregation_type not in AGGREGATION_TYPES:
        raise ValueError(f"Unknown aggregation type: {aggregation_type!r}")
    if chart_type not in CHART_TYPES:
        raise ValueError(f"Unknown chart type: {chart_type!r}")

    entries = list(result.items())
    use_sum = (
        aggregation_type == "sum"
        and bool(entries)
        and isinstance(entries[0][1], GroupBucket)
    )

    labels, values, ids_by_label = [], [], {}
    for key, entry in entries:
        label = group_label(key)
        ids = entry.ids if isinstance(entry, GroupBucket) else list(entry)
        labels.append(label)
        values.append(entry.sum if use_sum else len(ids))
        ids_by_label[label] = ids

    return ChartSeries(
        labels=labels,
        values=values,
        colors=[CHART_COLORS[i % len(CHART_COLORS)] for i in range(len(labels))],
        ids_by_label=ids_by_label,
        dataset_label="Total" if use_sum else "Count",
        border_width=2 if chart_type == "pie" else 1,
    )
