"""
bim_fusion — Model-property fusion and aggregation for BIM dashboards.

Brings together:
  - Layered property discovery (AEC Data Model → property DB → deep scan →
    direct sample), first non-empty layer wins
  - MasterDataBuilder: joins external CSV/XLSX sheets onto model elements,
    evaluates calculated columns, applies a typed schema
  - AggregationEngine: group / filter / sum on the live model or on the
    published dataset, plus table and chart projections

Usage:
    from bim_fusion import FusionSession, IfcModelSource, AggregationQuery
"""

from bim_fusion.aggregation import AggregationEngine, AggregationQuery, table_rows
from bim_fusion.builder import MasterDataBuilder
from bim_fusion.charts import chart_series
from bim_fusion.config import __version__
from bim_fusion.discovery import PropertyDiscoveryService
from bim_fusion.model_source import IfcModelSource
from bim_fusion.schema import SchemaTransformer
from bim_fusion.session import FusionSession, SyncReport

__all__ = [
    "__version__",
    "AggregationEngine",
    "AggregationQuery",
    "FusionSession",
    "IfcModelSource",
    "MasterDataBuilder",
    "PropertyDiscoveryService",
    "SchemaTransformer",
    "SyncReport",
    "chart_series",
    "table_rows",
]
