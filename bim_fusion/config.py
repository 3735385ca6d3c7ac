"""
config.py — Shared constants and defaults for the fusion engine.
"""

import datetime as dt
import os
from pathlib import Path

__version__ = "1.0.0"

# ── Paths ─────────────────────────────────────────────────────────────────────

PACKAGE_DIR = Path(__file__).resolve().parent
REPO_ROOT = PACKAGE_DIR.parent

# ── Property discovery ────────────────────────────────────────────────────────

PDB_TIMEOUT_SEC = 45.0            # property-database enumeration budget
DEEP_SCAN_SAMPLE_SIZE = 100       # leaves bulk-fetched by the deep scan
DIRECT_SAMPLE_IDS = (1, 2, 3, 4, 5, 10, 20, 50, 100, 200, 500)

# ── AEC Data Model (GraphQL) ─────────────────────────────────────────────────

AEC_GRAPHQL_URL = os.environ.get(
    "AEC_GRAPHQL_URL",
    "https://developer.api.autodesk.com/aecdatamodel/v1/graphql",
)
APS_TOKEN_ENV = "APS_ACCESS_TOKEN"
AEC_TIMEOUT_SEC = 30
AEC_PAGE_LIMIT = 500

# Version ids hosted in the enterprise cloud; anything else skips layer 1
AEC_VERSION_PREFIXES = (
    "urn:adsk.wipprod:fs.file:vf.",
    "urn:adsk.wipprod:dm.lineage:",
)

# ── Aggregation ──────────────────────────────────────────────────────────────

PRESENCE_ATTRIBUTE = "Name"       # always requested so every element reports back
UNDEFINED_VALUE = "Undefined"     # stand-in for a missing attribute in filters/keys

# ── Schema coercion ──────────────────────────────────────────────────────────

SPREADSHEET_EPOCH = dt.datetime(1899, 12, 30)
SPREADSHEET_SERIAL_THRESHOLD = 30000
TRUTHY_STRINGS = {"true", "1", "yes"}

DATE_FORMATS = [
    "%m/%d/%Y",
    "%m/%d/%Y %H:%M",
    "%m/%d/%Y %I:%M:%S %p",
    "%Y/%m/%d",
    "%d.%m.%Y",
    "%d %b %Y",
    "%d %B %Y",
    "%b %d, %Y",
    "%B %d, %Y",
]

# ── Chart colours (cycled by group index) ────────────────────────────────────

CHART_COLORS = [
    "#1db954", "#2e77d0", "#8b5cf6", "#ec4899", "#f59e0b",
    "#10b981", "#3b82f6", "#6366f1", "#a855f7", "#d946ef",
    "#ef4444", "#f97316", "#eab308", "#84cc16", "#06b6d4",
    "#14b8a6", "#f43f5e", "#8b5cf6", "#facc15", "#64748b",
]
