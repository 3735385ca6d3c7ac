"""
schema.py — User-configurable projection of fused records.

Each SchemaEntry selects one column (``original_name``), optionally renames it
(``alias``) and coerces it to a declared type.  Several entries may map to the
same destination; the first non-empty value wins.

Date coercion keeps one compatibility guard: a coerced date whose year is
≤ 1970 is assumed to be a false positive (an ordinary number or code that
happened to parse) and the raw value is kept instead, unless the raw value
was literally zero.  Legitimate near-epoch dates are misclassified by this
rule; it is deliberately narrow and lives only in ``coerce_date``.
"""

from __future__ import annotations

import datetime as dt
import json
import logging
from typing import Iterable, Optional

from bim_fusion.config import (
    DATE_FORMATS,
    SPREADSHEET_EPOCH,
    SPREADSHEET_SERIAL_THRESHOLD,
    TRUTHY_STRINGS,
)
from bim_fusion.records import (
    Attributes,
    AttributeValue,
    SchemaEntry,
    SchemaType,
    is_empty,
    parse_float,
    stringify,
)

log = logging.getLogger(__name__)

_EPOCH = dt.datetime(1970, 1, 1)


# ── Date parsing ──────────────────────────────────────────────────────────────

def parse_date(text: str) -> Optional[dt.datetime]:
    """ISO-8601 first, then the common spreadsheet/export formats."""
    text = text.strip()
    if not text:
        return None
    try:
        parsed = dt.datetime.fromisoformat(text.replace("Z", "+00:00"))
        return parsed.replace(tzinfo=None) if parsed.tzinfo else parsed
    except ValueError:
        pass
    for fmt in DATE_FORMATS:
        try:
            return dt.datetime.strptime(text, fmt)
        except ValueError:
            continue
    return None


def _is_literal_zero(raw) -> bool:
    if isinstance(raw, bool):
        return False
    if isinstance(raw, (int, float)):
        return raw == 0
    return str(raw).strip() == "0"


def coerce_date(raw) -> AttributeValue:
    """Coerce *raw* to a datetime, or return *raw* unchanged when unsure."""
    if isinstance(raw, dt.datetime):
        return raw
    if isinstance(raw, dt.date):
        return dt.datetime(raw.year, raw.month, raw.day)

    numeric = None
    if isinstance(raw, (int, float)) and not isinstance(raw, bool):
        numeric = float(raw)
    elif isinstance(raw, str):
        try:
            numeric = float(raw.strip())
        except ValueError:
            numeric = None

    parsed: Optional[dt.datetime]
    try:
        if numeric is not None and numeric > SPREADSHEET_SERIAL_THRESHOLD:
            parsed = SPREADSHEET_EPOCH + dt.timedelta(days=numeric)
        elif isinstance(raw, (int, float)) and not isinstance(raw, bool):
            # bare numbers are millisecond timestamps
            parsed = _EPOCH + dt.timedelta(milliseconds=float(raw))
        else:
            parsed = parse_date(str(raw))
    except (OverflowError, ValueError):
        parsed = None

    if parsed is None:
        return raw
    if parsed.year <= 1970 and not _is_literal_zero(raw):
        return raw
    return parsed


# ── Type coercion ─────────────────────────────────────────────────────────────

def coerce_value(raw, type_: SchemaType) -> AttributeValue:
    """Coerce one raw value to *type_*.  Empty input always becomes None."""
    if is_empty(raw):
        return None
    if type_ == SchemaType.NUMBER:
        num = parse_float(raw)
        return num if num is not None else 0.0
    if type_ == SchemaType.DATE:
        return coerce_date(raw)
    if type_ == SchemaType.BOOLEAN:
        return str(raw).strip().lower() in TRUTHY_STRINGS
    if isinstance(raw, str):
        return raw
    return stringify(raw)


def infer_type(values: Iterable) -> SchemaType:
    """Guess a schema type from sample values (empties ignored)."""
    samples = [v for v in values if not is_empty(v)]
    if not samples:
        return SchemaType.TEXT
    if all(isinstance(v, bool) or str(v).strip().lower() in ("true", "false", "yes", "no")
           for v in samples):
        return SchemaType.BOOLEAN
    if all(isinstance(v, (dt.date, dt.datetime)) for v in samples):
        return SchemaType.DATE
    if all(not isinstance(v, bool) and _is_number(v) for v in samples):
        return SchemaType.NUMBER
    if all(isinstance(v, str) and parse_date(v) is not None for v in samples):
        return SchemaType.DATE
    return SchemaType.TEXT


def _is_number(value) -> bool:
    if isinstance(value, (int, float)):
        return True
    try:
        float(str(value).strip())
        return True
    except ValueError:
        return False


# ── Transformer ───────────────────────────────────────────────────────────────

class SchemaTransformer:
    """Projects and coerces fused records according to schema entries."""

    def apply(self, raw: Attributes, entries: list[SchemaEntry]) -> Attributes:
        out: Attributes = {}
        for entry in entries:
            if not entry.include:
                continue
            dest = entry.destination
            value = coerce_value(raw.get(entry.original_name), entry.type)
            if dest in out and out[dest] and is_empty(value):
                continue
            out[dest] = value
        return out

    @staticmethod
    def default_entries(
        columns_by_source: dict[str, list[str]],
        samples: dict[str, list] | None = None,
    ) -> list[SchemaEntry]:
        """
        One entry per (source, column) with no alias and everything included.

        When *samples* maps a column name to observed values, the entry's type
        is inferred from them; otherwise it defaults to text.
        """
        entries: list[SchemaEntry] = []
        seen: set[tuple[str, str]] = set()
        for source_name, columns in columns_by_source.items():
            for col in columns:
                if (source_name, col) in seen:
                    continue
                seen.add((source_name, col))
                type_ = infer_type(samples[col]) if samples and col in samples else SchemaType.TEXT
                entries.append(SchemaEntry(source_name, col, "", type_, True))
        return entries


# ── JSON round trip ──────────────────────────────────────────────────────────

def schema_from_json(data: list[dict]) -> list[SchemaEntry]:
    """Build entries from plain dicts (keys as written by ``schema_to_json``)."""
    entries: list[SchemaEntry] = []
    for i, item in enumerate(data):
        try:
            type_ = SchemaType(item.get("type", "text"))
        except ValueError:
            raise ValueError(f"schema[{i}]: unknown type {item.get('type')!r}") from None
        entries.append(SchemaEntry(
            source_name=item.get("sourceName", ""),
            original_name=item["originalName"],
            alias=item.get("alias") or "",
            type=type_,
            include=bool(item.get("include", True)),
        ))
    return entries


def schema_to_json(entries: list[SchemaEntry]) -> list[dict]:
    return [
        {
            "sourceName": e.source_name,
            "originalName": e.original_name,
            "alias": e.alias,
            "type": e.type.value,
            "include": e.include,
        }
        for e in entries
    ]


def load_schema_file(path) -> list[SchemaEntry]:
    with open(path, encoding="utf-8") as f:
        return schema_from_json(json.load(f))
