"""
parser.py - Load and dump mapping configuration JSON.

Keys are snake_case:

    {
      "version": "1.0",
      "unmapped_table_behavior": "strict",
      "mappings": [
        {
          "id": "users-to-customers",
          "source_table": "User",
          "target_table": "Customer",
          "direction": "pull",
          "pk_mapping": {"source_column": "Id", "target_column": "CustomerId"},
          "column_mappings": [
            {"source": "FullName", "target": "Name"},
            {"target": "Source", "transform": "constant", "value": "app"},
            {"target": "Email", "transform": "expression", "expression": "lower(Email)"}
          ],
          "excluded_columns": ["PasswordHash"],
          "filter": "Active",
          "sync_tracking": {"enabled": true, "strategy": "hash"}
        }
      ]
    }
"""

import json
from typing import Any, Callable, TypeVar

from tablesync.errors import ValidationError
from tablesync.mapping.config import (
    ColumnMapping,
    MappingConfig,
    MappingDefinition,
    PkMapping,
    SyncDirection,
    SyncTrackingConfig,
    TargetConfig,
    TrackingStrategy,
    TransformType,
    UnmappedTableBehavior,
)

E = TypeVar("E")

# Older configuration files call expression transforms "lql"
_TRANSFORM_ALIASES = {"lql": TransformType.EXPRESSION}


def _enum(enum_type: Callable[[str], E], raw: Any, field: str, default: E) -> E:
    if raw is None:
        return default
    try:
        return enum_type(str(raw).lower())
    except ValueError:
        raise ValidationError(f"Invalid value for {field}", field=field, value=raw) from None


def _require(data: dict, key: str, context: str) -> Any:
    value = data.get(key)
    if value in (None, ""):
        raise ValidationError(f"{context} is missing '{key}'", field=key)
    return value


def _parse_column_mapping(data: dict) -> ColumnMapping:
    raw_transform = data.get("transform")
    if isinstance(raw_transform, str) and raw_transform.lower() in _TRANSFORM_ALIASES:
        transform = _TRANSFORM_ALIASES[raw_transform.lower()]
    else:
        transform = _enum(TransformType, raw_transform, "transform", TransformType.NONE)
    expression = data.get("expression", data.get("lql"))
    if transform == TransformType.EXPRESSION and not expression:
        raise ValidationError("Expression transform requires 'expression'", field="expression")
    return ColumnMapping(
        target=_require(data, "target", "column mapping"),
        source=data.get("source"),
        transform=transform,
        value=data.get("value"),
        expression=expression,
    )


def _parse_filter(raw: Any) -> str | None:
    if isinstance(raw, dict):
        return raw.get("expression", raw.get("lql"))
    return raw


def _parse_mapping(data: dict) -> MappingDefinition:
    mapping_id = _require(data, "id", "mapping")
    pk = data.get("pk_mapping")
    tracking = data.get("sync_tracking") or {}
    targets = tuple(
        TargetConfig(
            table=_require(t, "table", f"target of mapping {mapping_id}"),
            column_mappings=tuple(_parse_column_mapping(c) for c in t.get("column_mappings", [])),
        )
        for t in data.get("targets", [])
    )
    return MappingDefinition(
        id=mapping_id,
        source_table=_require(data, "source_table", f"mapping {mapping_id}"),
        target_table=data.get("target_table"),
        direction=_enum(SyncDirection, data.get("direction"), "direction", SyncDirection.BOTH),
        enabled=bool(data.get("enabled", True)),
        pk_mapping=PkMapping(
            source_column=_require(pk, "source_column", "pk_mapping"),
            target_column=_require(pk, "target_column", "pk_mapping"),
        ) if pk else None,
        column_mappings=tuple(_parse_column_mapping(c) for c in data.get("column_mappings", [])),
        excluded_columns=tuple(data.get("excluded_columns", [])),
        filter=_parse_filter(data.get("filter")),
        sync_tracking=SyncTrackingConfig(
            enabled=bool(tracking.get("enabled", True)),
            strategy=_enum(TrackingStrategy, tracking.get("strategy"), "strategy", TrackingStrategy.VERSION),
            tracking_column=tracking.get("tracking_column"),
        ),
        targets=targets,
    )


def parse_mapping_config(data: dict) -> MappingConfig:
    """
    Build a MappingConfig from decoded JSON.

    Raises:
        ValidationError: If a required key is missing, an enum value is
            unknown, or two mappings share an id
    """
    if not isinstance(data, dict):
        raise ValidationError("Mapping configuration must be a JSON object")
    mappings = tuple(_parse_mapping(m) for m in data.get("mappings", []))
    seen: set[str] = set()
    for mapping in mappings:
        if mapping.id in seen:
            raise ValidationError("Duplicate mapping id", field="id", value=mapping.id)
        seen.add(mapping.id)
    return MappingConfig(
        version=str(data.get("version", "1.0")),
        unmapped_table_behavior=_enum(
            UnmappedTableBehavior,
            data.get("unmapped_table_behavior"),
            "unmapped_table_behavior",
            UnmappedTableBehavior.PASSTHROUGH,
        ),
        mappings=mappings,
    )


def load_mapping_config(text: str) -> MappingConfig:
    try:
        data = json.loads(text)
    except ValueError as e:
        raise ValidationError(f"Mapping configuration is not valid JSON: {e}") from e
    return parse_mapping_config(data)


def load_mapping_file(path: str) -> MappingConfig:
    with open(path, "r", encoding="utf-8") as f:
        return load_mapping_config(f.read())


def _dump_column(c: ColumnMapping) -> dict:
    out: dict[str, Any] = {"target": c.target}
    if c.source is not None:
        out["source"] = c.source
    if c.transform != TransformType.NONE:
        out["transform"] = c.transform.value
    if c.transform == TransformType.CONSTANT:
        out["value"] = c.value
    if c.expression is not None:
        out["expression"] = c.expression
    return out


def dump_mapping_config(config: MappingConfig) -> str:
    """Serialize a MappingConfig back to JSON text."""
    mappings = []
    for m in config.mappings:
        item: dict[str, Any] = {
            "id": m.id,
            "source_table": m.source_table,
            "direction": m.direction.value,
            "enabled": m.enabled,
        }
        if m.target_table is not None:
            item["target_table"] = m.target_table
        if m.pk_mapping is not None:
            item["pk_mapping"] = {
                "source_column": m.pk_mapping.source_column,
                "target_column": m.pk_mapping.target_column,
            }
        if m.column_mappings:
            item["column_mappings"] = [_dump_column(c) for c in m.column_mappings]
        if m.excluded_columns:
            item["excluded_columns"] = list(m.excluded_columns)
        if m.filter is not None:
            item["filter"] = m.filter
        item["sync_tracking"] = {
            "enabled": m.sync_tracking.enabled,
            "strategy": m.sync_tracking.strategy.value,
        }
        if m.sync_tracking.tracking_column is not None:
            item["sync_tracking"]["tracking_column"] = m.sync_tracking.tracking_column
        if m.targets:
            item["targets"] = [
                {"table": t.table, "column_mappings": [_dump_column(c) for c in t.column_mappings]}
                for t in m.targets
            ]
        mappings.append(item)
    return json.dumps(
        {
            "version": config.version,
            "unmapped_table_behavior": config.unmapped_table_behavior.value,
            "mappings": mappings,
        },
        indent=2,
    )
