"""
engine.py - Transform change entries across schemas.

The mapping engine turns one source change into zero or more target
writes. Unmapped tables are either passed through unchanged or
skipped, depending on the configured policy.
"""

import logging
from dataclasses import dataclass, field

from tablesync.errors import ValidationError
from tablesync.log.entries import ChangeLogEntry, Delete, Insert, Row, Scalar, Update
from tablesync.mapping.config import (
    ColumnMapping,
    MappingConfig,
    MappingDefinition,
    SyncDirection,
    TransformType,
    UnmappedTableBehavior,
)
from tablesync.mapping.expressions import evaluate, matches_filter

logger = logging.getLogger("tablesync.mapping")


@dataclass(frozen=True)
class MappedEntry:
    """
    One write against a target table.

    payload is None for deletes.
    """
    table_name: str
    pk_column: str
    pk: Scalar
    payload: Row | None
    mapping_id: str

    @classmethod
    def identity(cls, entry: ChangeLogEntry) -> "MappedEntry":
        return cls(
            table_name=entry.table_name,
            pk_column=entry.pk_column,
            pk=entry.pk,
            payload=entry.payload,
            mapping_id=f"identity-{entry.table_name}",
        )

    def to_entry(self, source: ChangeLogEntry) -> ChangeLogEntry:
        """Turn this write back into a change entry stamped like its source entry."""
        if self.payload is None:
            operation = Delete()
        else:
            payload = dict(self.payload)
            payload.setdefault(self.pk_column, self.pk)
            operation = Insert(payload) if isinstance(source.operation, Insert) else Update(payload)
        return ChangeLogEntry(
            version=source.version,
            table_name=self.table_name,
            pk_value={self.pk_column: self.pk},
            operation=operation,
            origin=source.origin,
            timestamp=source.timestamp,
        )


@dataclass
class MappingResult:
    mapped: list[MappedEntry] = field(default_factory=list)
    skip_reason: str | None = None
    mapping: MappingDefinition | None = None


class MappingEngine:
    """Applies a MappingConfig to change entries."""

    def __init__(self, config: MappingConfig) -> None:
        self._config = config

    @property
    def config(self) -> MappingConfig:
        return self._config

    def map_entry(self, entry: ChangeLogEntry, direction: SyncDirection) -> MappingResult:
        mapping = self._config.find_mapping(entry.table_name, direction)

        if mapping is None:
            if self._config.unmapped_table_behavior == UnmappedTableBehavior.PASSTHROUGH:
                return MappingResult(mapped=[MappedEntry.identity(entry)])
            return MappingResult(skip_reason=f"No mapping for table {entry.table_name}")

        if not mapping.enabled:
            return MappingResult(skip_reason=f"Mapping {mapping.id} is disabled", mapping=mapping)

        payload = entry.payload
        if payload is not None and not matches_filter(mapping.filter, payload):
            return MappingResult(skip_reason=f"Filtered out by mapping {mapping.id}", mapping=mapping)

        pk_column = entry.pk_column
        if mapping.pk_mapping is not None and mapping.pk_mapping.source_column == entry.pk_column:
            pk_column = mapping.pk_mapping.target_column

        if mapping.is_multi_target:
            mapped = [
                MappedEntry(
                    table_name=target.table,
                    pk_column=pk_column,
                    pk=entry.pk,
                    payload=self._map_payload(payload, mapping, target.column_mappings),
                    mapping_id=mapping.id,
                )
                for target in mapping.targets
            ]
        else:
            mapped = [
                MappedEntry(
                    table_name=mapping.target_table or mapping.source_table,
                    pk_column=pk_column,
                    pk=entry.pk,
                    payload=self._map_payload(payload, mapping, mapping.column_mappings),
                    mapping_id=mapping.id,
                )
            ]
        return MappingResult(mapped=mapped, mapping=mapping)

    def _map_payload(
        self,
        payload: Row | None,
        mapping: MappingDefinition,
        column_mappings: tuple[ColumnMapping, ...],
    ) -> Row | None:
        if payload is None:
            return None

        if not column_mappings:
            excluded = {c.lower() for c in mapping.excluded_columns}
            result = {k: v for k, v in payload.items() if k.lower() not in excluded}
            pk = mapping.pk_mapping
            if pk is not None and pk.source_column in result and pk.source_column != pk.target_column:
                result[pk.target_column] = result.pop(pk.source_column)
            return result

        result: Row = {}
        for column in column_mappings:
            # A column absent from the source row is left alone; an explicit NULL is written
            if (
                column.transform == TransformType.NONE
                and column.source is not None
                and column.source not in payload
            ):
                continue
            result[column.target] = self._column_value(payload, column)
        return result

    def _column_value(self, payload: Row, column: ColumnMapping) -> Scalar:
        if column.transform == TransformType.CONSTANT:
            return column.value
        if column.transform == TransformType.EXPRESSION:
            try:
                value = evaluate(column.expression, payload)
            except ValidationError as e:
                if column.source is None:
                    raise
                logger.warning(
                    "Expression for %s failed (%s), using source column %s",
                    column.target, e, column.source,
                )
                return payload.get(column.source)
            if isinstance(value, (str, int, float, bool)) or value is None:
                return value
            return str(value)
        if column.source is not None:
            return payload.get(column.source)
        return None
