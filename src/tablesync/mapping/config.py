"""
config.py - Mapping definitions for cross-schema sync.

A mapping describes how rows of one source table become rows of one
or more target tables on the receiving replica.
"""

from dataclasses import dataclass, field
from enum import Enum


class SyncDirection(Enum):
    PUSH = "push"
    PULL = "pull"
    BOTH = "both"


class UnmappedTableBehavior(Enum):
    """What happens to changes of tables without a mapping."""
    STRICT = "strict"
    PASSTHROUGH = "passthrough"


class TransformType(Enum):
    NONE = "none"
    CONSTANT = "constant"
    EXPRESSION = "expression"


class TrackingStrategy(Enum):
    """How the mapper decides whether a change still needs syncing."""
    VERSION = "version"
    HASH = "hash"
    TIMESTAMP = "timestamp"
    EXTERNAL = "external"


@dataclass(frozen=True)
class PkMapping:
    source_column: str
    target_column: str


@dataclass(frozen=True)
class ColumnMapping:
    """
    One target column.

    source is the source column for plain renames. For constants, value
    is written as-is. For expressions, expression is evaluated against
    the source row.
    """
    target: str
    source: str | None = None
    transform: TransformType = TransformType.NONE
    value: str | int | float | bool | None = None
    expression: str | None = None


@dataclass(frozen=True)
class TargetConfig:
    table: str
    column_mappings: tuple[ColumnMapping, ...] = ()


@dataclass(frozen=True)
class SyncTrackingConfig:
    enabled: bool = True
    strategy: TrackingStrategy = TrackingStrategy.VERSION
    tracking_column: str | None = None


@dataclass(frozen=True)
class MappingDefinition:
    id: str
    source_table: str
    target_table: str | None = None
    direction: SyncDirection = SyncDirection.BOTH
    enabled: bool = True
    pk_mapping: PkMapping | None = None
    column_mappings: tuple[ColumnMapping, ...] = ()
    excluded_columns: tuple[str, ...] = ()
    filter: str | None = None
    sync_tracking: SyncTrackingConfig = field(default_factory=SyncTrackingConfig)
    targets: tuple[TargetConfig, ...] = ()

    @property
    def is_multi_target(self) -> bool:
        return bool(self.targets)

    def applies_to(self, direction: SyncDirection) -> bool:
        return self.direction == direction or self.direction == SyncDirection.BOTH


@dataclass(frozen=True)
class MappingConfig:
    version: str = "1.0"
    unmapped_table_behavior: UnmappedTableBehavior = UnmappedTableBehavior.PASSTHROUGH
    mappings: tuple[MappingDefinition, ...] = ()

    def find_mapping(self, table_name: str, direction: SyncDirection) -> MappingDefinition | None:
        """First mapping for the source table that covers the direction."""
        for mapping in self.mappings:
            if mapping.source_table == table_name and mapping.applies_to(direction):
                return mapping
        return None
