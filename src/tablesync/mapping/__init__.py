"""Cross-schema data mapping: configuration, expressions, engine and tracking."""

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
from tablesync.mapping.engine import MappedEntry, MappingEngine, MappingResult
from tablesync.mapping.expressions import evaluate, matches_filter
from tablesync.mapping.parser import dump_mapping_config, load_mapping_config, load_mapping_file
from tablesync.mapping.tracking import MappingStateStore, MappingSyncState

__all__ = [
    # Configuration
    "MappingConfig",
    "MappingDefinition",
    "ColumnMapping",
    "PkMapping",
    "TargetConfig",
    "SyncTrackingConfig",
    "SyncDirection",
    "TrackingStrategy",
    "TransformType",
    "UnmappedTableBehavior",
    "load_mapping_config",
    "load_mapping_file",
    "dump_mapping_config",
    # Engine
    "MappingEngine",
    "MappingResult",
    "MappedEntry",
    "evaluate",
    "matches_filter",
    # Tracking
    "MappingStateStore",
    "MappingSyncState",
]
