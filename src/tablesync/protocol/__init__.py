"""Batch protocol: enumeration of the change log and its wire format."""

from tablesync.protocol.batch import (
    SyncBatch,
    batch_from_wire,
    batch_to_wire,
    clamp_batch_size,
    fetch_batch,
    iter_batches,
    make_batch,
    verify_batch,
)

__all__ = [
    "SyncBatch",
    "fetch_batch",
    "iter_batches",
    "make_batch",
    "clamp_batch_size",
    "verify_batch",
    "batch_to_wire",
    "batch_from_wire",
]
