"""
server.py - FastAPI hub server.

Replicas pull batches from and push batches to this server. Pushed
changes are relayed into the hub's own change log so every other
replica receives them on its next pull.

Configuration (environment):
    TABLESYNC_DB_PATH   hub database file (default tablesync_server.db)
"""

import logging
import os
from contextlib import asynccontextmanager
from typing import Any, Iterator

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, ConfigDict, Field

from tablesync.db.migrations import get_purged_through
from tablesync.engine import SyncEngine
from tablesync.errors import (
    ConflictUnresolved,
    FullResyncRequired,
    HashMismatch,
    RetryExhausted,
    SchemaError,
    SyncError,
    ValidationError,
)
from tablesync.log.entries import entry_from_wire
from tablesync.metrics import get_registry
from tablesync.protocol.batch import batch_to_wire
from tablesync.retention import snapshot_to_wire
from tablesync.utils.hashing import compute_batch_hash, verify_hash

logger = logging.getLogger("tablesync.server")

DB_PATH = os.environ.get("TABLESYNC_DB_PATH", "tablesync_server.db")


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class PushRequest(_CamelModel):
    changes: list[dict[str, Any]]
    origin_id: str = Field(alias="originId")
    batch_hash: str | None = Field(default=None, alias="batchHash")


class RegisterClientRequest(_CamelModel):
    origin_id: str = Field(alias="originId")
    last_sync_version: int = Field(alias="lastSyncVersion", ge=0)


class SubscribeRequest(_CamelModel):
    origin_id: str = Field(alias="originId")
    subscription_type: str = Field(alias="type")
    table_name: str = Field(alias="tableName")
    filter: str | None = None
    expires_at: str | None = Field(default=None, alias="expiresAt")


class PurgeRequest(_CamelModel):
    version: int | None = Field(default=None, ge=0)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Starting sync server with DB: {DB_PATH}")
    with SyncEngine(DB_PATH) as engine:
        engine.initialize()
    yield


app = FastAPI(title="tablesync server", lifespan=lifespan)


def get_engine() -> Iterator[SyncEngine]:
    engine = SyncEngine(DB_PATH)
    try:
        yield engine
    finally:
        engine.close()


# Status codes for domain errors raised inside handlers
_ERROR_STATUS: list[tuple[type[SyncError], int, str]] = [
    (FullResyncRequired, 410, "full_resync_required"),
    (HashMismatch, 400, "hash_mismatch"),
    (ValidationError, 400, "validation_error"),
    (ConflictUnresolved, 409, "conflict_unresolved"),
    (RetryExhausted, 409, "retry_exhausted"),
    (SchemaError, 422, "schema_error"),
]


@app.exception_handler(SyncError)
async def sync_error_handler(request: Request, exc: SyncError):
    for error_type, status_code, code in _ERROR_STATUS:
        if isinstance(exc, error_type):
            break
    else:
        status_code, code = 500, "sync_error"
        logger.error(f"Sync error on {request.url.path}: {exc}")
    content = {"error": code, "detail": str(exc)}
    content.update({k: v for k, v in exc.context.items() if isinstance(v, (str, int, float, bool, list))})
    return JSONResponse(status_code=status_code, content=content)


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled exception")
    return JSONResponse(status_code=500, content={"detail": "Internal Server Error"})


@app.get("/sync/health")
async def health_check():
    return {"status": "ok", "service": "tablesync"}


@app.get("/sync/changes")
def get_changes(
    from_version: int = Query(0, alias="fromVersion", ge=0),
    batch_size: int | None = Query(None, alias="batchSize", ge=1),
    engine: SyncEngine = Depends(get_engine),
):
    """Next batch of changes after the caller's watermark."""
    return batch_to_wire(engine.get_changes(from_version, batch_size))


@app.post("/sync/changes")
def push_changes(request: PushRequest, engine: SyncEngine = Depends(get_engine)):
    """Apply changes pushed by a replica and relay them to the others."""
    entries = [entry_from_wire(change) for change in request.changes]
    if request.batch_hash is not None:
        actual = compute_batch_hash(entries)
        if not verify_hash(actual, request.batch_hash):
            raise HashMismatch(expected=request.batch_hash, actual=actual)
    result = engine.apply_changes(entries, record_relay=True)
    logger.info(
        f"Push from {request.origin_id}: {len(entries)} changes, "
        f"{result.applied_count} applied, {result.conflicts_lost} lost conflicts"
    )
    return {
        "accepted_count": result.applied_count,
        "echo_count": result.echo_count,
        "conflict_count": result.conflict_count,
        "conflicts_lost": result.conflicts_lost,
        "relayed_count": result.relayed_count,
    }


@app.post("/sync/clients")
def register_client(request: RegisterClientRequest, engine: SyncEngine = Depends(get_engine)):
    watermark = engine.register_client(request.origin_id, request.last_sync_version)
    return {
        "origin_id": watermark.origin_id,
        "last_sync_version": watermark.last_sync_version,
        "last_sync_timestamp": watermark.last_sync_timestamp,
        "created_at": watermark.created_at,
    }


@app.delete("/sync/clients/{origin_id}")
def remove_client(origin_id: str, engine: SyncEngine = Depends(get_engine)):
    if not engine.tracker.remove(origin_id):
        raise HTTPException(status_code=404, detail=f"Unknown client {origin_id}")
    return {"removed": origin_id}


@app.get("/sync/state")
def get_state(engine: SyncEngine = Depends(get_engine)):
    state = engine.get_state().to_dict()
    state["clients"] = [
        {"origin_id": c.origin_id, "last_sync_version": c.last_sync_version, "last_sync_timestamp": c.last_sync_timestamp}
        for c in engine.tracker.get_all()
    ]
    return state


@app.get("/sync/snapshot")
def get_snapshot(engine: SyncEngine = Depends(get_engine)):
    return snapshot_to_wire(engine.create_snapshot())


@app.get("/sync/hash")
def get_hash(
    tables: str | None = Query(None, description="Comma separated table names"),
    engine: SyncEngine = Depends(get_engine),
):
    names = [t.strip() for t in tables.split(",") if t.strip()] if tables else engine.tracked_tables()
    return {"hash": engine.database_hash(names), "tables": sorted(names)}


@app.post("/sync/subscriptions")
def subscribe(request: SubscribeRequest, engine: SyncEngine = Depends(get_engine)):
    subscription = engine.subscriptions.subscribe(
        request.origin_id,
        request.subscription_type,
        request.table_name,
        filter=request.filter,
        expires_at=request.expires_at,
    )
    return {
        "subscription_id": subscription.subscription_id,
        "origin_id": subscription.origin_id,
        "type": subscription.subscription_type.value,
        "table_name": subscription.table_name,
        "filter": subscription.filter,
        "created_at": subscription.created_at,
        "expires_at": subscription.expires_at,
    }


@app.delete("/sync/subscriptions/{subscription_id}")
def unsubscribe(subscription_id: str, engine: SyncEngine = Depends(get_engine)):
    if not engine.subscriptions.unsubscribe(subscription_id):
        raise HTTPException(status_code=404, detail=f"Unknown subscription {subscription_id}")
    return {"removed": subscription_id}


@app.post("/sync/retention/purge")
def purge(request: PurgeRequest, engine: SyncEngine = Depends(get_engine)):
    """
    Purge the change log.

    With an explicit version, entries through that version are removed.
    Otherwise stale clients are dropped and the log is purged up to the
    lowest active watermark.
    """
    if request.version is not None:
        removed = engine.tombstones.purge(request.version)
        return {
            "removed_clients": [],
            "entries_removed": removed,
            "purged_through": get_purged_through(engine.connection),
        }
    result = engine.tombstones.collect()
    return {
        "removed_clients": result.removed_clients,
        "entries_removed": result.entries_removed,
        "purged_through": result.purged_through,
    }


@app.get("/sync/metrics", response_class=PlainTextResponse)
async def metrics():
    return get_registry().export_prometheus()
