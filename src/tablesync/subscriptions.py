"""
subscriptions.py - Change subscriptions.

A replica can subscribe to a single record, a whole table, or the
rows of a table matching a query expression. The server matches new
change log entries against active subscriptions and hands matches to
in-process listeners, which forward them to subscribers.
"""

import json
import logging
import sqlite3
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable, Iterator

from tablesync.db.metadata import validate_identifier
from tablesync.errors import DatabaseError, ValidationError
from tablesync.log.entries import ChangeLogEntry, Delete
from tablesync.mapping.expressions import compile_expression, matches_filter
from tablesync.utils.timestamps import utc_now

logger = logging.getLogger("tablesync.subscriptions")

Listener = Callable[[str, ChangeLogEntry], None]


class SubscriptionType(Enum):
    RECORD = "record"
    TABLE = "table"
    QUERY = "query"


@dataclass(frozen=True)
class Subscription:
    subscription_id: str
    origin_id: str
    subscription_type: SubscriptionType
    table_name: str
    filter: str | None
    created_at: str
    expires_at: str | None = None

    def is_expired(self, now: str) -> bool:
        return self.expires_at is not None and self.expires_at <= now


def _record_keys(filter_text: str | None) -> set[str]:
    """Primary keys named by a record subscription filter."""
    if not filter_text:
        return set()
    text = filter_text.strip()
    if text.startswith("["):
        try:
            values = json.loads(text)
        except ValueError as e:
            raise ValidationError(f"Record filter is not a valid JSON array: {e}", field="filter") from e
        return {str(v) for v in values}
    return {part.strip() for part in text.split(",") if part.strip()}


def _from_row(row: tuple) -> Subscription:
    sid, origin, kind, table, filter_text, created_at, expires_at = row
    return Subscription(sid, origin, SubscriptionType(kind), table, filter_text, created_at, expires_at)


_COLUMNS = "subscription_id, origin_id, subscription_type, table_name, filter, created_at, expires_at"


class SubscriptionManager:
    """Stores subscriptions in _sync_subscriptions and dispatches matches."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn
        self._listeners: list[Listener] = []

    def subscribe(
        self,
        origin_id: str,
        subscription_type: SubscriptionType | str,
        table_name: str,
        filter: str | None = None,
        expires_at: str | None = None,
    ) -> Subscription:
        """
        Register a subscription.

        Raises:
            ValidationError: If the type is unknown, the table name is
                invalid, or a query filter does not parse
        """
        try:
            kind = SubscriptionType(subscription_type)
        except ValueError:
            raise ValidationError(
                "Unknown subscription type", field="subscription_type", value=subscription_type
            ) from None
        validate_identifier(table_name)
        if kind == SubscriptionType.QUERY:
            if not filter:
                raise ValidationError("Query subscriptions require a filter", field="filter")
            compile_expression(filter)
        elif kind == SubscriptionType.RECORD:
            if not _record_keys(filter):
                raise ValidationError("Record subscriptions require primary keys", field="filter")

        subscription = Subscription(
            subscription_id=str(uuid.uuid4()),
            origin_id=origin_id,
            subscription_type=kind,
            table_name=table_name,
            filter=filter,
            created_at=utc_now(),
            expires_at=expires_at,
        )
        try:
            self._conn.execute(
                f"INSERT INTO _sync_subscriptions ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    subscription.subscription_id,
                    subscription.origin_id,
                    kind.value,
                    table_name,
                    filter,
                    subscription.created_at,
                    expires_at,
                ),
            )
        except sqlite3.Error as e:
            raise DatabaseError(f"Failed to create subscription: {e}", operation="subscribe") from e
        logger.info(
            "Origin %s subscribed to %s %s (%s)",
            origin_id, kind.value, table_name, subscription.subscription_id,
        )
        return subscription

    def unsubscribe(self, subscription_id: str) -> bool:
        cursor = self._conn.execute(
            "DELETE FROM _sync_subscriptions WHERE subscription_id = ?", (subscription_id,)
        )
        return cursor.rowcount > 0

    def get(self, subscription_id: str) -> Subscription | None:
        row = self._conn.execute(
            f"SELECT {_COLUMNS} FROM _sync_subscriptions WHERE subscription_id = ?",
            (subscription_id,),
        ).fetchone()
        return None if row is None else _from_row(row)

    def list_for_origin(self, origin_id: str) -> list[Subscription]:
        rows = self._conn.execute(
            f"SELECT {_COLUMNS} FROM _sync_subscriptions WHERE origin_id = ? ORDER BY created_at",
            (origin_id,),
        ).fetchall()
        return [_from_row(row) for row in rows]

    def list_all(self) -> list[Subscription]:
        rows = self._conn.execute(
            f"SELECT {_COLUMNS} FROM _sync_subscriptions ORDER BY created_at"
        ).fetchall()
        return [_from_row(row) for row in rows]

    def cleanup_expired(self, now: str | None = None) -> int:
        """Delete subscriptions whose expiry has passed. Returns how many."""
        cursor = self._conn.execute(
            "DELETE FROM _sync_subscriptions WHERE expires_at IS NOT NULL AND expires_at <= ?",
            (now or utc_now(),),
        )
        if cursor.rowcount:
            logger.info("Removed %d expired subscriptions", cursor.rowcount)
        return cursor.rowcount

    @staticmethod
    def matches(subscription: Subscription, entry: ChangeLogEntry) -> bool:
        if subscription.table_name != entry.table_name:
            return False
        if subscription.subscription_type == SubscriptionType.TABLE:
            return True
        if subscription.subscription_type == SubscriptionType.RECORD:
            return str(entry.pk) in _record_keys(subscription.filter)
        # A deleted row can no longer be tested against the query
        if isinstance(entry.operation, Delete):
            return True
        return matches_filter(subscription.filter, entry.payload)

    def find_matching(
        self, entries: Iterable[ChangeLogEntry], now: str | None = None
    ) -> Iterator[tuple[str, ChangeLogEntry]]:
        """Yield (subscription_id, entry) for every active match."""
        now = now or utc_now()
        active = [s for s in self.list_all() if not s.is_expired(now)]
        if not active:
            return
        for entry in entries:
            for subscription in active:
                if self.matches(subscription, entry):
                    yield subscription.subscription_id, entry

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        self._listeners.remove(listener)

    def notify(self, entries: Iterable[ChangeLogEntry]) -> int:
        """
        Deliver matches to listeners.

        A failing listener is logged and does not stop delivery to the
        others.

        Returns:
            Number of (subscription, entry) matches delivered
        """
        if not self._listeners:
            return 0
        delivered = 0
        for subscription_id, entry in self.find_matching(entries):
            delivered += 1
            for listener in self._listeners:
                try:
                    listener(subscription_id, entry)
                except Exception:
                    logger.exception("Subscription listener failed for %s", subscription_id)
        return delivered
