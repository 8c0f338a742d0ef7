"""
entries.py - Change log entry data structures.

A ChangeLogEntry is the unit of replication: one captured row
mutation. The operation is a tagged union so that a payload exists
for inserts and updates and cannot exist for deletes.
"""

import json
from dataclasses import dataclass
from typing import Any, Mapping, Union

from tablesync.config import OPERATION_DELETE, OPERATION_INSERT, OPERATION_TYPES, OPERATION_UPDATE
from tablesync.errors import ValidationError
from tablesync.utils.hashing import canonical_json

# Column values are restricted to JSON scalars
Scalar = Union[str, int, float, bool, None]
Row = dict[str, Scalar]

_SCALAR_TYPES = (str, int, float, bool, type(None))


def validate_row(value: Any, field: str) -> Row:
    """
    Check that value is a JSON object of scalar column values.

    Returns a new dict preserving the original column order.

    Raises:
        ValidationError: If value is not an object or holds nested values
    """
    if not isinstance(value, Mapping):
        raise ValidationError(f"{field} must be a JSON object", field=field, value=value)
    row: Row = {}
    for column, item in value.items():
        if not isinstance(column, str):
            raise ValidationError(f"{field} has a non-string key", field=field, value=column)
        if not isinstance(item, _SCALAR_TYPES):
            raise ValidationError(
                f"{field}.{column} must be a string, number, boolean or null",
                field=f"{field}.{column}",
                value=item,
            )
        row[column] = item
    return row


def parse_row(text: str | None, field: str) -> Row:
    """Parse a JSON object column from the log."""
    if text is None:
        raise ValidationError(f"{field} is missing", field=field)
    try:
        value = json.loads(text)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"{field} is not valid JSON: {e}", field=field, value=text) from e
    return validate_row(value, field)


@dataclass(frozen=True, slots=True)
class Insert:
    payload: Row

    name = OPERATION_INSERT


@dataclass(frozen=True, slots=True)
class Update:
    payload: Row

    name = OPERATION_UPDATE


@dataclass(frozen=True, slots=True)
class Delete:
    name = OPERATION_DELETE


Operation = Union[Insert, Update, Delete]


def make_operation(name: str, payload: Row | None) -> Operation:
    """
    Build the tagged operation from its stored name and payload.

    Raises:
        ValidationError: If the name is unknown or the payload presence
            does not match the operation
    """
    if name not in OPERATION_TYPES:
        raise ValidationError(
            f"operation must be one of {sorted(OPERATION_TYPES)}, got {name}",
            field="operation",
            value=name,
        )
    if name == OPERATION_DELETE:
        if payload is not None:
            raise ValidationError("delete must not carry a payload", field="payload")
        return Delete()
    if payload is None:
        raise ValidationError(f"{name} must carry a payload", field="payload")
    return Insert(payload) if name == OPERATION_INSERT else Update(payload)


@dataclass(frozen=True, slots=True)
class ChangeLogEntry:
    """
    Immutable representation of one _sync_log row.

    pk_value holds exactly one column: the table's primary key.
    """
    version: int
    table_name: str
    pk_value: Row
    operation: Operation
    origin: str
    timestamp: str

    def __post_init__(self) -> None:
        if len(self.pk_value) != 1:
            raise ValidationError(
                f"pk_value must hold exactly one column, got {len(self.pk_value)}",
                field="pk_value",
                value=self.pk_value,
            )
        if not self.table_name:
            raise ValidationError("table_name cannot be empty", field="table_name")

    @property
    def operation_name(self) -> str:
        return self.operation.name

    @property
    def payload(self) -> Row | None:
        if isinstance(self.operation, Delete):
            return None
        return self.operation.payload

    @property
    def pk_column(self) -> str:
        return next(iter(self.pk_value))

    @property
    def pk(self) -> Scalar:
        return next(iter(self.pk_value.values()))

    @property
    def pk_text(self) -> str:
        """Canonical JSON text of pk_value, as stored in the log."""
        return canonical_json(self.pk_value)

    @property
    def payload_text(self) -> str | None:
        payload = self.payload
        return None if payload is None else canonical_json(payload)


def entry_from_row(row: tuple) -> ChangeLogEntry:
    """
    Create a ChangeLogEntry from a _sync_log row.

    Args:
        row: (version, table_name, pk_value, operation, payload, origin, timestamp)
    """
    version, table_name, pk_text, operation, payload_text, origin, timestamp = row
    payload = None if payload_text is None else parse_row(payload_text, "payload")
    return ChangeLogEntry(
        version=version,
        table_name=table_name,
        pk_value=parse_row(pk_text, "pk_value"),
        operation=make_operation(operation, payload),
        origin=origin,
        timestamp=timestamp,
    )


def entry_to_wire(entry: ChangeLogEntry) -> dict[str, Any]:
    return {
        "version": entry.version,
        "table_name": entry.table_name,
        "pk_value": entry.pk_value,
        "operation": entry.operation_name,
        "payload": entry.payload,
        "origin": entry.origin,
        "timestamp": entry.timestamp,
    }


def entry_from_wire(data: Mapping[str, Any]) -> ChangeLogEntry:
    """
    Decode one change from the wire format.

    pk_value and payload may arrive as objects or as JSON text.

    Raises:
        ValidationError: If a field is missing or malformed
    """
    try:
        pk_value = data["pk_value"]
        payload = data.get("payload")
        entry = ChangeLogEntry(
            version=int(data["version"]),
            table_name=str(data["table_name"]),
            pk_value=parse_row(pk_value, "pk_value") if isinstance(pk_value, str) else validate_row(pk_value, "pk_value"),
            operation=make_operation(
                data["operation"],
                None if payload is None
                else parse_row(payload, "payload") if isinstance(payload, str)
                else validate_row(payload, "payload"),
            ),
            origin=str(data["origin"]),
            timestamp=str(data["timestamp"]),
        )
    except KeyError as e:
        raise ValidationError(f"Change is missing field {e.args[0]}", field=e.args[0]) from e
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Malformed change: {e}", value=data) from e
    return entry
