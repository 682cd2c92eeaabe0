"""Running-balance maintenance for ledger-bearing tables.

Every ledger row stores a signed quantity plus a cached running balance. The
balance of a row equals the sum of the signed quantities of every row in the
same partition that sorts at or before it when ordered by
``(date, created_at)``. :class:`LedgerEngine` keeps that property true after
every insert, edit and delete by recomputing the whole partition.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from . import log, schema
from .constants import DEFAULT_PAGE_SIZE
from .data_manager import RowStore, drain_rows
from .errors import MissingReferenceError, ValidationError


Row = Dict[str, Any]
PartitionKey = Tuple[str, ...]
PartitionLike = Union[Mapping[str, Any], Sequence[Any]]


def _default_clock() -> datetime:
    return datetime.now(UTC)


def _default_id() -> str:
    return uuid.uuid4().hex


def describe_partition(key: PartitionKey) -> str:
    """Render a partition key for log messages and CLI output."""

    return "/".join(key)


class LedgerEngine:
    """Append, edit and delete ledger rows while keeping running balances exact.

    Args:
        store (RowStore): Backing row store.
        spec (schema.TableSpec): Ledger-bearing table definition.
        clock (Callable[[], datetime] | None): Source of ``created_at`` values.
        id_factory (Callable[[], str] | None): Source of fresh row ids.
        page_size (int): Page size used when draining a partition.

    Raises:
        ValueError: If ``spec`` does not describe a ledger table.
    """

    def __init__(
        self,
        store: RowStore,
        spec: schema.TableSpec,
        *,
        clock: Optional[Callable[[], datetime]] = None,
        id_factory: Optional[Callable[[], str]] = None,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> None:
        if not spec.is_ledger or spec.quantity_field is None or spec.balance_field is None:
            raise ValueError(f"Table '{spec.name}' is not a ledger table")
        self.store = store
        self.spec = spec
        self.clock = clock or _default_clock
        self.id_factory = id_factory or _default_id
        self.page_size = page_size
        self._last_created_at: Optional[datetime] = None

    @property
    def table(self) -> str:
        return self.spec.name

    @property
    def quantity_field(self) -> str:
        assert self.spec.quantity_field is not None
        return self.spec.quantity_field

    @property
    def balance_field(self) -> str:
        assert self.spec.balance_field is not None
        return self.spec.balance_field

    def partition_key(self, partition: PartitionLike) -> PartitionKey:
        """Normalize a mapping, a row or a value sequence into a partition key.

        Raises:
            ValidationError: If a partition value is missing or not allowed.
        """

        fields = self.spec.partition_fields
        if isinstance(partition, Mapping):
            values = [partition.get(field) for field in fields]
        else:
            values = list(partition)
            if len(values) != len(fields):
                raise ValidationError(
                    f"Partition for '{self.table}' needs {len(fields)} values, got {len(values)}"
                )
        key = []
        for field, value in zip(fields, values):
            try:
                key.append(schema.parse_value(self.spec.column(field), value))
            except ValueError as exc:
                raise ValidationError(str(exc)) from exc
        return tuple(key)

    def partition_filter(self, key: PartitionKey) -> Dict[str, Any]:
        return dict(zip(self.spec.partition_fields, key))

    def _next_created_at(self) -> datetime:
        # Strictly increasing so (date, created_at) is a total order.
        now = self.clock()
        if now.tzinfo is None:
            now = now.replace(tzinfo=UTC)
        if self._last_created_at is not None and now <= self._last_created_at:
            now = self._last_created_at + timedelta(microseconds=1)
        self._last_created_at = now
        return now

    def _normalize(self, row: Mapping[str, Any]) -> Row:
        unknown = [field for field in row if not self.spec.has_field(field)]
        if unknown:
            raise ValidationError(f"Unknown field(s) for '{self.table}': {', '.join(sorted(unknown))}")
        normalized: Row = {}
        for column in self.spec.columns:
            try:
                normalized[column.field] = schema.parse_value(column, row.get(column.field))
            except ValueError as exc:
                raise ValidationError(str(exc)) from exc
        quantity = normalized[self.quantity_field]
        if quantity == 0:
            raise ValidationError(f"{self.spec.column(self.quantity_field).label} must be non-zero")
        return normalized

    def _require(self, row_id: str) -> Row:
        row = self.store.get(self.table, row_id)
        if row is None:
            log.warning("Lookup failed for %s row '%s'", self.table, row_id)
            raise MissingReferenceError(f"Unknown {self.table} row id: {row_id}")
        return row

    def get(self, row_id: str) -> Row:
        """Return the stored row, raising :class:`MissingReferenceError` when absent."""

        return self._require(row_id)

    def history(self, partition: PartitionLike) -> List[Row]:
        """Return every row of ``partition`` in ``(date, created_at)`` order."""

        key = self.partition_key(partition)
        return list(
            drain_rows(
                self.store,
                self.table,
                filter=self.partition_filter(key),
                order_by=(self.spec.date_field, "created_at", "id"),
                page_size=self.page_size,
            )
        )

    def append(
        self,
        partition: PartitionLike,
        occurred_at: Any,
        signed_quantity: Any,
        attributes: Optional[Mapping[str, Any]] = None,
        *,
        correlation_id: Optional[str] = None,
    ) -> Row:
        """Insert one movement and recompute its partition.

        Args:
            partition (PartitionLike): Partition values, as a mapping keyed by
                partition field or as a sequence in field order.
            occurred_at (Any): Business date of the movement.
            signed_quantity (Any): Positive for additions, negative for
                removals.
            attributes (Mapping[str, Any] | None): Remaining columns such as
                the counterpart name or the unit.
            correlation_id (str | None): Identifier shared by the rows of one
                cascade action.

        Returns:
            Row: The inserted row carrying its final running balance.

        Raises:
            ValidationError: If any value is malformed or a reserved field is
                supplied through ``attributes``.
        """

        attributes = dict(attributes or {})
        reserved = {"id", "created_at", self.balance_field, self.quantity_field, self.spec.date_field}
        reserved.update(self.spec.partition_fields)
        clash = reserved.intersection(attributes)
        if clash:
            raise ValidationError(f"Reserved field(s) in attributes: {', '.join(sorted(clash))}")

        key = self.partition_key(partition)
        draft: Row = {
            **attributes,
            **self.partition_filter(key),
            self.spec.date_field: occurred_at,
            self.quantity_field: signed_quantity,
        }
        if correlation_id is not None:
            if not self.spec.has_field("correlation_id"):
                raise ValidationError(f"Table '{self.table}' does not carry correlation ids")
            draft["correlation_id"] = correlation_id

        with self.store.transaction():
            draft["id"] = self.id_factory()
            draft["created_at"] = self._next_created_at()
            draft[self.balance_field] = Decimal(0)
            row = self._normalize(draft)
            self.store.insert(self.table, row)
            self.recompute(key)
            inserted = self._require(row["id"])

        log.info(
            "Appended %s row '%s' (%s %s) to partition %s",
            self.table,
            inserted["id"],
            inserted[self.quantity_field],
            inserted[self.spec.date_field],
            describe_partition(key),
        )
        return inserted

    def edit(self, row_id: str, fields: Mapping[str, Any]) -> Row:
        """Update a row and recompute every partition the change affects.

        When the date, the quantity or a partition field changes, the new
        partition is recomputed, and the old one as well if the row moved.

        Raises:
            ValidationError: If ``fields`` touches ``id``, ``created_at`` or
                the balance field, or carries malformed values.
            MissingReferenceError: If ``row_id`` is unknown.
        """

        forbidden = {"id", "created_at", self.balance_field}.intersection(fields)
        if forbidden:
            raise ValidationError(f"Field(s) cannot be edited: {', '.join(sorted(forbidden))}")
        if not fields:
            return self._require(row_id)

        with self.store.transaction():
            current = self._require(row_id)
            merged = self._normalize({**current, **fields})
            changes = {field: merged[field] for field in fields}
            self.store.update(self.table, row_id, changes)

            old_key = self.partition_key(current)
            new_key = self.partition_key(merged)
            watched = {self.spec.date_field, self.quantity_field, *self.spec.partition_fields}
            if any(current.get(field) != merged.get(field) for field in watched):
                self.recompute(new_key)
                if old_key != new_key:
                    self.recompute(old_key)
            updated = self._require(row_id)

        log.info("Edited %s row '%s' (%s)", self.table, row_id, ", ".join(sorted(fields)))
        return updated

    def remove(self, row_id: str) -> Row:
        """Delete a row and recompute what remains of its partition.

        Returns:
            Row: The row as it was stored before deletion.

        Raises:
            MissingReferenceError: If ``row_id`` is unknown.
        """

        with self.store.transaction():
            current = self._require(row_id)
            self.store.delete(self.table, row_id)
            key = self.partition_key(current)
            self.recompute(key)

        log.info("Removed %s row '%s' from partition %s", self.table, row_id, describe_partition(key))
        return current

    def recompute(self, partition: PartitionLike) -> int:
        """Rewrite every running balance of ``partition`` that is out of date.

        Idempotent: a second call on an unchanged partition writes nothing.

        Returns:
            int: Number of rows whose stored balance was rewritten.
        """

        key = self.partition_key(partition)
        changed = 0
        with self.store.transaction():
            running = Decimal(0)
            for row in self.history(key):
                running += row[self.quantity_field]
                if row.get(self.balance_field) != running:
                    self.store.update(self.table, row["id"], {self.balance_field: running})
                    changed += 1
        if changed:
            log.debug("Recomputed %d balance(s) in %s partition %s", changed, self.table, describe_partition(key))
        return changed

    def balance(self, partition: PartitionLike) -> Decimal:
        """Return the current balance of ``partition`` as the sum of its quantities."""

        return sum((row[self.quantity_field] for row in self.history(partition)), Decimal(0))

    def partitions(self) -> List[PartitionKey]:
        """List every distinct partition present in the table, sorted."""

        keys = {
            tuple(row.get(field) for field in self.spec.partition_fields)
            for row in drain_rows(self.store, self.table, page_size=self.page_size)
        }
        return sorted(key for key in keys if all(value is not None for value in key))

    def balances(self) -> Dict[PartitionKey, Decimal]:
        return {key: self.balance(key) for key in self.partitions()}

    def recompute_all(self) -> Dict[PartitionKey, int]:
        """Recompute every partition, reporting rewritten rows per partition."""

        report: Dict[PartitionKey, int] = {}
        with self.store.transaction():
            for key in self.partitions():
                report[key] = self.recompute(key)
        log.info(
            "Recomputed %d %s partition(s), %d balance(s) rewritten",
            len(report),
            self.table,
            sum(report.values()),
        )
        return report


__all__ = [
    "LedgerEngine",
    "PartitionKey",
    "describe_partition",
]
