"""Cross-ledger cascade rules.

One user-level action can move quantities in more than one partition: selling
filled buckets draws Free DEF liters from the stock ledger, producing a batch
turns Urea into Free DEF, and selling loose Free DEF shows up in both the
inventory and the stock ledgers. :class:`CascadeResolver` writes the rows of
such an action together under a shared correlation id and removes them
together again.

Rows written before correlation ids existed are still reversible: the
resolver re-derives their partners by matching date, transaction type and the
quantity implied by the fixed conversion ratios.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from . import log
from .constants import (
    BUCKET_SIZES,
    KG_PER_BAG,
    LITERS_PER_BATCH,
    UREA_PER_BATCH_KG,
    ActionType,
    BucketType,
    StockCategory,
    StockTransactionType,
    StockUnit,
    Warehouse,
)
from .data_manager import drain_rows
from .errors import CascadeLinkAmbiguity, InsufficiencyError, OversellError, ValidationError
from .ledger import LedgerEngine, PartitionKey, describe_partition


Row = Dict[str, Any]


class ActionKind(str, Enum):
    """User-level actions the resolver understands."""

    STOCK_BUCKETS = "STOCK_BUCKETS"
    SELL_BUCKETS = "SELL_BUCKETS"
    SELL_FREE_DEF = "SELL_FREE_DEF"
    ADD_UREA = "ADD_UREA"
    PRODUCE_BATCH = "PRODUCE_BATCH"


@dataclass(frozen=True)
class CascadeCommand:
    """User intent for a cascade action.

    ``quantity`` is always positive: buckets for the bucket actions, liters for
    ``SELL_FREE_DEF``, kilograms (or bags when ``unit`` is ``BAGS``) for
    ``ADD_UREA`` and the batch count for ``PRODUCE_BATCH``.
    """

    action: ActionKind
    occurred_on: date
    quantity: Decimal
    bucket_type: Optional[BucketType] = None
    warehouse: Optional[Warehouse] = None
    counterpart: Optional[str] = None
    description: Optional[str] = None
    unit: Optional[StockUnit] = None
    force_oversell: bool = False


@dataclass(frozen=True)
class CascadeResult:
    """Rows written by one cascade action, primary row first."""

    action: ActionKind
    correlation_id: str
    rows: List[Row] = field(default_factory=list)

    @property
    def primary(self) -> Row:
        return self.rows[0]

    @property
    def derived(self) -> List[Row]:
        return self.rows[1:]


def _fmt(value: Decimal) -> str:
    return format(value.normalize(), "f")


def _plural(count: Decimal, word: str, suffix: str = "es") -> str:
    return word if count == 1 else f"{word}{suffix}"


class CascadeResolver:
    """Translate user actions into ledger rows across inventory and stock.

    Args:
        inventory (LedgerEngine): Engine over the inventory table.
        stock (LedgerEngine): Engine over the stock table.
        strict_links (bool): Raise :class:`CascadeLinkAmbiguity` instead of
            proceeding when a legacy link does not match exactly.
        id_factory (Callable[[], str] | None): Source of correlation ids.
    """

    def __init__(
        self,
        inventory: LedgerEngine,
        stock: LedgerEngine,
        *,
        strict_links: bool = False,
        id_factory: Optional[Callable[[], str]] = None,
    ) -> None:
        if inventory.store is not stock.store:
            raise ValueError("Inventory and stock engines must share one row store")
        self.inventory = inventory
        self.stock = stock
        self.store = inventory.store
        self.strict_links = strict_links
        self.id_factory = id_factory or (lambda: uuid.uuid4().hex)

    def _engine(self, table: str) -> LedgerEngine:
        if table == self.inventory.table:
            return self.inventory
        if table == self.stock.table:
            return self.stock
        raise ValidationError(f"Table '{table}' does not take part in cascades")

    # Apply -----------------------------------------------------------------

    def apply_derived_action(self, command: CascadeCommand) -> CascadeResult:
        """Validate ``command`` and write every row it implies in one transaction.

        All checks run before the first write, so a rejected action leaves both
        ledgers untouched.

        Args:
            command (CascadeCommand): Action to apply.

        Returns:
            CascadeResult: The written rows, primary first, and their shared
                correlation id.

        Raises:
            ValidationError: If the command is malformed.
            OversellError: If a bucket sale exceeds the partition balance and
                ``force_oversell`` is not set.
            InsufficiencyError: If the raw partition cannot cover the
                conversion.
        """

        try:
            action = ActionKind(command.action)
        except ValueError:
            raise ValidationError(f"Unsupported cascade action: {command.action}") from None
        try:
            quantity = Decimal(str(command.quantity))
        except (InvalidOperation, TypeError, ValueError):
            raise ValidationError(f"Invalid quantity: {command.quantity!r}") from None
        if not quantity.is_finite() or quantity <= 0:
            log.error("Cascade quantity validation failed: %s", command.quantity)
            raise ValidationError("Quantity must be greater than zero")

        handlers = {
            ActionKind.STOCK_BUCKETS: self._stock_buckets,
            ActionKind.SELL_BUCKETS: self._sell_buckets,
            ActionKind.SELL_FREE_DEF: self._sell_free_def,
            ActionKind.ADD_UREA: self._add_urea,
            ActionKind.PRODUCE_BATCH: self._produce_batch,
        }
        handler = handlers[action]

        correlation_id = self.id_factory()
        with self.store.transaction():
            rows = handler(command, quantity, correlation_id)

        log.info(
            "Applied %s on %s: %d row(s), correlation '%s'",
            action.value,
            command.occurred_on,
            len(rows),
            correlation_id,
        )
        return CascadeResult(action=action, correlation_id=correlation_id, rows=rows)

    def _bucket_partition(self, command: CascadeCommand) -> Tuple[BucketType, Warehouse]:
        if command.bucket_type is None or command.warehouse is None:
            raise ValidationError(f"{ActionKind(command.action).value} needs a bucket type and a warehouse")
        bucket = BucketType(command.bucket_type)
        if bucket is BucketType.FREE_DEF:
            raise ValidationError("Loose Free DEF is sold through SELL_FREE_DEF, not as buckets")
        return bucket, Warehouse(command.warehouse)

    def _require_stock(self, category: StockCategory, required: Decimal, what: str) -> None:
        current = self.stock.balance((category.value,))
        if current < required:
            log.warning(
                "Insufficient %s: need %s, have %s", category.value, _fmt(required), _fmt(current)
            )
            raise InsufficiencyError(
                f"Insufficient {what}. Need {_fmt(required)}, have {_fmt(current)}",
                current_balance=current,
                required=required,
            )

    def _stock_buckets(self, command: CascadeCommand, quantity: Decimal, correlation_id: str) -> List[Row]:
        bucket, warehouse = self._bucket_partition(command)
        # Stocked buckets are empty containers; Free DEF is untouched.
        row = self.inventory.append(
            {"bucket_type": bucket, "warehouse": warehouse},
            command.occurred_on,
            quantity,
            {"action": ActionType.STOCK, "buyer_seller": command.counterpart},
            correlation_id=correlation_id,
        )
        return [row]

    def _sell_buckets(self, command: CascadeCommand, quantity: Decimal, correlation_id: str) -> List[Row]:
        bucket, warehouse = self._bucket_partition(command)
        on_hand = self.inventory.balance((bucket.value, warehouse.value))
        if quantity > on_hand and not command.force_oversell:
            log.warning(
                "Oversell of %s at %s: requested %s, on hand %s",
                bucket.value, warehouse.value, _fmt(quantity), _fmt(on_hand),
            )
            raise OversellError(
                f"Selling {_fmt(quantity)} but only {_fmt(on_hand)} available in stock",
                current_balance=on_hand,
                requested=quantity,
            )

        liters = quantity * BUCKET_SIZES[bucket]
        if liters > 0:
            self._require_stock(StockCategory.FREE_DEF, liters, "Free DEF to fill buckets")

        buyer = command.counterpart or "N/A"
        rows = [
            self.inventory.append(
                {"bucket_type": bucket, "warehouse": warehouse},
                command.occurred_on,
                -quantity,
                {"action": ActionType.SELL, "buyer_seller": buyer},
                correlation_id=correlation_id,
            )
        ]
        if liters > 0:
            rows.append(
                self.stock.append(
                    {"category": StockCategory.FREE_DEF},
                    command.occurred_on,
                    -liters,
                    {
                        "type": StockTransactionType.SELL_BUCKETS,
                        "unit": StockUnit.LITERS,
                        "description": command.description
                        or f"Sold {_fmt(quantity)}x {bucket.value} ({_fmt(liters)}L) to {buyer}",
                    },
                    correlation_id=correlation_id,
                )
            )
        return rows

    def _sell_free_def(self, command: CascadeCommand, liters: Decimal, correlation_id: str) -> List[Row]:
        self._require_stock(StockCategory.FREE_DEF, liters, "Free DEF")
        buyer = command.counterpart or "Customer"
        inventory_row = self.inventory.append(
            {"bucket_type": BucketType.FREE_DEF, "warehouse": Warehouse.FACTORY},
            command.occurred_on,
            -liters,
            {"action": ActionType.SELL, "buyer_seller": buyer},
            correlation_id=correlation_id,
        )
        stock_row = self.stock.append(
            {"category": StockCategory.FREE_DEF},
            command.occurred_on,
            -liters,
            {
                "type": StockTransactionType.SELL_FREE_DEF,
                "unit": StockUnit.LITERS,
                "description": command.description or f"Sold {_fmt(liters)}L Free DEF to {buyer}",
            },
            correlation_id=correlation_id,
        )
        return [inventory_row, stock_row]

    def _add_urea(self, command: CascadeCommand, quantity: Decimal, correlation_id: str) -> List[Row]:
        if command.unit is not None and StockUnit(command.unit) is StockUnit.BAGS:
            kilograms = quantity * KG_PER_BAG
            default_description = f"Added {_fmt(quantity)} {_plural(quantity, 'bag', 's')} ({_fmt(kilograms)}kg Urea)"
        else:
            kilograms = quantity
            default_description = f"Added {_fmt(kilograms)}kg Urea"
        row = self.stock.append(
            {"category": StockCategory.UREA},
            command.occurred_on,
            kilograms,
            {
                "type": StockTransactionType.ADD_UREA,
                "unit": StockUnit.KG,
                "description": command.description or default_description,
            },
            correlation_id=correlation_id,
        )
        return [row]

    def _produce_batch(self, command: CascadeCommand, batches: Decimal, correlation_id: str) -> List[Row]:
        if batches != batches.to_integral_value():
            raise ValidationError("Batch count must be a whole number")
        urea = batches * UREA_PER_BATCH_KG
        liters = batches * LITERS_PER_BATCH
        label = f"{_fmt(batches)} {_plural(batches, 'batch')}"
        self._require_stock(StockCategory.UREA, urea, f"Urea for {label}")

        urea_row = self.stock.append(
            {"category": StockCategory.UREA},
            command.occurred_on,
            -urea,
            {
                "type": StockTransactionType.PRODUCE_BATCH,
                "unit": StockUnit.KG,
                "description": f"Production: {label} (-{_fmt(urea)}kg Urea)",
            },
            correlation_id=correlation_id,
        )
        free_def_row = self.stock.append(
            {"category": StockCategory.FREE_DEF},
            command.occurred_on,
            liters,
            {
                "type": StockTransactionType.PRODUCE_BATCH,
                "unit": StockUnit.LITERS,
                "description": f"Production: {label} (+{_fmt(liters)}L Free DEF)",
            },
            correlation_id=correlation_id,
        )
        return [urea_row, free_def_row]

    # Reverse ---------------------------------------------------------------

    def reverse_derived_action(self, table: str, row_id: str) -> List[Row]:
        """Delete a row together with every row of its cascade group.

        Linked rows are found through the shared correlation id, or, for rows
        written without one, by matching date, type and expected quantity.
        Every affected partition is recomputed, the primary row's included.

        Args:
            table (str): Table of the row the user is deleting.
            row_id (str): Id of that row.

        Returns:
            List[Row]: The removed rows, the requested row first.

        Raises:
            MissingReferenceError: If ``row_id`` is unknown.
            CascadeLinkAmbiguity: In strict mode, when a legacy link matches
                zero or several candidates. Nothing is deleted in that case.
        """

        engine = self._engine(table)
        with self.store.transaction():
            primary = engine.get(row_id)
            linked = self._linked_rows(engine, primary)

            removed: List[Row] = [primary]
            affected: Dict[Tuple[str, PartitionKey], LedgerEngine] = {}
            for owner, row in [(engine, primary), *linked]:
                self.store.delete(owner.table, row["id"])
                affected[(owner.table, owner.partition_key(row))] = owner
                if row is not primary:
                    removed.append(row)
            for (_, key), owner in affected.items():
                owner.recompute(key)

        log.info(
            "Reversed %s row '%s' with %d linked row(s) across %s",
            table,
            row_id,
            len(removed) - 1,
            ", ".join(f"{name}:{describe_partition(key)}" for name, key in affected),
        )
        return removed

    def _matching(self, owner: LedgerEngine, criteria: Mapping[str, Any]) -> List[Row]:
        return list(drain_rows(self.store, owner.table, filter=criteria, page_size=owner.page_size))

    def _legacy_matching(self, owner: LedgerEngine, criteria: Mapping[str, Any]) -> List[Row]:
        """Rows matching ``criteria`` that belong to no correlated group."""

        return [row for row in self._matching(owner, criteria) if not row.get("correlation_id")]

    def _linked_rows(self, engine: LedgerEngine, primary: Row) -> List[Tuple[LedgerEngine, Row]]:
        correlation_id = primary.get("correlation_id")
        if correlation_id:
            linked = []
            for owner in (self.inventory, self.stock):
                for row in self._matching(owner, {"correlation_id": correlation_id}):
                    if not (owner is engine and row["id"] == primary["id"]):
                        linked.append((owner, row))
            return linked

        rule = self._legacy_candidates(engine, primary)
        if rule is None:
            return []
        owner, candidates, optional = rule
        if len(candidates) != 1 and not (optional and not candidates):
            message = (
                f"Expected 1 linked {owner.table} row for {engine.table} row "
                f"'{primary['id']}', found {len(candidates)}"
            )
            if self.strict_links:
                log.error(message)
                raise CascadeLinkAmbiguity(message, primary=primary, candidates=candidates)
            log.warning("%s; removing what was found", message)
        return [(owner, row) for row in candidates]

    def _legacy_candidates(
        self, engine: LedgerEngine, primary: Row
    ) -> Optional[Tuple[LedgerEngine, List[Row], bool]]:
        """Find the partners of a row written without a correlation id.

        Returns ``(engine, candidates, optional)`` where ``optional`` means a
        missing partner is normal, or ``None`` when the row never has partners.
        """

        quantity = abs(primary["quantity"])
        occurred = primary["date"]
        if engine is self.inventory:
            bucket = BucketType(primary["bucket_type"])
            if bucket is BucketType.FREE_DEF:
                if primary["warehouse"] != Warehouse.FACTORY.value or primary["action"] != ActionType.SELL.value:
                    return None
                criteria = {
                    "category": StockCategory.FREE_DEF.value,
                    "date": occurred,
                    "type": StockTransactionType.SELL_FREE_DEF.value,
                    "quantity": -quantity,
                }
                return self.stock, self._legacy_matching(self.stock, criteria), False
            size = BUCKET_SIZES[bucket]
            if size <= 0:
                return None
            if primary["action"] == ActionType.SELL.value:
                kind, optional = StockTransactionType.SELL_BUCKETS, False
            else:
                # Older data recorded a FILL_BUCKETS draw when buckets were stocked.
                kind, optional = StockTransactionType.FILL_BUCKETS, True
            criteria = {
                "category": StockCategory.FREE_DEF.value,
                "date": occurred,
                "type": kind.value,
                "quantity": -(quantity * size),
            }
            return self.stock, self._legacy_matching(self.stock, criteria), optional

        kind = StockTransactionType(primary["type"])
        if kind is StockTransactionType.SELL_FREE_DEF:
            criteria = {
                "bucket_type": BucketType.FREE_DEF.value,
                "warehouse": Warehouse.FACTORY.value,
                "date": occurred,
                "action": ActionType.SELL.value,
                "quantity": -quantity,
            }
            return self.inventory, self._legacy_matching(self.inventory, criteria), True
        if kind is StockTransactionType.SELL_BUCKETS:
            return self.inventory, self._bucket_sale_candidates(primary), False
        if kind is StockTransactionType.PRODUCE_BATCH:
            if primary["category"] == StockCategory.UREA.value:
                partner = StockCategory.FREE_DEF
                expected_quantity = quantity / UREA_PER_BATCH_KG * LITERS_PER_BATCH
            else:
                partner = StockCategory.UREA
                expected_quantity = -(quantity / LITERS_PER_BATCH * UREA_PER_BATCH_KG)
            criteria = {
                "category": partner.value,
                "date": occurred,
                "type": StockTransactionType.PRODUCE_BATCH.value,
                "quantity": expected_quantity,
            }
            return self.stock, self._legacy_matching(self.stock, criteria), False
        return None

    def _bucket_sale_candidates(self, primary: Row) -> List[Row]:
        """Inventory bucket sales whose liters match a legacy SELL_BUCKETS stock row."""

        liters = abs(primary["quantity"])
        matches = []
        for bucket, size in BUCKET_SIZES.items():
            if size <= 0 or liters % size:
                continue
            criteria = {
                "bucket_type": bucket.value,
                "date": primary["date"],
                "action": ActionType.SELL.value,
                "quantity": -(liters / size),
            }
            matches.extend(self._legacy_matching(self.inventory, criteria))
        return matches


__all__ = [
    "ActionKind",
    "CascadeCommand",
    "CascadeResult",
    "CascadeResolver",
]
