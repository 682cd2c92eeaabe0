"""Business logic layer for the PMR ledger.

This module wires the row store, the ledger engines, the cascade resolver and
the backup machinery into one :class:`RuntimeContext` and exposes the
operations the CLI (or any other front end) calls. It consumes the data access
layer for all I/O and never touches workbook cells directly.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional

from . import data_manager, log, schema
from .audit import BackupLog, BackupLogEntry
from .cascade import ActionKind, CascadeCommand, CascadeResolver, CascadeResult
from .constants import (
    EXPECTED_SCHEMA_VERSION,
    ActionType,
    BackupKind,
    BucketType,
    CashFlowType,
    ExpenseAccount,
    StockUnit,
    TableName,
    Warehouse,
)
from .errors import MissingReferenceError, ValidationError
from .ledger import LedgerEngine, PartitionKey
from .restore import RestoreCoordinator, RestoreOutcome
from .scheduler import AutoBackupScheduler
from .snapshot import BackupResult, BlobInfo, BlobStore, DirectoryBlobStore, SnapshotExporter


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration, the row store and the blob store used by the BLL."""

    settings: data_manager.ConfigSettings
    store: data_manager.RowStore
    blobs: BlobStore
    _cache: Dict[str, Any] = field(default_factory=dict, repr=False, compare=False)


@dataclass(frozen=True)
class InventoryCommand:
    """User intent for stocking or selling buckets at a warehouse."""

    bucket_type: BucketType
    warehouse: Warehouse
    action: ActionType
    quantity: Decimal
    occurred_on: Optional[date] = None
    counterpart: Optional[str] = None
    force_oversell: bool = False


@dataclass(frozen=True)
class StockCommand:
    """User intent for a production stock movement (``ADD_UREA``, ``PRODUCE_BATCH``, ``SELL_FREE_DEF``)."""

    action: ActionKind
    quantity: Decimal
    occurred_on: Optional[date] = None
    counterpart: Optional[str] = None
    description: Optional[str] = None
    unit: Optional[StockUnit] = None


@dataclass(frozen=True)
class CashCommand:
    """User intent for a cash ledger entry."""

    account: ExpenseAccount
    flow: CashFlowType
    amount: Decimal
    occurred_on: Optional[date] = None
    name: Optional[str] = None


STOCK_ACTIONS = (ActionKind.ADD_UREA, ActionKind.PRODUCE_BATCH, ActionKind.SELL_FREE_DEF)


def _resolve_date(candidate: Optional[date]) -> date:
    """Return ``candidate`` or today's UTC date when it is ``None``."""

    return candidate if candidate is not None else datetime.now(UTC).date()


def _component(context: RuntimeContext, name: str, factory: Callable[[], Any]) -> Any:
    """Build a collaborator once per context and cache it."""

    if name not in context._cache:
        context._cache[name] = factory()
        log.debug("Initialized %s for runtime context", name)
    return context._cache[name]


def ledger_engine(context: RuntimeContext, table: str) -> LedgerEngine:
    """Return the :class:`LedgerEngine` for a ledger table.

    Raises:
        MissingReferenceError: If ``table`` is not a ledger table.
    """

    try:
        spec = schema.get_table(table)
    except KeyError as exc:
        raise MissingReferenceError(str(exc)) from exc
    if not spec.is_ledger:
        raise MissingReferenceError(f"Table '{table}' has no running balances")
    return _component(
        context,
        f"engine:{table}",
        lambda: LedgerEngine(context.store, spec, page_size=context.settings.page_size),
    )


def cascade_resolver(context: RuntimeContext) -> CascadeResolver:
    return _component(
        context,
        "cascade",
        lambda: CascadeResolver(
            ledger_engine(context, TableName.INVENTORY.value),
            ledger_engine(context, TableName.STOCK.value),
            strict_links=context.settings.strict_cascade_links,
        ),
    )


def backup_log(context: RuntimeContext) -> BackupLog:
    return _component(
        context, "backup_log", lambda: BackupLog(context.store, page_size=context.settings.page_size)
    )


def snapshot_exporter(context: RuntimeContext) -> SnapshotExporter:
    return _component(
        context,
        "exporter",
        lambda: SnapshotExporter(
            context.store,
            context.blobs,
            backup_log(context),
            page_size=context.settings.page_size,
            prefix=context.settings.backup_prefix,
        ),
    )


def restore_coordinator(context: RuntimeContext) -> RestoreCoordinator:
    return _component(context, "restore", lambda: RestoreCoordinator(snapshot_exporter(context)))


def build_runtime_context(
    settings: data_manager.ConfigSettings,
    store: data_manager.RowStore,
    blobs: Optional[BlobStore] = None,
) -> RuntimeContext:
    """Assemble a context from already-open collaborators."""

    return RuntimeContext(
        settings=settings,
        store=store,
        blobs=blobs if blobs is not None else DirectoryBlobStore(settings.backup_dir),
    )


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live data workbook for the BLL.

    Resolves ``config.ini``, parses settings, opens the data workbook as a
    :class:`data_manager.WorkbookRowStore` and points the blob store at the
    configured backup directory.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.

    Returns:
        RuntimeContext: Fully populated context ready for orchestration
            functions.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """

    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    store = data_manager.WorkbookRowStore(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return build_runtime_context(settings, store)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate data file compatibility before mutating state.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
    """

    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def require_positive_amount(amount: Any) -> Decimal:
    """Coerce ``amount`` to ``Decimal`` and reject zero, negative or non-finite values.

    Raises:
        ValidationError: If the value is not a positive number.
    """

    try:
        value = Decimal(str(amount))
    except InvalidOperation:
        raise ValidationError(f"Invalid amount: {amount!r}") from None
    if not value.is_finite() or value <= 0:
        log.error("Amount validation failed: %s", amount)
        raise ValidationError("Amount must be greater than zero")
    return value


def record_inventory(context: RuntimeContext, command: InventoryCommand) -> CascadeResult:
    """Stock or sell buckets, drawing Free DEF for filled buckets that are sold.

    Raises:
        ValidationError: On malformed input or an unconfirmed oversell.
        InsufficiencyError: If Free DEF cannot fill the sold buckets.
    """

    action = ActionType(command.action)
    cascade = CascadeCommand(
        action=ActionKind.STOCK_BUCKETS if action is ActionType.STOCK else ActionKind.SELL_BUCKETS,
        occurred_on=_resolve_date(command.occurred_on),
        quantity=command.quantity,
        bucket_type=command.bucket_type,
        warehouse=command.warehouse,
        counterpart=command.counterpart,
        force_oversell=command.force_oversell,
    )
    return cascade_resolver(context).apply_derived_action(cascade)


def record_stock(context: RuntimeContext, command: StockCommand) -> CascadeResult:
    """Add Urea, produce batches or sell loose Free DEF.

    Raises:
        ValidationError: If the action is not a stock action.
        InsufficiencyError: If Urea or Free DEF cannot cover the action.
    """

    action = ActionKind(command.action)
    if action not in STOCK_ACTIONS:
        raise ValidationError(f"'{action.value}' is not a stock action")
    cascade = CascadeCommand(
        action=action,
        occurred_on=_resolve_date(command.occurred_on),
        quantity=command.quantity,
        counterpart=command.counterpart,
        description=command.description,
        unit=command.unit,
    )
    return cascade_resolver(context).apply_derived_action(cascade)


def record_cash(context: RuntimeContext, command: CashCommand) -> Dict[str, Any]:
    """Append an income (positive) or expense (negative) entry to an account."""

    amount = require_positive_amount(command.amount)
    flow = CashFlowType(command.flow)
    signed = amount if flow is CashFlowType.INCOME else -amount
    return ledger_engine(context, TableName.EXPENSES.value).append(
        {"account": command.account},
        _resolve_date(command.occurred_on),
        signed,
        {"type": flow, "name": command.name},
    )


def edit_transaction(context: RuntimeContext, table: str, row_id: str, fields: Mapping[str, Any]) -> Dict[str, Any]:
    """Edit one ledger row; quantities are given signed, as stored."""

    return ledger_engine(context, table).edit(row_id, fields)


def delete_transaction(context: RuntimeContext, table: str, row_id: str) -> List[Dict[str, Any]]:
    """Delete a ledger row together with the rows of its cascade group.

    Returns:
        list[dict[str, Any]]: Every removed row, the requested one first.
    """

    if table in (TableName.INVENTORY.value, TableName.STOCK.value):
        return cascade_resolver(context).reverse_derived_action(table, row_id)
    return [ledger_engine(context, table).remove(row_id)]


def current_balances(context: RuntimeContext, table: str) -> Dict[PartitionKey, Decimal]:
    """Current balance of every partition of a ledger table."""

    return ledger_engine(context, table).balances()


def repair_running_balances(context: RuntimeContext) -> Dict[str, Dict[PartitionKey, int]]:
    """Recompute every partition of every ledger table.

    Returns:
        dict[str, dict[PartitionKey, int]]: Rewritten balances per partition,
            keyed by table.
    """

    report: Dict[str, Dict[PartitionKey, int]] = {}
    for spec in schema.LEDGER_TABLES:
        report[spec.name] = ledger_engine(context, spec.name).recompute_all()
    return report


def run_backup(context: RuntimeContext, kind: BackupKind = BackupKind.MANUAL) -> BackupResult:
    return snapshot_exporter(context).create_backup(kind)


def list_backups(context: RuntimeContext, limit: int = 10) -> List[BackupLogEntry]:
    return backup_log(context).recent(limit)


def list_snapshots(context: RuntimeContext) -> List[BlobInfo]:
    return context.blobs.list_files()


def run_restore(context: RuntimeContext, remote_file_id: str, kind: BackupKind = BackupKind.MANUAL) -> RestoreOutcome:
    """Restore from a snapshot; the outcome reports partial success explicitly."""

    return restore_coordinator(context).restore(remote_file_id, kind)


def factory_reset(context: RuntimeContext) -> Dict[str, int]:
    """Wipe inventory, cash and stock ledgers and prune the backup log.

    Everything runs in one store transaction. The newest successful backup
    entry survives so the automatic scheduler does not fire immediately.

    Returns:
        dict[str, int]: Deleted rows per table.
    """

    deleted: Dict[str, int] = {}
    with context.store.transaction():
        for table in (TableName.STOCK, TableName.INVENTORY, TableName.EXPENSES):
            ids = [
                row["id"]
                for row in data_manager.drain_rows(context.store, table.value, page_size=context.settings.page_size)
            ]
            for row_id in ids:
                context.store.delete(table.value, row_id)
            deleted[table.value] = len(ids)
        deleted[TableName.BACKUP_LOG.value] = backup_log(context).prune_to_latest_success()
    log.warning(
        "Factory reset removed %s",
        ", ".join(f"{count} {table}" for table, count in deleted.items()),
    )
    return deleted


def start_auto_backup(context: RuntimeContext, *, poll_seconds: float = 300.0) -> AutoBackupScheduler:
    """Start the automatic backup scheduler for this context."""

    scheduler = AutoBackupScheduler(
        snapshot_exporter(context),
        interval=context.settings.backup_interval,
        poll_seconds=poll_seconds,
    )
    return scheduler.start()


def persist_context(context: RuntimeContext) -> None:
    """Persist in-memory store changes to disk when the store supports it."""

    save = getattr(context.store, "save", None)
    if save is None:
        log.debug("Row store has no save(); nothing to persist")
        return
    save()


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reopen the data workbook to discard unsaved modifications.

    Raises:
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """

    store = data_manager.WorkbookRowStore(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(settings=context.settings, store=store, blobs=context.blobs)


__all__ = [
    "RuntimeContext",
    "InventoryCommand",
    "StockCommand",
    "CashCommand",
    "STOCK_ACTIONS",
    "build_runtime_context",
    "load_runtime_context",
    "ensure_schema_version",
    "ledger_engine",
    "cascade_resolver",
    "backup_log",
    "snapshot_exporter",
    "restore_coordinator",
    "require_positive_amount",
    "record_inventory",
    "record_stock",
    "record_cash",
    "edit_transaction",
    "delete_transaction",
    "current_balances",
    "repair_running_balances",
    "run_backup",
    "list_backups",
    "list_snapshots",
    "run_restore",
    "factory_reset",
    "start_auto_backup",
    "persist_context",
    "refresh_context",
]
