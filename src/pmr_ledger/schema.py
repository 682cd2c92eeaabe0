"""Declarative table definitions for the row store and the snapshot workbook.

Each :class:`TableSpec` lists the storage field names, the human-readable
column labels used in snapshot sheets, and the value kind of every column.
Ledger-bearing tables additionally name their partition fields, the signed
quantity field and the cached running balance field.

The module also owns value conversion in three directions:

* :func:`parse_value` turns loosely typed input (worksheet cells, snapshot
  records, command arguments) into the canonical Python type of a column.
* :func:`storage_value` renders a canonical value for the data workbook.
* :func:`cell_value` renders a canonical value for a snapshot sheet.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, date, datetime, time
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple, Type

from openpyxl.utils.datetime import from_excel

from .constants import (
    ActionType,
    BackupKind,
    BackupOperation,
    BackupStatus,
    BucketType,
    CashFlowType,
    ExpenseAccount,
    LeadStatus,
    PinRole,
    Priority,
    RegistryPaymentStatus,
    RegistryTransactionType,
    StockCategory,
    StockTransactionType,
    StockUnit,
    TableName,
    Warehouse,
)


class ColumnKind(str, Enum):
    """Value kinds a column may hold."""

    TEXT = "text"
    DECIMAL = "decimal"
    INT = "int"
    DATE = "date"
    DATETIME = "datetime"
    BOOL = "bool"


@dataclass(frozen=True)
class Column:
    """One column of a table: storage field, sheet label and value rules."""

    field: str
    label: str
    kind: ColumnKind = ColumnKind.TEXT
    required: bool = True
    choices: Optional[Tuple[str, ...]] = None
    default: Any = None


@dataclass(frozen=True)
class TableSpec:
    """Schema of a single table and, when ``sheet`` is set, its snapshot sheet."""

    name: str
    sheet: Optional[str]
    columns: Tuple[Column, ...]
    date_field: str = "created_at"
    partition_fields: Tuple[str, ...] = ()
    quantity_field: Optional[str] = None
    balance_field: Optional[str] = None
    mandatory: bool = False

    @property
    def is_ledger(self) -> bool:
        return bool(self.partition_fields) and self.balance_field is not None

    @property
    def fields(self) -> Tuple[str, ...]:
        return tuple(column.field for column in self.columns)

    @property
    def labels(self) -> Tuple[str, ...]:
        return tuple(column.label for column in self.columns)

    def column(self, field: str) -> Column:
        for column in self.columns:
            if column.field == field:
                return column
        raise KeyError(f"Unknown field '{field}' for table '{self.name}'")

    def has_field(self, field: str) -> bool:
        return field in self.fields


def _choices(enum_type: Type[Enum]) -> Tuple[str, ...]:
    return tuple(member.value for member in enum_type)


_ID = Column("id", "ID", required=False)
_CREATED_AT = Column("created_at", "Created At", ColumnKind.DATETIME, required=False)
_CORRELATION = Column("correlation_id", "Correlation ID", required=False)


INVENTORY = TableSpec(
    name=TableName.INVENTORY.value,
    sheet="Inventory",
    columns=(
        _ID,
        Column("date", "Date", ColumnKind.DATE),
        Column("warehouse", "Warehouse", choices=_choices(Warehouse)),
        Column("bucket_type", "Bucket Type", choices=_choices(BucketType)),
        Column("action", "Action", choices=_choices(ActionType)),
        Column("quantity", "Quantity", ColumnKind.DECIMAL),
        Column("buyer_seller", "Buyer/Seller", default="N/A"),
        Column("running_total", "Running Total", ColumnKind.DECIMAL),
        _CORRELATION,
        _CREATED_AT,
    ),
    date_field="date",
    partition_fields=("bucket_type", "warehouse"),
    quantity_field="quantity",
    balance_field="running_total",
    mandatory=True,
)

EXPENSES = TableSpec(
    name=TableName.EXPENSES.value,
    sheet="Expenses",
    columns=(
        _ID,
        Column("date", "Date", ColumnKind.DATE),
        Column("amount", "Amount", ColumnKind.DECIMAL),
        Column("account", "Account", choices=_choices(ExpenseAccount)),
        Column("type", "Type", choices=_choices(CashFlowType)),
        Column("name", "Name", default="N/A"),
        Column("running_balance", "Running Balance", ColumnKind.DECIMAL),
        _CREATED_AT,
    ),
    date_field="date",
    partition_fields=("account",),
    quantity_field="amount",
    balance_field="running_balance",
    mandatory=True,
)

STOCK = TableSpec(
    name=TableName.STOCK.value,
    sheet="Stock",
    columns=(
        _ID,
        Column("date", "Date", ColumnKind.DATE),
        Column("type", "Type", choices=_choices(StockTransactionType)),
        Column("category", "Category", choices=_choices(StockCategory)),
        Column("quantity", "Quantity", ColumnKind.DECIMAL),
        Column("unit", "Unit", choices=_choices(StockUnit)),
        Column("description", "Description", required=False),
        Column("running_total", "Running Total", ColumnKind.DECIMAL),
        _CORRELATION,
        _CREATED_AT,
    ),
    date_field="date",
    partition_fields=("category",),
    quantity_field="quantity",
    balance_field="running_total",
)

REGISTRY = TableSpec(
    name=TableName.REGISTRY.value,
    sheet="Registry",
    columns=(
        _ID,
        Column("date", "Date", ColumnKind.DATE),
        Column("registration_number", "Registration Number", required=False),
        Column("property_location", "Property Location"),
        Column("seller_name", "Seller Name"),
        Column("buyer_name", "Buyer Name"),
        Column("transaction_type", "Transaction Type", choices=_choices(RegistryTransactionType)),
        Column("property_value", "Property Value", ColumnKind.DECIMAL),
        Column(
            "payment_status",
            "Payment Status",
            choices=_choices(RegistryPaymentStatus),
            default=RegistryPaymentStatus.PENDING.value,
        ),
        Column("notes", "Notes", required=False),
        _CREATED_AT,
    ),
    date_field="date",
)

LEADS = TableSpec(
    name=TableName.LEADS.value,
    sheet="Leads",
    columns=(
        _ID,
        Column("name", "Name", default="Unknown"),
        Column("phone", "Phone", required=False),
        Column("company", "Company", required=False),
        Column("status", "Status", choices=_choices(LeadStatus), default=LeadStatus.NEW.value),
        Column("priority", "Priority", choices=_choices(Priority), default=Priority.MEDIUM.value),
        Column("last_call_date", "Last Call Date", ColumnKind.DATE, required=False),
        Column("next_follow_up", "Next Follow-Up", ColumnKind.DATE, required=False),
        Column("quick_note", "Quick Note", required=False),
        _CREATED_AT,
    ),
)

PINS = TableSpec(
    name=TableName.PINS.value,
    sheet="Pins",
    columns=(
        _ID,
        Column("pin_number", "PIN Number"),
        Column("role", "Role", choices=_choices(PinRole), default=PinRole.INVENTORY_ONLY.value),
        _CREATED_AT,
    ),
)

SYSTEM_SETTINGS = TableSpec(
    name=TableName.SYSTEM_SETTINGS.value,
    sheet="SystemSettings",
    columns=(
        _ID,
        Column("key", "Key"),
        Column("value", "Value", required=False),
        Column("updated_at", "Updated At", ColumnKind.DATETIME, required=False),
    ),
    date_field="updated_at",
)

BACKUP_LOG = TableSpec(
    name=TableName.BACKUP_LOG.value,
    sheet=None,
    columns=(
        _ID,
        Column("timestamp", "Timestamp", ColumnKind.DATETIME),
        Column("operation", "Operation", choices=_choices(BackupOperation)),
        Column("kind", "Kind", choices=_choices(BackupKind)),
        Column("remote_file_id", "Remote File ID", required=False),
        Column("counts", "Counts", required=False),
        Column("status", "Status", choices=_choices(BackupStatus)),
        Column("error_message", "Error Message", required=False),
        Column("safety_backup_id", "Safety Backup ID", required=False),
    ),
    date_field="timestamp",
)


# Sheet order inside a snapshot. The first two are mandatory.
SNAPSHOT_TABLES: Tuple[TableSpec, ...] = (
    INVENTORY,
    EXPENSES,
    STOCK,
    REGISTRY,
    LEADS,
    PINS,
    SYSTEM_SETTINGS,
)

STORE_TABLES: Mapping[str, TableSpec] = {
    spec.name: spec for spec in (*SNAPSHOT_TABLES, BACKUP_LOG)
}

LEDGER_TABLES: Tuple[TableSpec, ...] = tuple(spec for spec in SNAPSHOT_TABLES if spec.is_ledger)

MANDATORY_SHEETS: Tuple[str, ...] = tuple(
    spec.sheet for spec in SNAPSHOT_TABLES if spec.mandatory and spec.sheet
)


def get_table(name: str) -> TableSpec:
    """Resolve a table spec by storage name, raising ``KeyError`` when unknown."""

    try:
        return STORE_TABLES[name]
    except KeyError:
        raise KeyError(f"Unknown table: {name}") from None


def _as_decimal(raw: Any, column: Column) -> Decimal:
    if isinstance(raw, bool):
        raise ValueError(f"invalid number {raw!r} for '{column.label}'")
    if isinstance(raw, Decimal):
        value = raw
    elif isinstance(raw, (int, float)):
        value = Decimal(str(raw))
    else:
        try:
            value = Decimal(str(raw))
        except InvalidOperation:
            raise ValueError(f"invalid number {raw!r} for '{column.label}'") from None
    if not value.is_finite():
        raise ValueError(f"invalid number {raw!r} for '{column.label}'")
    return value


def _as_date(raw: Any, column: Column) -> date:
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    if isinstance(raw, (int, float)) and not isinstance(raw, bool):
        converted = from_excel(raw)
        if not isinstance(converted, datetime):
            raise ValueError(f"invalid date {raw!r} for '{column.label}'")
        return converted.date()
    text = str(raw)
    try:
        return date.fromisoformat(text)
    except ValueError:
        pass
    try:
        return datetime.fromisoformat(text).date()
    except ValueError:
        raise ValueError(f"invalid date {raw!r} for '{column.label}'") from None


def _as_datetime(raw: Any, column: Column) -> datetime:
    if isinstance(raw, datetime):
        value = raw
    elif isinstance(raw, date):
        value = datetime.combine(raw, time())
    elif isinstance(raw, (int, float)) and not isinstance(raw, bool):
        value = from_excel(raw)
        if not isinstance(value, datetime):
            raise ValueError(f"invalid timestamp {raw!r} for '{column.label}'")
    else:
        try:
            value = datetime.fromisoformat(str(raw))
        except ValueError:
            raise ValueError(f"invalid timestamp {raw!r} for '{column.label}'") from None
    # Naive timestamps are taken as UTC so ordering never mixes naive and aware.
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value


def parse_value(column: Column, raw: Any) -> Any:
    """Convert ``raw`` into the canonical type of ``column``.

    Blank input (``None`` or whitespace-only text) resolves to the column
    default, then to ``None`` for optional columns.

    Raises:
        ValueError: If a required value is missing, cannot be converted, or is
            not one of the column's allowed choices.
    """

    if isinstance(raw, Enum):
        raw = raw.value
    if isinstance(raw, str):
        raw = raw.strip()
        if raw == "":
            raw = None
    if raw is None:
        if column.default is not None:
            return column.default
        if column.required:
            raise ValueError(f"missing value for '{column.label}'")
        return None

    kind = column.kind
    if kind is ColumnKind.DECIMAL:
        return _as_decimal(raw, column)
    if kind is ColumnKind.DATE:
        return _as_date(raw, column)
    if kind is ColumnKind.DATETIME:
        return _as_datetime(raw, column)
    if kind is ColumnKind.INT:
        try:
            return int(raw)
        except (TypeError, ValueError):
            raise ValueError(f"invalid integer {raw!r} for '{column.label}'") from None
    if kind is ColumnKind.BOOL:
        if isinstance(raw, str):
            return raw.lower() in {"1", "true", "yes"}
        return bool(raw)

    if isinstance(raw, float) and raw.is_integer():
        text = str(int(raw))
    else:
        text = str(raw)
    if column.choices is not None and text not in column.choices:
        raise ValueError(f"invalid value {text!r} for '{column.label}'")
    return text


def storage_value(column: Column, value: Any) -> Any:
    """Render a canonical value for a data workbook cell (exact text for numbers and dates)."""

    if value is None:
        return None
    if isinstance(value, Enum):
        value = value.value
    if column.kind in (ColumnKind.DATE, ColumnKind.DATETIME):
        return value.isoformat()
    if column.kind is ColumnKind.DECIMAL:
        return str(value)
    return value


def cell_value(column: Column, value: Any) -> Any:
    """Render a canonical value for a human-readable snapshot sheet."""

    if value is None:
        return None
    if isinstance(value, Enum):
        value = value.value
    kind = column.kind
    if kind is ColumnKind.DATE:
        return value.isoformat()
    if kind is ColumnKind.DATETIME:
        return value.isoformat(sep=" ")
    if kind is ColumnKind.DECIMAL:
        decimal_value = Decimal(value)
        if decimal_value == decimal_value.to_integral_value():
            return int(decimal_value)
        if Decimal(repr(float(decimal_value))) == decimal_value:
            return float(decimal_value)
        # Too precise for a float cell; exact text parses back unchanged.
        return format(decimal_value, "f")
    if kind is ColumnKind.TEXT and value == "":
        return None
    return value


def flatten_row(spec: TableSpec, row: Mapping[str, Any]) -> Dict[str, Any]:
    """Turn a stored row into a snapshot record keyed by column label."""

    return {column.label: cell_value(column, row.get(column.field)) for column in spec.columns}


def parse_record(spec: TableSpec, record: Mapping[str, Any]) -> Dict[str, Any]:
    """Turn a snapshot record keyed by label back into a typed storage row.

    Raises:
        ValueError: If any column fails :func:`parse_value`.
    """

    return {column.field: parse_value(column, record.get(column.label)) for column in spec.columns}


__all__ = [
    "ColumnKind",
    "Column",
    "TableSpec",
    "INVENTORY",
    "EXPENSES",
    "STOCK",
    "REGISTRY",
    "LEADS",
    "PINS",
    "SYSTEM_SETTINGS",
    "BACKUP_LOG",
    "SNAPSHOT_TABLES",
    "STORE_TABLES",
    "LEDGER_TABLES",
    "MANDATORY_SHEETS",
    "get_table",
    "parse_value",
    "storage_value",
    "cell_value",
    "flatten_row",
    "parse_record",
]
