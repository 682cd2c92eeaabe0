"""Enumerations and conversion constants shared across the ledger modules.

Centralises domain identifiers so the storage layer, the ledger engine, the
cascade rules and the snapshot tooling rely on a single source of truth.
"""

from __future__ import annotations

from datetime import timedelta
from decimal import Decimal
from enum import Enum
from typing import Mapping


# Central schema version expected by all layers when validating data files.
EXPECTED_SCHEMA_VERSION = "1.0.0"

# Rows fetched per page when draining a table. Must not exceed the row
# ceiling of the backing store.
DEFAULT_PAGE_SIZE = 1000

DEFAULT_BACKUP_INTERVAL = timedelta(hours=24)
DEFAULT_BACKUP_PREFIX = "PMR_Backup"


class Warehouse(str, Enum):
    """Locations holding bucket inventory."""

    GURH = "GURH"
    REWA = "REWA"
    FACTORY = "FACTORY"


class BucketType(str, Enum):
    """Container products tracked in the inventory ledger."""

    TATA_G = "TATA_G"
    TATA_W = "TATA_W"
    TATA_HP = "TATA_HP"
    AL_10_LTR = "AL_10_LTR"
    AL = "AL"
    BB = "BB"
    ES = "ES"
    MH = "MH"
    MH_10_LTR = "MH_10_LTR"
    TATA_10_LTR = "TATA_10_LTR"
    IBC_TANK = "IBC_TANK"
    ECO = "ECO"
    INDIAN_OIL_20L = "INDIAN_OIL_20L"
    FREE_DEF = "FREE_DEF"


class ActionType(str, Enum):
    """Direction of an inventory movement."""

    STOCK = "STOCK"
    SELL = "SELL"


class ExpenseAccount(str, Enum):
    """Cash accounts partitioning the cash ledger."""

    CASH = "CASH"
    SHIWAM_TRIPATHI = "SHIWAM_TRIPATHI"
    ICICI = "ICICI"
    CC_CANARA = "CC_CANARA"
    CANARA_CURRENT = "CANARA_CURRENT"
    SAWALIYA_SETH_MOTORS = "SAWALIYA_SETH_MOTORS"
    VINAY = "VINAY"
    SACHIN = "SACHIN"


class CashFlowType(str, Enum):
    """Direction of a cash ledger entry."""

    INCOME = "INCOME"
    EXPENSE = "EXPENSE"


class StockTransactionType(str, Enum):
    """Production stock movements."""

    ADD_UREA = "ADD_UREA"
    PRODUCE_BATCH = "PRODUCE_BATCH"
    SELL_FREE_DEF = "SELL_FREE_DEF"
    FILL_BUCKETS = "FILL_BUCKETS"
    SELL_BUCKETS = "SELL_BUCKETS"


class StockCategory(str, Enum):
    """Stock partitions."""

    UREA = "UREA"
    FREE_DEF = "FREE_DEF"
    FINISHED_GOODS = "FINISHED_GOODS"


class StockUnit(str, Enum):
    KG = "KG"
    LITERS = "LITERS"
    BAGS = "BAGS"


class RegistryTransactionType(str, Enum):
    SALE_DEED = "Sale Deed"
    GIFT_DEED = "Gift Deed"
    LEASE_DEED = "Lease Deed"
    MORTGAGE_DEED = "Mortgage Deed"
    POWER_OF_ATTORNEY = "Power of Attorney"
    AGREEMENT_TO_SELL = "Agreement to Sell"
    OTHER = "Other"


class RegistryPaymentStatus(str, Enum):
    PENDING = "Pending"
    PARTIAL = "Partial"
    PAID = "Paid"
    CANCELLED = "Cancelled"


class LeadStatus(str, Enum):
    NEW = "NEW"
    NEED_TO_CALL = "NEED_TO_CALL"
    CALLED = "CALLED"
    GOT_RESPONSE = "GOT_RESPONSE"
    ON_HOLD = "ON_HOLD"
    CALL_IN_7_DAYS = "CALL_IN_7_DAYS"
    CONVERTED = "CONVERTED"
    NOT_INTERESTED = "NOT_INTERESTED"


class Priority(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    URGENT = "URGENT"


class PinRole(str, Enum):
    ADMIN = "ADMIN"
    EXPENSE_INVENTORY = "EXPENSE_INVENTORY"
    INVENTORY_ONLY = "INVENTORY_ONLY"
    REGISTRY_MANAGER = "REGISTRY_MANAGER"
    LEADS = "LEADS"


class BackupKind(str, Enum):
    """Who initiated a backup or restore."""

    MANUAL = "MANUAL"
    AUTOMATIC = "AUTOMATIC"


class BackupOperation(str, Enum):
    BACKUP = "BACKUP"
    RESTORE = "RESTORE"


class BackupStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class TableName(str, Enum):
    """Enumerate the tables managed by the row store."""

    INVENTORY = "inventory"
    EXPENSES = "expenses"
    STOCK = "stock"
    REGISTRY = "registry"
    LEADS = "leads"
    PINS = "pins"
    SYSTEM_SETTINGS = "system_settings"
    BACKUP_LOG = "backup_log"


# Liters held by one bucket of each type. Zero means the type never draws
# from Free DEF stock.
BUCKET_SIZES: Mapping[BucketType, Decimal] = {
    BucketType.TATA_G: Decimal("20"),
    BucketType.TATA_W: Decimal("20"),
    BucketType.TATA_HP: Decimal("20"),
    BucketType.AL_10_LTR: Decimal("10"),
    BucketType.AL: Decimal("20"),
    BucketType.BB: Decimal("20"),
    BucketType.ES: Decimal("20"),
    BucketType.MH: Decimal("20"),
    BucketType.MH_10_LTR: Decimal("10"),
    BucketType.TATA_10_LTR: Decimal("10"),
    BucketType.IBC_TANK: Decimal("0"),
    BucketType.ECO: Decimal("20"),
    BucketType.INDIAN_OIL_20L: Decimal("20"),
    BucketType.FREE_DEF: Decimal("0"),
}

UREA_PER_BATCH_KG = Decimal("360")
LITERS_PER_BATCH = Decimal("1000")
KG_PER_BAG = Decimal("45")


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "DEFAULT_PAGE_SIZE",
    "DEFAULT_BACKUP_INTERVAL",
    "DEFAULT_BACKUP_PREFIX",
    "Warehouse",
    "BucketType",
    "ActionType",
    "ExpenseAccount",
    "CashFlowType",
    "StockTransactionType",
    "StockCategory",
    "StockUnit",
    "RegistryTransactionType",
    "RegistryPaymentStatus",
    "LeadStatus",
    "Priority",
    "PinRole",
    "BackupKind",
    "BackupOperation",
    "BackupStatus",
    "TableName",
    "BUCKET_SIZES",
    "UREA_PER_BATCH_KG",
    "LITERS_PER_BATCH",
    "KG_PER_BAG",
]
