"""Append-only audit trail of backup and restore attempts."""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Callable, Dict, List, Mapping, Optional

from . import log, schema
from .constants import DEFAULT_PAGE_SIZE, BackupKind, BackupOperation, BackupStatus, TableName
from .data_manager import RowStore, drain_rows


@dataclass(frozen=True)
class BackupLogEntry:
    """One export or restore attempt as recorded in the ``backup_log`` table."""

    id: str
    timestamp: datetime
    operation: BackupOperation
    kind: BackupKind
    status: BackupStatus
    remote_file_id: Optional[str] = None
    counts: Mapping[str, int] = field(default_factory=dict)
    error_message: Optional[str] = None
    safety_backup_id: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status is BackupStatus.SUCCESS

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "operation": self.operation.value,
            "kind": self.kind.value,
            "remote_file_id": self.remote_file_id,
            "counts": json.dumps(dict(self.counts), sort_keys=True),
            "status": self.status.value,
            "error_message": self.error_message,
            "safety_backup_id": self.safety_backup_id,
        }

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "BackupLogEntry":
        raw_counts = row.get("counts")
        counts = json.loads(raw_counts) if raw_counts else {}
        return cls(
            id=row["id"],
            timestamp=row["timestamp"],
            operation=BackupOperation(row["operation"]),
            kind=BackupKind(row["kind"]),
            status=BackupStatus(row["status"]),
            remote_file_id=row.get("remote_file_id"),
            counts=counts,
            error_message=row.get("error_message"),
            safety_backup_id=row.get("safety_backup_id"),
        )


class BackupLog:
    """Read and write :class:`BackupLogEntry` records through a row store."""

    table = TableName.BACKUP_LOG.value

    def __init__(
        self,
        store: RowStore,
        *,
        clock: Optional[Callable[[], datetime]] = None,
        id_factory: Optional[Callable[[], str]] = None,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> None:
        self.store = store
        self.clock = clock or (lambda: datetime.now(UTC))
        self.id_factory = id_factory or (lambda: uuid.uuid4().hex)
        self.page_size = page_size

    def append(
        self,
        operation: BackupOperation,
        kind: BackupKind,
        status: BackupStatus,
        *,
        remote_file_id: Optional[str] = None,
        counts: Optional[Mapping[str, int]] = None,
        error_message: Optional[str] = None,
        safety_backup_id: Optional[str] = None,
    ) -> BackupLogEntry:
        """Record one attempt. Entries are never edited afterwards."""

        entry = BackupLogEntry(
            id=self.id_factory(),
            timestamp=self.clock(),
            operation=BackupOperation(operation),
            kind=BackupKind(kind),
            status=BackupStatus(status),
            remote_file_id=remote_file_id,
            counts=dict(counts or {}),
            error_message=error_message,
            safety_backup_id=safety_backup_id,
        )
        row = entry.to_row()
        spec = schema.BACKUP_LOG
        self.store.insert(self.table, {name: schema.parse_value(spec.column(name), value) for name, value in row.items()})
        level = log.info if entry.succeeded else log.error
        level(
            "Logged %s %s %s (file=%s)%s",
            entry.kind.value,
            entry.operation.value,
            entry.status.value,
            entry.remote_file_id or "-",
            f": {entry.error_message}" if entry.error_message else "",
        )
        return entry

    def recent(self, limit: int = 10, *, operation: Optional[BackupOperation] = None) -> List[BackupLogEntry]:
        """Return up to ``limit`` entries, newest first."""

        filter = {"operation": BackupOperation(operation).value} if operation else None
        rows = self.store.select_ordered(self.table, filter, ("-timestamp",), 0, limit)
        return [BackupLogEntry.from_row(row) for row in rows]

    def last_successful(self, operation: BackupOperation = BackupOperation.BACKUP) -> Optional[BackupLogEntry]:
        rows = self.store.select_ordered(
            self.table,
            {"operation": BackupOperation(operation).value, "status": BackupStatus.SUCCESS.value},
            ("-timestamp",),
            0,
            1,
        )
        return BackupLogEntry.from_row(rows[0]) if rows else None

    def prune_to_latest_success(self) -> int:
        """Delete every entry except the newest successful backup.

        Returns:
            int: Number of entries deleted.
        """

        with self.store.transaction():
            keep = self.last_successful()
            doomed = [
                row["id"]
                for row in drain_rows(self.store, self.table, page_size=self.page_size)
                if keep is None or row["id"] != keep.id
            ]
            for row_id in doomed:
                self.store.delete(self.table, row_id)
        log.info("Pruned %d backup log entr%s", len(doomed), "y" if len(doomed) == 1 else "ies")
        return len(doomed)


__all__ = ["BackupLogEntry", "BackupLog"]
