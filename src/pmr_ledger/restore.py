"""Restore live data from a published snapshot.

A restore runs in phases::

    START -> BACKED_UP -> FETCHED -> WIPED -> REINSERTED -> LOGGED

Exits before ``FETCHED`` leave live data untouched: a safety backup of the
current state is taken first, then the candidate snapshot is downloaded and
checked for its mandatory sheets. From there each table that has a sheet in
the snapshot is wiped and refilled inside its own store transaction, so a
store failure rolls that table back while the other tables proceed. Rows that
cannot be parsed are skipped and reported; they never stop the rest of the
sheet.
"""

from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from . import log, schema
from .constants import BackupKind, BackupOperation, BackupStatus
from .data_manager import drain_rows, sort_key
from .errors import BlobStoreError, SnapshotFormatError, StoreError
from .snapshot import SnapshotDocument, SnapshotExporter, deserialize_snapshot


Row = Dict[str, Any]


class RestorePhase(str, Enum):
    START = "START"
    BACKED_UP = "BACKED_UP"
    FETCHED = "FETCHED"
    WIPED = "WIPED"
    REINSERTED = "REINSERTED"
    LOGGED = "LOGGED"


class RestoreStatus(str, Enum):
    SUCCESS = "SUCCESS"
    PARTIAL = "PARTIAL"
    FAILED = "FAILED"


@dataclass(frozen=True)
class RowError:
    """A record (or a whole sheet when ``row_number`` is ``None``) that was not restored."""

    sheet: str
    row_number: Optional[int]
    message: str

    def __str__(self) -> str:
        if self.row_number is None:
            return f"{self.sheet}: {self.message}"
        return f"{self.sheet} row {self.row_number}: {self.message}"


@dataclass
class RestoreOutcome:
    """Structured result of one restore attempt."""

    status: RestoreStatus
    phase: RestorePhase
    remote_file_id: str
    safety_backup_id: Optional[str] = None
    wiped: Dict[str, int] = field(default_factory=dict)
    restored: Dict[str, int] = field(default_factory=dict)
    errors: List[RowError] = field(default_factory=list)
    message: Optional[str] = None
    logged: bool = False

    @property
    def changes_made(self) -> bool:
        """True once any row was wiped or reinserted; an error does not mean nothing happened."""

        return any(self.wiped.values()) or any(self.restored.values())

    @property
    def succeeded(self) -> bool:
        return self.status is not RestoreStatus.FAILED


def summarize_errors(errors: Sequence[RowError], limit: int = 5) -> str:
    """Render the error list for the audit log, truncated after ``limit`` items."""

    head = "; ".join(str(error) for error in errors[:limit])
    if len(errors) > limit:
        head += f"; ... {len(errors) - limit} more"
    return f"Restore completed with {len(errors)} errors: {head}"


class RestoreCoordinator:
    """Run restores against the store, blob store and audit log of ``exporter``.

    Only one restore runs at a time; a second request made while one is in
    progress fails immediately without touching anything.
    """

    def __init__(
        self,
        exporter: SnapshotExporter,
        *,
        id_factory: Optional[Callable[[], str]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.exporter = exporter
        self.store = exporter.store
        self.blobs = exporter.blobs
        self.audit_log = exporter.audit_log
        self.tables = exporter.tables
        self.id_factory = id_factory or (lambda: uuid.uuid4().hex)
        self.clock = clock or (lambda: datetime.now(UTC))
        self._running = threading.Lock()

    def restore(self, remote_file_id: str, kind: BackupKind = BackupKind.MANUAL) -> RestoreOutcome:
        """Replace live data with the snapshot identified by ``remote_file_id``.

        Never raises for operational failures; inspect the returned
        :class:`RestoreOutcome` instead.
        """

        kind = BackupKind(kind)
        if not self._running.acquire(blocking=False):
            message = "Another restore is already in progress"
            log.warning("Rejected restore of '%s': %s", remote_file_id, message)
            return RestoreOutcome(RestoreStatus.FAILED, RestorePhase.START, remote_file_id, message=message)
        try:
            return self._restore(remote_file_id, kind)
        finally:
            self._running.release()

    def _fail(self, outcome: RestoreOutcome, kind: BackupKind, message: str) -> RestoreOutcome:
        outcome.status = RestoreStatus.FAILED
        outcome.message = message
        self._log(outcome, kind, message)
        return outcome

    def _log(self, outcome: RestoreOutcome, kind: BackupKind, error_message: Optional[str]) -> None:
        try:
            self.audit_log.append(
                BackupOperation.RESTORE,
                kind,
                BackupStatus.FAILED if outcome.status is RestoreStatus.FAILED else BackupStatus.SUCCESS,
                remote_file_id=outcome.remote_file_id,
                counts=outcome.restored,
                error_message=error_message,
                safety_backup_id=outcome.safety_backup_id,
            )
        except StoreError:
            log.exception("Could not record restore of '%s' in the backup log", outcome.remote_file_id)
            return
        outcome.logged = True
        if outcome.phase is RestorePhase.REINSERTED:
            outcome.phase = RestorePhase.LOGGED

    def _restore(self, remote_file_id: str, kind: BackupKind) -> RestoreOutcome:
        outcome = RestoreOutcome(RestoreStatus.FAILED, RestorePhase.START, remote_file_id)
        log.info("Starting restore from '%s'", remote_file_id)

        try:
            safety = self.exporter.create_backup(kind)
        except StoreError as exc:
            # The snapshot may exist but its audit entry does not; treat it as unusable.
            log.error("Safety backup could not be recorded: %s", exc)
            return self._fail(outcome, kind, f"Safety backup failed: {exc}")
        if not safety.succeeded:
            return self._fail(outcome, kind, f"Safety backup failed: {safety.error_message}")
        outcome.safety_backup_id = safety.remote_file_id
        outcome.phase = RestorePhase.BACKED_UP

        try:
            doc = self.fetch(remote_file_id)
        except (BlobStoreError, SnapshotFormatError) as exc:
            log.error("Restore of '%s' aborted before any change: %s", remote_file_id, exc)
            return self._fail(outcome, kind, str(exc))
        outcome.phase = RestorePhase.FETCHED

        for spec in self.tables:
            if not doc.has_sheet(spec.sheet):
                log.info("Snapshot has no '%s' sheet; leaving %s untouched", spec.sheet, spec.name)
                continue
            rows, row_errors = self.prepare_rows(spec, doc.records(spec.sheet))
            outcome.errors.extend(row_errors)
            try:
                with self.store.transaction():
                    wiped = self.wipe(spec)
                    restored = self.reinsert(spec, rows)
            except StoreError as exc:
                log.error("Restore of %s rolled back: %s", spec.name, exc)
                outcome.errors.append(RowError(spec.sheet, None, f"rolled back, existing rows kept: {exc}"))
                continue
            outcome.wiped[spec.name] = wiped
            outcome.restored[spec.name] = restored
            outcome.phase = RestorePhase.WIPED
            log.info("Restored %s: %d row(s) replaced by %d", spec.name, wiped, restored)
        outcome.phase = RestorePhase.REINSERTED

        if not outcome.errors:
            outcome.status = RestoreStatus.SUCCESS
            self._log(outcome, kind, None)
        else:
            outcome.status = RestoreStatus.PARTIAL if outcome.changes_made else RestoreStatus.FAILED
            outcome.message = summarize_errors(outcome.errors)
            self._log(outcome, kind, outcome.message)

        log.info(
            "Restore from '%s' finished with status %s (%d error(s), safety backup '%s')",
            remote_file_id,
            outcome.status.value,
            len(outcome.errors),
            outcome.safety_backup_id,
        )
        return outcome

    def fetch(self, remote_file_id: str) -> SnapshotDocument:
        """Download and parse a snapshot, checking its mandatory sheets.

        Raises:
            BlobStoreError: If the download fails.
            SnapshotFormatError: If the content is unreadable or a mandatory
                sheet is missing.
        """

        doc = deserialize_snapshot(self.blobs.download(remote_file_id))
        missing = [sheet for sheet in schema.MANDATORY_SHEETS if not doc.has_sheet(sheet)]
        if missing:
            raise SnapshotFormatError(f"Snapshot is missing mandatory sheet(s): {', '.join(missing)}")
        return doc

    def prepare_rows(self, spec: schema.TableSpec, records: Sequence[Row]) -> Tuple[List[Row], List[RowError]]:
        """Parse ``records`` into storage rows sorted by date.

        Row numbers in the returned errors are spreadsheet rows, the header
        being row 1.
        """

        rows: List[Row] = []
        errors: List[RowError] = []
        for index, record in enumerate(records):
            try:
                rows.append(schema.parse_record(spec, record))
            except ValueError as exc:
                error = RowError(spec.sheet, index + 2, str(exc))
                log.warning("Skipping %s", error)
                errors.append(error)
        rows.sort(key=lambda row: sort_key([row.get(spec.date_field), row.get("created_at")]))
        return rows, errors

    def wipe(self, spec: schema.TableSpec) -> int:
        """Delete every row of ``spec``'s table and return how many there were."""

        ids = [row["id"] for row in drain_rows(self.store, spec.name, page_size=self.exporter.page_size)]
        for row_id in ids:
            self.store.delete(spec.name, row_id)
        return len(ids)

    def reinsert(self, spec: schema.TableSpec, rows: Sequence[Row]) -> int:
        """Insert ``rows`` with fresh ids, trusting any stored running balance."""

        base = self.clock()
        for offset, row in enumerate(rows):
            fresh = dict(row)
            fresh["id"] = self.id_factory()
            if spec.has_field("created_at") and fresh.get("created_at") is None:
                # Keep sheet order for rows exported without a creation time.
                fresh["created_at"] = base + timedelta(microseconds=offset)
            self.store.insert(spec.name, fresh)
        return len(rows)


__all__ = [
    "RestorePhase",
    "RestoreStatus",
    "RowError",
    "RestoreOutcome",
    "RestoreCoordinator",
    "summarize_errors",
]
