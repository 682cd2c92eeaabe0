"""Snapshot export: drain every tracked table into one multi-sheet workbook.

The exporter reads each table through :func:`data_manager.drain_rows`,
flattens rows into records keyed by human-readable column labels, writes one
sheet per table with openpyxl and hands the bytes to a :class:`BlobStore`.
Every attempt, successful or not, ends with a :class:`audit.BackupLog` entry.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from io import BytesIO
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Sequence
from zipfile import BadZipFile

import openpyxl
from openpyxl.styles import Font
from openpyxl.utils.exceptions import InvalidFileException

from . import log, schema
from .audit import BackupLog, BackupLogEntry
from .constants import (
    DEFAULT_BACKUP_PREFIX,
    DEFAULT_PAGE_SIZE,
    BackupKind,
    BackupOperation,
    BackupStatus,
)
from .data_manager import RowStore, drain_rows
from .errors import BlobStoreError, SnapshotFormatError


Record = Dict[str, Any]

SNAPSHOT_SUFFIX = ".xlsx"


@dataclass(frozen=True)
class SnapshotDocument:
    """Point-in-time export: sheet name to records keyed by column label."""

    name: str
    created_at: Optional[datetime]
    sheets: Mapping[str, List[Record]] = field(default_factory=dict)

    def records(self, sheet: str) -> List[Record]:
        return list(self.sheets.get(sheet, []))

    def has_sheet(self, sheet: str) -> bool:
        return sheet in self.sheets

    @property
    def counts(self) -> Dict[str, int]:
        return {sheet: len(records) for sheet, records in self.sheets.items()}


@dataclass(frozen=True)
class BlobInfo:
    remote_id: str
    name: str
    size: int
    modified: datetime


class BlobStore(Protocol):
    """Remote storage for snapshot files."""

    def upload(self, data: bytes, filename: str) -> str: ...

    def download(self, remote_id: str) -> bytes: ...

    def list_files(self) -> List[BlobInfo]: ...


class DirectoryBlobStore:
    """:class:`BlobStore` keeping snapshot files in a local directory.

    The remote id of a snapshot is its file name. Every failure surfaces as a
    single :class:`BlobStoreError`.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root).expanduser().resolve()

    def _path(self, remote_id: str) -> Path:
        if not remote_id or Path(remote_id).name != remote_id:
            raise BlobStoreError(f"Invalid snapshot id: {remote_id!r}")
        return self.root / remote_id

    def upload(self, data: bytes, filename: str) -> str:
        target = self._path(filename)
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            with open(target, "xb") as handle:
                handle.write(data)
        except FileExistsError as exc:
            raise BlobStoreError(f"Snapshot already exists: {filename}") from exc
        except OSError as exc:
            raise BlobStoreError(f"Failed to upload '{filename}': {exc}") from exc
        log.debug("Uploaded %d bytes to '%s'", len(data), target)
        return filename

    def download(self, remote_id: str) -> bytes:
        source = self._path(remote_id)
        try:
            return source.read_bytes()
        except OSError as exc:
            raise BlobStoreError(f"Failed to download '{remote_id}': {exc}") from exc

    def list_files(self) -> List[BlobInfo]:
        """List stored snapshots, newest first."""

        if not self.root.exists():
            return []
        try:
            files = [
                BlobInfo(
                    remote_id=path.name,
                    name=path.name,
                    size=path.stat().st_size,
                    modified=datetime.fromtimestamp(path.stat().st_mtime, UTC),
                )
                for path in self.root.glob(f"*{SNAPSHOT_SUFFIX}")
                if path.is_file()
            ]
        except OSError as exc:
            raise BlobStoreError(f"Failed to list '{self.root}': {exc}") from exc
        return sorted(files, key=lambda info: (info.modified, info.name), reverse=True)


def snapshot_filename(prefix: str, when: datetime) -> str:
    """Build a collision-free snapshot file name stamped with ``when``."""

    return f"{prefix}_{when:%Y-%m-%d_%H-%M-%S-%f}{SNAPSHOT_SUFFIX}"


def serialize_snapshot(doc: SnapshotDocument, tables: Sequence[schema.TableSpec] = schema.SNAPSHOT_TABLES) -> bytes:
    """Write ``doc`` as an xlsx workbook, one sheet per table.

    Mandatory sheets are always written. Optional sheets are written only
    when they hold at least one record, so their absence tells a restore that
    the snapshot predates that data.
    """

    workbook = openpyxl.Workbook()
    if workbook.active and workbook.active.title == "Sheet":
        workbook.remove(workbook.active)

    bold_font = Font(bold=True)
    for spec in tables:
        if spec.sheet is None:
            continue
        records = doc.records(spec.sheet)
        if not records and not spec.mandatory:
            continue
        ws = workbook.create_sheet(title=spec.sheet)
        for col_idx, label in enumerate(spec.labels, 1):
            cell = ws.cell(row=1, column=col_idx)
            cell.value = label
            cell.font = bold_font
        for row_idx, record in enumerate(records, 2):
            for col_idx, label in enumerate(spec.labels, 1):
                value = record.get(label)
                cell = ws.cell(row=row_idx, column=col_idx, value=value)
                if isinstance(value, str) and value.startswith("="):
                    # Text, not a formula; data_only reads would return None.
                    cell.data_type = "s"

    workbook.properties.title = doc.name
    if doc.created_at is not None:
        # openpyxl stores naive UTC timestamps in the document properties.
        workbook.properties.created = doc.created_at.astimezone(UTC).replace(tzinfo=None)

    buffer = BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


def deserialize_snapshot(data: bytes) -> SnapshotDocument:
    """Read snapshot bytes back into a :class:`SnapshotDocument`.

    The first row of each sheet is taken as the header. Fully empty rows are
    skipped. Sheet presence is not validated here.

    Raises:
        SnapshotFormatError: If ``data`` is not a readable xlsx workbook.
    """

    try:
        wb = openpyxl.load_workbook(BytesIO(data), read_only=True, data_only=True)
    except (BadZipFile, InvalidFileException, KeyError, OSError, ValueError) as exc:
        raise SnapshotFormatError(f"Unreadable snapshot: {exc}") from exc

    try:
        sheets: Dict[str, List[Record]] = {}
        for ws in wb.worksheets:
            rows = ws.iter_rows(values_only=True)
            header = next(rows, None)
            if header is None:
                sheets[ws.title] = []
                continue
            labels = [str(value).strip() if value is not None else None for value in header]
            records: List[Record] = []
            for raw in rows:
                if not any(value is not None and value != "" for value in raw):
                    continue
                records.append(
                    {
                        label: raw[index] if index < len(raw) else None
                        for index, label in enumerate(labels)
                        if label
                    }
                )
            sheets[ws.title] = records

        created = wb.properties.created
        if created is not None and created.tzinfo is None:
            created = created.replace(tzinfo=UTC)
        return SnapshotDocument(name=wb.properties.title or "", created_at=created, sheets=sheets)
    finally:
        wb.close()


@dataclass(frozen=True)
class BackupResult:
    """Structured outcome of :meth:`SnapshotExporter.create_backup`."""

    status: BackupStatus
    kind: BackupKind
    remote_file_id: Optional[str] = None
    counts: Mapping[str, int] = field(default_factory=dict)
    error_message: Optional[str] = None
    entry: Optional[BackupLogEntry] = None

    @property
    def succeeded(self) -> bool:
        return self.status is BackupStatus.SUCCESS


class SnapshotExporter:
    """Export every tracked table and publish the result to a blob store.

    Args:
        store (RowStore): Source of live rows.
        blobs (BlobStore): Destination for snapshot files.
        audit_log (BackupLog): Audit trail receiving one entry per attempt.
        tables (Sequence[schema.TableSpec]): Tables to export, in sheet order.
        page_size (int): Page size for draining tables.
        prefix (str): Snapshot file name prefix.
        clock (Callable[[], datetime] | None): Source of export timestamps.
    """

    def __init__(
        self,
        store: RowStore,
        blobs: BlobStore,
        audit_log: BackupLog,
        *,
        tables: Sequence[schema.TableSpec] = schema.SNAPSHOT_TABLES,
        page_size: int = DEFAULT_PAGE_SIZE,
        prefix: str = DEFAULT_BACKUP_PREFIX,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.blobs = blobs
        self.audit_log = audit_log
        self.tables = tuple(spec for spec in tables if spec.sheet)
        self.page_size = page_size
        self.prefix = prefix
        self.clock = clock or (lambda: datetime.now(UTC))

    def export_all(self) -> SnapshotDocument:
        """Drain every table and flatten its rows into labelled records.

        Reads run inside one store transaction so writers cannot interleave
        with the export.
        """

        now = self.clock()
        sheets: Dict[str, List[Record]] = {}
        with self.store.transaction():
            for spec in self.tables:
                rows = drain_rows(
                    self.store,
                    spec.name,
                    order_by=(spec.date_field, "created_at", "id"),
                    page_size=self.page_size,
                )
                sheets[spec.sheet] = [schema.flatten_row(spec, row) for row in rows]
        doc = SnapshotDocument(name=snapshot_filename(self.prefix, now), created_at=now, sheets=sheets)
        log.debug("Exported %s", ", ".join(f"{sheet}={count}" for sheet, count in doc.counts.items()))
        return doc

    def serialize(self, doc: SnapshotDocument) -> bytes:
        return serialize_snapshot(doc, self.tables)

    def publish(self, data: bytes, filename: str) -> str:
        """Upload ``data`` and return the blob store's id for it."""

        remote_id = self.blobs.upload(data, filename)
        log.info("Published snapshot '%s' as '%s'", filename, remote_id)
        return remote_id

    def table_counts(self, doc: SnapshotDocument) -> Dict[str, int]:
        return {spec.name: len(doc.records(spec.sheet)) for spec in self.tables}

    def create_backup(self, kind: BackupKind = BackupKind.MANUAL) -> BackupResult:
        """Export, serialize and publish a snapshot, then log the attempt.

        Failures never propagate: they are logged as a ``FAILED`` entry and
        reported through the returned :class:`BackupResult`.
        """

        kind = BackupKind(kind)
        counts: Dict[str, int] = {}
        try:
            doc = self.export_all()
            counts = self.table_counts(doc)
            remote_id = self.publish(self.serialize(doc), doc.name)
        except Exception as exc:
            log.exception("%s backup failed", kind.value)
            message = str(exc) or exc.__class__.__name__
            entry = self.audit_log.append(
                BackupOperation.BACKUP,
                kind,
                BackupStatus.FAILED,
                counts=counts,
                error_message=message,
            )
            return BackupResult(BackupStatus.FAILED, kind, None, counts, message, entry)

        entry = self.audit_log.append(
            BackupOperation.BACKUP,
            kind,
            BackupStatus.SUCCESS,
            remote_file_id=remote_id,
            counts=counts,
        )
        return BackupResult(BackupStatus.SUCCESS, kind, remote_id, counts, None, entry)


__all__ = [
    "SNAPSHOT_SUFFIX",
    "SnapshotDocument",
    "BlobInfo",
    "BlobStore",
    "DirectoryBlobStore",
    "BackupResult",
    "SnapshotExporter",
    "snapshot_filename",
    "serialize_snapshot",
    "deserialize_snapshot",
]
