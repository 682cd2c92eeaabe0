"""Data access layer for the PMR ledger.

This module provides the low-level row store the ledger engine, the snapshot
exporter and the restore coordinator read from and write to. Business rules
belong elsewhere.

The public API is designed around four responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. The :class:`RowStore` contract and its two implementations, an in-memory
   store and an openpyxl-backed data workbook.
3. Transactions: every store offers a ``transaction()`` context manager that
   serializes writers and undoes all changes made inside a failed block.
4. Draining: :func:`drain_rows` reads a full table through bounded pages so a
   store that silently caps unpaginated reads still yields every row.
"""


from __future__ import annotations

import configparser
import copy
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import (
    Any,
    Dict,
    Iterator,
    List,
    Mapping,
    Optional,
    Protocol,
    Sequence,
    Tuple,
)

import openpyxl
from openpyxl.styles import Font
from openpyxl.workbook import Workbook
from openpyxl.worksheet.worksheet import Worksheet

from . import log, schema
from .constants import DEFAULT_BACKUP_INTERVAL, DEFAULT_BACKUP_PREFIX, DEFAULT_PAGE_SIZE
from .errors import StoreError


CONFIG_FILE_NAME = "config.ini"

Row = Dict[str, Any]


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    schema_version: str
    backup_dir: Path
    backup_prefix: str = DEFAULT_BACKUP_PREFIX
    backup_interval: timedelta = DEFAULT_BACKUP_INTERVAL
    page_size: int = DEFAULT_PAGE_SIZE
    strict_cascade_links: bool = False


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``; the first match is authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If the search exhausts all parent directories without
            finding ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Validation of required entries happens in :func:`parse_settings`.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def _resolve_path(raw: str, base_path: Path) -> Path:
    path = Path(raw).expanduser()
    if not path.is_absolute():
        path = (base_path / path).resolve()
    return path


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    Only the ``[System]`` section is mandatory. ``[Backup]`` and ``[Cascade]``
    fall back to package defaults. Relative paths are expanded against
    ``base_path`` when provided, or against the current working directory.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory used as the anchor for relative
            paths.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If a required section or option is missing.
        ValueError: If a numeric or boolean option cannot be parsed.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    if base_path is None:
        base_path = Path.cwd()

    backup_dir_raw = parser.get("Backup", "Directory", fallback="backups")
    interval_hours = parser.getfloat(
        "Backup", "IntervalHours",
        fallback=DEFAULT_BACKUP_INTERVAL.total_seconds() / 3600,
    )
    page_size = parser.getint("Backup", "PageSize", fallback=DEFAULT_PAGE_SIZE)
    if page_size <= 0:
        raise ValueError(f"PageSize must be positive, got {page_size}")

    return ConfigSettings(
        data_file=_resolve_path(data_file_raw, base_path),
        schema_version=schema_version,
        backup_dir=_resolve_path(backup_dir_raw, base_path),
        backup_prefix=parser.get("Backup", "FilePrefix", fallback=DEFAULT_BACKUP_PREFIX),
        backup_interval=timedelta(hours=interval_hours),
        page_size=page_size,
        strict_cascade_links=parser.getboolean("Cascade", "StrictLinks", fallback=False),
    )


class RowStore(Protocol):
    """Abstract persistent table store consumed by the ledger core.

    Rows are plain dictionaries keyed by storage field name and always carry an
    ``id``. No cross-table transaction is assumed beyond what
    :meth:`transaction` provides.
    """

    def insert(self, table: str, row: Mapping[str, Any]) -> Row: ...

    def update(self, table: str, row_id: str, fields: Mapping[str, Any]) -> Row: ...

    def delete(self, table: str, row_id: str) -> None: ...

    def get(self, table: str, row_id: str) -> Optional[Row]: ...

    def select_ordered(
        self,
        table: str,
        filter: Optional[Mapping[str, Any]] = None,
        order_by: Sequence[str] = (),
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> List[Row]: ...

    def count(self, table: str, filter: Optional[Mapping[str, Any]] = None) -> int: ...

    def transaction(self) -> Any: ...


def _matches(row: Mapping[str, Any], filter: Optional[Mapping[str, Any]]) -> bool:
    if not filter:
        return True
    return all(row.get(field) == value for field, value in filter.items())


def sort_key(values: Sequence[Any]) -> Tuple[Tuple[bool, Any], ...]:
    """Build a sort key that places ``None`` after every concrete value."""

    return tuple((value is None, value if value is not None else 0) for value in values)


def order_rows(rows: List[Row], order_by: Sequence[str]) -> List[Row]:
    """Sort rows by ``order_by`` fields; a ``-`` prefix sorts that field descending.

    Sorting is stable, so rows tied on every field keep insertion order.
    """

    for field in reversed(list(order_by)):
        descending = field.startswith("-")
        name = field[1:] if descending else field
        rows.sort(key=lambda row, name=name: sort_key([row.get(name)]), reverse=descending)
    return rows


def _page(rows: List[Row], offset: int, limit: Optional[int], cap: Optional[int]) -> List[Row]:
    if offset < 0:
        raise StoreError(f"Offset must be non-negative, got {offset}")
    if cap is not None:
        limit = cap if limit is None else min(limit, cap)
    end = None if limit is None else offset + limit
    return rows[offset:end]


class MemoryRowStore:
    """Dictionary-backed :class:`RowStore`.

    ``row_cap`` models a hosted store that silently truncates any read to a
    fixed number of rows, paginated or not. ``transaction()`` takes a shadow
    copy of every table and swaps it back if the block raises.
    """

    def __init__(self, tables: Sequence[str] = tuple(schema.STORE_TABLES), *, row_cap: Optional[int] = None) -> None:
        self._tables: Dict[str, Dict[str, Row]] = {name: {} for name in tables}
        self._lock = threading.RLock()
        self._depth = 0
        self.row_cap = row_cap

    def _table(self, table: str) -> Dict[str, Row]:
        try:
            return self._tables[table]
        except KeyError:
            raise StoreError(f"Unknown table: {table}") from None

    def insert(self, table: str, row: Mapping[str, Any]) -> Row:
        with self._lock:
            rows = self._table(table)
            row_id = row.get("id")
            if not row_id:
                raise StoreError(f"Row inserted into '{table}' has no id")
            if row_id in rows:
                raise StoreError(f"Duplicate id '{row_id}' in table '{table}'")
            rows[row_id] = dict(row)
            return dict(row)

    def update(self, table: str, row_id: str, fields: Mapping[str, Any]) -> Row:
        with self._lock:
            rows = self._table(table)
            if row_id not in rows:
                raise StoreError(f"Row '{row_id}' not found in table '{table}'")
            if "id" in fields and fields["id"] != row_id:
                raise StoreError("Row ids are immutable")
            rows[row_id].update(fields)
            return dict(rows[row_id])

    def delete(self, table: str, row_id: str) -> None:
        with self._lock:
            rows = self._table(table)
            if rows.pop(row_id, None) is None:
                raise StoreError(f"Row '{row_id}' not found in table '{table}'")

    def get(self, table: str, row_id: str) -> Optional[Row]:
        with self._lock:
            row = self._table(table).get(row_id)
            return dict(row) if row is not None else None

    def select_ordered(
        self,
        table: str,
        filter: Optional[Mapping[str, Any]] = None,
        order_by: Sequence[str] = (),
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> List[Row]:
        with self._lock:
            rows = [dict(row) for row in self._table(table).values() if _matches(row, filter)]
        return _page(order_rows(rows, order_by), offset, limit, self.row_cap)

    def count(self, table: str, filter: Optional[Mapping[str, Any]] = None) -> int:
        with self._lock:
            return sum(1 for row in self._table(table).values() if _matches(row, filter))

    @contextmanager
    def transaction(self) -> Iterator["MemoryRowStore"]:
        with self._lock:
            if self._depth:
                self._depth += 1
                try:
                    yield self
                finally:
                    self._depth -= 1
                return

            shadow = copy.deepcopy(self._tables)
            self._depth = 1
            try:
                yield self
            except BaseException:
                self._tables = shadow
                log.debug("Rolled back in-memory transaction")
                raise
            finally:
                self._depth = 0


def open_workbook(data_file: Path) -> Workbook:
    """Open the data workbook and return a live ``openpyxl`` workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    wb = openpyxl.load_workbook(data_file)
    return wb


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk, creating parent directories on demand."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def write_header(worksheet: Worksheet, columns: Sequence[str]) -> None:
    """Write a bold header row into an empty worksheet."""

    bold_font = Font(bold=True)
    for column_index, column_name in enumerate(columns, start=1):
        cell = worksheet.cell(row=1, column=column_index)
        cell.value = column_name
        cell.font = bold_font


def initialize_workbook(
    destination: Path,
    *,
    tables: Mapping[str, schema.TableSpec] = schema.STORE_TABLES,
    overwrite: bool = False,
) -> Path:
    """Create an empty data workbook with one sheet per table.

    Raises:
        FileExistsError: If ``destination`` exists and ``overwrite`` is false.
    """

    destination = Path(destination).expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(
            f"Refusing to overwrite existing data workbook: {destination}"
        )

    workbook = openpyxl.Workbook()
    # Remove the default sheet openpyxl generates so we can create ours.
    if workbook.active and workbook.active.title == "Sheet":
        workbook.remove(workbook.active)

    for name, spec in tables.items():
        write_header(workbook.create_sheet(title=name), spec.fields)

    save_workbook(workbook, destination)
    log.info("Initialized data workbook '%s'", destination)
    return destination


def header_map(worksheet: Worksheet) -> Dict[str, int]:
    """Map header titles to 1-based column indices."""

    return {
        cell.value: idx + 1
        for idx, cell in enumerate(worksheet[1])
        if cell.value is not None
    }


def locate_row(worksheet: Worksheet, key_column: str, key_value: str) -> Optional[int]:
    """Find the 1-based row index whose ``key_column`` equals ``key_value``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    headers = header_map(worksheet)
    if key_column not in headers:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = headers[key_column]

    for row_idx, row in enumerate(worksheet.iter_rows(min_row=2, values_only=True), start=2):
        if row[key_col_index - 1] == key_value:
            return row_idx

    return None


class WorkbookRowStore:
    """:class:`RowStore` kept in the sheets of an openpyxl workbook.

    Each table lives on a sheet named after it, with storage field names in
    the header row. Values are written as exact text (ISO dates, decimal
    strings) and parsed back through :func:`schema.parse_value`. Changes stay
    in memory until :meth:`save` is called.
    """

    def __init__(self, data_file: Path, tables: Mapping[str, schema.TableSpec] = schema.STORE_TABLES) -> None:
        self.data_file = Path(data_file).expanduser().resolve()
        self.tables = dict(tables)
        self.workbook = open_workbook(self.data_file)
        self._lock = threading.RLock()
        self._depth = 0
        for name, spec in self.tables.items():
            if name not in self.workbook.sheetnames:
                log.info("Adding missing sheet '%s' to '%s'", name, self.data_file)
                write_header(self.workbook.create_sheet(title=name), spec.fields)

    def _sheet(self, table: str) -> Tuple[schema.TableSpec, Worksheet]:
        spec = self.tables.get(table)
        if spec is None:
            raise StoreError(f"Unknown table: {table}")
        return spec, self.workbook[table]

    def _decode(self, spec: schema.TableSpec, headers: Mapping[str, int], raw: Sequence[Any]) -> Row:
        row: Row = {}
        for column in spec.columns:
            index = headers.get(column.field)
            value = raw[index - 1] if index is not None and index <= len(raw) else None
            try:
                row[column.field] = schema.parse_value(column, value) if value is not None else None
            except ValueError as exc:
                raise StoreError(f"Corrupt value in table '{spec.name}': {exc}") from exc
        return row

    def _iter_rows(self, table: str) -> Iterator[Row]:
        spec, sheet = self._sheet(table)
        headers = header_map(sheet)
        for raw in sheet.iter_rows(min_row=2, values_only=True):
            # skip fully empty rows
            if any(cell is not None for cell in raw):
                yield self._decode(spec, headers, raw)

    def _write_cells(self, spec: schema.TableSpec, sheet: Worksheet, row_index: int, fields: Mapping[str, Any]) -> None:
        headers = header_map(sheet)
        unknown = [field for field in fields if field not in headers or not spec.has_field(field)]
        if unknown:
            raise StoreError(f"Unknown field(s) for table '{spec.name}': {', '.join(unknown)}")
        for field, value in fields.items():
            stored = schema.storage_value(spec.column(field), value)
            cell = sheet.cell(row=row_index, column=headers[field], value=stored)
            if isinstance(stored, str) and stored.startswith("="):
                cell.data_type = "s"

    def insert(self, table: str, row: Mapping[str, Any]) -> Row:
        with self._lock:
            spec, sheet = self._sheet(table)
            row_id = row.get("id")
            if not row_id:
                raise StoreError(f"Row inserted into '{table}' has no id")
            if locate_row(sheet, "id", row_id) is not None:
                raise StoreError(f"Duplicate id '{row_id}' in table '{table}'")
            self._write_cells(spec, sheet, sheet.max_row + 1, row)
            return dict(row)

    def update(self, table: str, row_id: str, fields: Mapping[str, Any]) -> Row:
        with self._lock:
            spec, sheet = self._sheet(table)
            if "id" in fields and fields["id"] != row_id:
                raise StoreError("Row ids are immutable")
            row_index = locate_row(sheet, "id", row_id)
            if row_index is None:
                raise StoreError(f"Row '{row_id}' not found in table '{table}'")
            self._write_cells(spec, sheet, row_index, fields)
            updated = self.get(table, row_id)
            assert updated is not None
            return updated

    def delete(self, table: str, row_id: str) -> None:
        with self._lock:
            _, sheet = self._sheet(table)
            row_index = locate_row(sheet, "id", row_id)
            if row_index is None:
                raise StoreError(f"Row '{row_id}' not found in table '{table}'")
            sheet.delete_rows(row_index, 1)

    def get(self, table: str, row_id: str) -> Optional[Row]:
        with self._lock:
            spec, sheet = self._sheet(table)
            row_index = locate_row(sheet, "id", row_id)
            if row_index is None:
                return None
            raw = next(sheet.iter_rows(min_row=row_index, max_row=row_index, values_only=True))
            return self._decode(spec, header_map(sheet), raw)

    def select_ordered(
        self,
        table: str,
        filter: Optional[Mapping[str, Any]] = None,
        order_by: Sequence[str] = (),
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> List[Row]:
        with self._lock:
            rows = [row for row in self._iter_rows(table) if _matches(row, filter)]
        return _page(order_rows(rows, order_by), offset, limit, None)

    def count(self, table: str, filter: Optional[Mapping[str, Any]] = None) -> int:
        with self._lock:
            return sum(1 for row in self._iter_rows(table) if _matches(row, filter))

    def _capture(self) -> Dict[str, List[Tuple[Any, ...]]]:
        return {
            name: list(self.workbook[name].iter_rows(min_row=2, values_only=True))
            for name in self.tables
        }

    def _rewrite(self, captured: Mapping[str, List[Tuple[Any, ...]]]) -> None:
        for name, rows in captured.items():
            sheet = self.workbook[name]
            if sheet.max_row > 1:
                sheet.delete_rows(2, sheet.max_row - 1)
            for row_index, raw in enumerate(rows, start=2):
                for column_index, value in enumerate(raw, start=1):
                    sheet.cell(row=row_index, column=column_index, value=value)

    @contextmanager
    def transaction(self) -> Iterator["WorkbookRowStore"]:
        with self._lock:
            if self._depth:
                self._depth += 1
                try:
                    yield self
                finally:
                    self._depth -= 1
                return

            captured = self._capture()
            self._depth = 1
            try:
                yield self
            except BaseException:
                self._rewrite(captured)
                log.debug("Rolled back workbook transaction on '%s'", self.data_file)
                raise
            finally:
                self._depth = 0

    def save(self) -> None:
        """Persist the workbook to its data file."""

        with self._lock:
            save_workbook(self.workbook, self.data_file)
        log.info("Persisted data workbook '%s'", self.data_file)


def drain_rows(
    store: RowStore,
    table: str,
    *,
    filter: Optional[Mapping[str, Any]] = None,
    order_by: Sequence[str] = ("id",),
    page_size: int = DEFAULT_PAGE_SIZE,
) -> Iterator[Row]:
    """Yield every matching row of ``table`` through bounded, repeated page reads.

    The offset cursor advances until a page comes back shorter than
    ``page_size``. ``page_size`` must not exceed the store's own row ceiling,
    otherwise a capped page is mistaken for the last one.

    Raises:
        ValueError: If ``page_size`` is not positive.
    """

    if page_size <= 0:
        raise ValueError(f"page_size must be positive, got {page_size}")

    cap = getattr(store, "row_cap", None)
    if cap is not None and page_size > cap:
        log.warning(
            "Page size %d exceeds the store row cap %d for '%s'; using %d",
            page_size, cap, table, cap,
        )
        page_size = cap

    offset = 0
    while True:
        page = store.select_ordered(table, filter, order_by, offset, page_size)
        yield from page
        if len(page) < page_size:
            return
        offset += len(page)


__all__ = [
    "CONFIG_FILE_NAME",
    "ConfigSettings",
    "RowStore",
    "MemoryRowStore",
    "WorkbookRowStore",
    "find_config_file",
    "read_config",
    "parse_settings",
    "open_workbook",
    "save_workbook",
    "initialize_workbook",
    "header_map",
    "locate_row",
    "order_rows",
    "sort_key",
    "drain_rows",
]
