"""Unit tests documenting the expected behavior of the data access layer."""

from __future__ import annotations

import configparser
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal
from pathlib import Path

import openpyxl
import pytest

from pmr_ledger import data_manager, schema
from pmr_ledger.errors import StoreError


def _inventory_row(row_id: str, quantity: str = "5", **overrides):
    row = {
        "id": row_id,
        "date": date(2024, 3, 1),
        "warehouse": "GURH",
        "bucket_type": "TATA_G",
        "action": "STOCK",
        "quantity": Decimal(quantity),
        "buyer_seller": "N/A",
        "running_total": Decimal(quantity),
        "correlation_id": None,
        "created_at": datetime(2024, 3, 1, 9, 0, tzinfo=UTC),
    }
    row.update(overrides)
    return row


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def test_find_config_file_respects_explicit_path(config_file: Path):
    """Supplying an explicit path should be treated as the winning answer."""

    assert data_manager.find_config_file(config_file) == config_file


def test_find_config_file_discovers_in_cwd(tmp_path, monkeypatch):
    """Auto-discovery should locate config.ini in a parent of the working directory."""

    (tmp_path / "config.ini").write_text("[System]\nDataFile=pmr_data.xlsx\n")
    nested = tmp_path / "nested" / "deeper"
    nested.mkdir(parents=True)
    monkeypatch.chdir(nested)

    assert data_manager.find_config_file() == tmp_path / "config.ini"


def test_find_config_file_raises_when_missing(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    with pytest.raises(FileNotFoundError):
        data_manager.find_config_file()


def test_read_config_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        data_manager.read_config(tmp_path / "not_there.ini")


def test_parse_settings_resolves_relative_paths(config_factory):
    """Relative DataFile and Directory entries are anchored to the config location."""

    bundle = config_factory(make_relative=True, page_size=250, strict_links=True)
    parser = data_manager.read_config(bundle.config_path)
    settings = data_manager.parse_settings(parser, base_path=bundle.config_path.parent)

    assert settings.data_file == bundle.workbook_path.resolve()
    assert settings.backup_dir == (bundle.directory / "backups").resolve()
    assert settings.backup_prefix == "Test_Backup"
    assert settings.backup_interval == timedelta(hours=24)
    assert settings.page_size == 250
    assert settings.strict_cascade_links is True


def test_parse_settings_applies_defaults_for_optional_sections(tmp_path):
    parser = configparser.ConfigParser()
    parser.read_string("[System]\nDataFile = data.xlsx\nSchemaVersion = 1.0.0\n")
    settings = data_manager.parse_settings(parser, base_path=tmp_path)

    assert settings.backup_dir == (tmp_path / "backups").resolve()
    assert settings.backup_prefix == "PMR_Backup"
    assert settings.page_size == 1000
    assert settings.strict_cascade_links is False


def test_parse_settings_requires_system_section(tmp_path):
    parser = configparser.ConfigParser()
    parser.read_string("[Other]\nvalue=1")
    with pytest.raises(KeyError):
        data_manager.parse_settings(parser, base_path=tmp_path)


def test_parse_settings_rejects_non_positive_page_size(tmp_path):
    parser = configparser.ConfigParser()
    parser.read_string("[System]\nDataFile = d.xlsx\nSchemaVersion = 1.0.0\n[Backup]\nPageSize = 0\n")
    with pytest.raises(ValueError):
        data_manager.parse_settings(parser, base_path=tmp_path)


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------


def test_memory_store_insert_get_update_delete(memory_store):
    memory_store.insert("inventory", _inventory_row("a"))
    memory_store.update("inventory", "a", {"running_total": Decimal("7")})

    assert memory_store.get("inventory", "a")["running_total"] == Decimal("7")
    memory_store.delete("inventory", "a")
    assert memory_store.get("inventory", "a") is None


def test_memory_store_returns_copies(memory_store):
    memory_store.insert("inventory", _inventory_row("a"))
    fetched = memory_store.get("inventory", "a")
    fetched["quantity"] = Decimal("999")

    assert memory_store.get("inventory", "a")["quantity"] == Decimal("5")


@pytest.mark.parametrize(
    "operation",
    [
        lambda store: store.insert("inventory", _inventory_row("a")),
        lambda store: store.insert("nowhere", _inventory_row("b")),
        lambda store: store.update("inventory", "missing", {"quantity": Decimal(1)}),
        lambda store: store.update("inventory", "a", {"id": "other"}),
        lambda store: store.delete("inventory", "missing"),
    ],
    ids=["duplicate-id", "unknown-table", "update-missing", "id-change", "delete-missing"],
)
def test_memory_store_rejects_invalid_operations(memory_store, operation):
    memory_store.insert("inventory", _inventory_row("a"))
    with pytest.raises(StoreError):
        operation(memory_store)


def test_memory_store_select_ordered_filters_sorts_and_pages(memory_store):
    for index, warehouse in enumerate(["GURH", "REWA", "GURH", "GURH"]):
        memory_store.insert(
            "inventory",
            _inventory_row(f"r{index}", str(index + 1), warehouse=warehouse, date=date(2024, 3, 10 - index)),
        )

    rows = memory_store.select_ordered("inventory", {"warehouse": "GURH"}, ("date",), 1, 1)
    assert [row["id"] for row in rows] == ["r2"]

    descending = memory_store.select_ordered("inventory", None, ("-quantity",))
    assert [row["id"] for row in descending] == ["r3", "r2", "r1", "r0"]
    assert memory_store.count("inventory", {"warehouse": "GURH"}) == 3


def test_memory_store_row_cap_truncates_every_read():
    store = data_manager.MemoryRowStore(row_cap=2)
    for index in range(5):
        store.insert("inventory", _inventory_row(f"r{index}"))

    assert len(store.select_ordered("inventory")) == 2
    assert len(store.select_ordered("inventory", limit=10)) == 2


def test_memory_store_transaction_rolls_back_on_error(memory_store):
    memory_store.insert("inventory", _inventory_row("keep"))

    with pytest.raises(RuntimeError):
        with memory_store.transaction():
            memory_store.insert("inventory", _inventory_row("new"))
            memory_store.delete("inventory", "keep")
            raise RuntimeError("boom")

    assert memory_store.get("inventory", "new") is None
    assert memory_store.get("inventory", "keep") is not None


def test_memory_store_nested_transaction_rolls_back_outer_scope(memory_store):
    with pytest.raises(StoreError):
        with memory_store.transaction():
            memory_store.insert("inventory", _inventory_row("outer"))
            with memory_store.transaction():
                memory_store.insert("inventory", _inventory_row("outer"))

    assert memory_store.count("inventory") == 0


# ---------------------------------------------------------------------------
# Draining
# ---------------------------------------------------------------------------


def test_drain_rows_reads_past_the_store_row_cap():
    """A table larger than the store's read ceiling is still read in full."""

    store = data_manager.MemoryRowStore(row_cap=3)
    for index in range(10):
        store.insert("inventory", _inventory_row(f"r{index:02d}"))

    rows = list(data_manager.drain_rows(store, "inventory", page_size=3))
    assert [row["id"] for row in rows] == [f"r{index:02d}" for index in range(10)]


def test_drain_rows_clamps_page_size_to_row_cap(caplog):
    store = data_manager.MemoryRowStore(row_cap=4)
    for index in range(9):
        store.insert("inventory", _inventory_row(f"r{index}"))

    rows = list(data_manager.drain_rows(store, "inventory", page_size=1000))
    assert len(rows) == 9
    assert "exceeds the store row cap" in caplog.text


def test_drain_rows_rejects_non_positive_page_size(memory_store):
    with pytest.raises(ValueError):
        list(data_manager.drain_rows(memory_store, "inventory", page_size=0))


# ---------------------------------------------------------------------------
# Workbook store
# ---------------------------------------------------------------------------


def test_initialize_workbook_creates_one_sheet_per_table(tmp_path):
    path = data_manager.initialize_workbook(tmp_path / "fresh.xlsx")
    workbook = openpyxl.load_workbook(path)

    assert set(workbook.sheetnames) == set(schema.STORE_TABLES)
    header = [cell.value for cell in workbook["inventory"][1]]
    assert header == list(schema.INVENTORY.fields)


def test_initialize_workbook_refuses_to_overwrite(tmp_path):
    path = data_manager.initialize_workbook(tmp_path / "fresh.xlsx")
    with pytest.raises(FileExistsError):
        data_manager.initialize_workbook(path)


def test_open_workbook_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        data_manager.open_workbook(tmp_path / "absent.xlsx")


def test_workbook_store_round_trips_exact_values(data_workbook_path):
    """Decimals and dates survive a save and reload unchanged."""

    store = data_manager.WorkbookRowStore(data_workbook_path)
    store.insert("inventory", _inventory_row("a", "2.5", running_total=Decimal("2.5")))
    store.save()

    reopened = data_manager.WorkbookRowStore(data_workbook_path)
    row = reopened.get("inventory", "a")
    assert row["quantity"] == Decimal("2.5")
    assert row["date"] == date(2024, 3, 1)
    assert row["created_at"] == datetime(2024, 3, 1, 9, 0, tzinfo=UTC)
    assert row["correlation_id"] is None


def test_workbook_store_writes_leading_equals_as_text(data_workbook_path):
    store = data_manager.WorkbookRowStore(data_workbook_path)
    store.insert("inventory", _inventory_row("a", buyer_seller="=Walk-in"))
    store.save()

    wb = openpyxl.load_workbook(data_workbook_path)
    sheet = wb["inventory"]
    cells = [cell for row in sheet.iter_rows(min_row=2) for cell in row if cell.value == "=Walk-in"]
    assert [cell.data_type for cell in cells] == ["s"]
    assert data_manager.WorkbookRowStore(data_workbook_path).get("inventory", "a")["buyer_seller"] == "=Walk-in"


def test_workbook_store_seeded_pins(data_workbook_path):
    store = data_manager.WorkbookRowStore(data_workbook_path)
    roles = {row["pin_number"]: row["role"] for row in store.select_ordered("pins")}

    assert roles == {"1111": "ADMIN", "2222": "EXPENSE_INVENTORY", "3333": "INVENTORY_ONLY"}


def test_workbook_store_update_and_delete(data_workbook_path):
    store = data_manager.WorkbookRowStore(data_workbook_path)
    store.insert("inventory", _inventory_row("a"))
    store.insert("inventory", _inventory_row("b", "3"))

    store.update("inventory", "b", {"running_total": Decimal("8")})
    store.delete("inventory", "a")

    rows = store.select_ordered("inventory")
    assert [row["id"] for row in rows] == ["b"]
    assert rows[0]["running_total"] == Decimal("8")


def test_workbook_store_rejects_unknown_field(data_workbook_path):
    store = data_manager.WorkbookRowStore(data_workbook_path)
    with pytest.raises(StoreError):
        store.insert("inventory", {**_inventory_row("a"), "colour": "red"})


def test_workbook_store_transaction_restores_sheet(data_workbook_path):
    store = data_manager.WorkbookRowStore(data_workbook_path)
    store.insert("inventory", _inventory_row("a"))
    store.insert("inventory", _inventory_row("b", "3"))

    with pytest.raises(RuntimeError):
        with store.transaction():
            store.delete("inventory", "a")
            store.update("inventory", "b", {"quantity": Decimal("100")})
            store.insert("inventory", _inventory_row("c"))
            raise RuntimeError("boom")

    rows = {row["id"]: row for row in store.select_ordered("inventory")}
    assert set(rows) == {"a", "b"}
    assert rows["b"]["quantity"] == Decimal("3")


def test_workbook_store_adds_missing_sheets(tmp_path):
    path = tmp_path / "partial.xlsx"
    workbook = openpyxl.Workbook()
    workbook.active.title = "inventory"
    data_manager.write_header(workbook["inventory"], schema.INVENTORY.fields)
    workbook.save(path)

    store = data_manager.WorkbookRowStore(path)
    assert store.count("expenses") == 0
    assert "backup_log" in store.workbook.sheetnames


def test_workbook_store_reports_corrupt_cells(data_workbook_path):
    store = data_manager.WorkbookRowStore(data_workbook_path)
    store.insert("inventory", _inventory_row("a"))
    sheet = store.workbook["inventory"]
    sheet.cell(row=2, column=data_manager.header_map(sheet)["quantity"], value="lots")

    with pytest.raises(StoreError):
        store.select_ordered("inventory")
