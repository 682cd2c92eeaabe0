"""Tests for snapshot export, the workbook wire format and the blob store."""

from __future__ import annotations

import os
from datetime import UTC, date, datetime
from decimal import Decimal
from io import BytesIO
from unittest.mock import Mock

import openpyxl
import pytest

from pmr_ledger import data_manager, schema
from pmr_ledger.audit import BackupLog
from pmr_ledger.cascade import ActionKind, CascadeCommand
from pmr_ledger.constants import BackupKind, BackupStatus
from pmr_ledger.errors import BlobStoreError, SnapshotFormatError
from pmr_ledger.snapshot import (
    DirectoryBlobStore,
    SnapshotDocument,
    SnapshotExporter,
    deserialize_snapshot,
    serialize_snapshot,
    snapshot_filename,
)

DAY1 = date(2024, 3, 1)


def _populate(resolver, expenses_engine, memory_store):
    resolver.apply_derived_action(CascadeCommand(ActionKind.ADD_UREA, DAY1, Decimal("720")))
    resolver.apply_derived_action(CascadeCommand(ActionKind.PRODUCE_BATCH, DAY1, Decimal("1")))
    resolver.apply_derived_action(
        CascadeCommand(ActionKind.STOCK_BUCKETS, DAY1, Decimal("12"), bucket_type="TATA_G", warehouse="GURH")
    )
    resolver.apply_derived_action(
        CascadeCommand(
            ActionKind.SELL_BUCKETS, DAY1, Decimal("2.5"), bucket_type="TATA_G", warehouse="GURH", counterpart="Ramesh"
        )
    )
    expenses_engine.append({"account": "CASH"}, DAY1, Decimal("1500.75"), {"type": "INCOME", "name": "Opening"})
    expenses_engine.append({"account": "CASH"}, date(2024, 3, 2), Decimal("-200"), {"type": "EXPENSE"})
    memory_store.insert(
        "pins",
        {"id": "pin-1", "pin_number": "1111", "role": "ADMIN", "created_at": datetime(2024, 1, 1, tzinfo=UTC)},
    )


# ---------------------------------------------------------------------------
# Wire format
# ---------------------------------------------------------------------------


def test_snapshot_filename_is_timestamped():
    moment = datetime(2024, 3, 1, 9, 5, 7, 123456, tzinfo=UTC)
    assert snapshot_filename("PMR_Backup", moment) == "PMR_Backup_2024-03-01_09-05-07-123456.xlsx"


def test_round_trip_reproduces_every_non_empty_sheet(resolver, expenses_engine, memory_store, exporter):
    _populate(resolver, expenses_engine, memory_store)
    doc = exporter.export_all()

    restored = deserialize_snapshot(exporter.serialize(doc))

    assert restored.name == doc.name
    for sheet, records in doc.sheets.items():
        if records:
            assert restored.records(sheet) == records


def test_round_trip_records_parse_back_to_stored_rows(resolver, expenses_engine, memory_store, exporter):
    _populate(resolver, expenses_engine, memory_store)
    restored = deserialize_snapshot(exporter.serialize(exporter.export_all()))

    stored = {row["id"]: row for row in memory_store.select_ordered("inventory")}
    for record in restored.records("Inventory"):
        row = schema.parse_record(schema.INVENTORY, record)
        assert row == stored[row["id"]]


def test_optional_empty_sheets_are_omitted(memory_store, exporter):
    doc = exporter.export_all()
    workbook = openpyxl.load_workbook(BytesIO(exporter.serialize(doc)))

    assert workbook.sheetnames == ["Inventory", "Expenses"]
    assert [cell.value for cell in workbook["Inventory"][1]] == list(schema.INVENTORY.labels)


def test_sheets_use_human_readable_labels(resolver, expenses_engine, memory_store, exporter):
    _populate(resolver, expenses_engine, memory_store)
    doc = exporter.export_all()

    record = doc.records("Expenses")[0]
    assert record["Running Balance"] == pytest.approx(1500.75)
    assert record["Date"] == "2024-03-01"
    assert "running_balance" not in record


def test_deserialize_rejects_garbage():
    with pytest.raises(SnapshotFormatError):
        deserialize_snapshot(b"definitely not a workbook")


def test_deserialize_skips_blank_rows():
    doc = SnapshotDocument(
        name="manual",
        created_at=None,
        sheets={"Inventory": [{"ID": "a", "Quantity": 1}, {}, {"ID": "b", "Quantity": 2}], "Expenses": []},
    )

    restored = deserialize_snapshot(serialize_snapshot(doc))

    assert [record["ID"] for record in restored.records("Inventory")] == ["a", "b"]
    assert restored.has_sheet("Expenses")
    assert restored.counts == {"Inventory": 2, "Expenses": 0}


def test_text_starting_with_equals_is_kept_as_text(memory_store, exporter):
    memory_store.insert(
        "leads",
        {
            "id": "lead-1",
            "name": "=Cash sale",
            "status": "NEW",
            "priority": "HIGH",
            "quick_note": "=SUM(A1:A2)",
            "created_at": datetime(2024, 3, 1, tzinfo=UTC),
        },
    )

    restored = deserialize_snapshot(exporter.serialize(exporter.export_all()))

    (record,) = restored.records("Leads")
    row = schema.parse_record(schema.LEADS, record)
    assert (row["name"], row["quick_note"]) == ("=Cash sale", "=SUM(A1:A2)")


def test_high_precision_amounts_survive_the_workbook(expenses_engine, exporter):
    amount = Decimal("12345678901234.5678")
    expenses_engine.append({"account": "CASH"}, DAY1, amount, {"type": "INCOME", "name": "Large"})

    restored = deserialize_snapshot(exporter.serialize(exporter.export_all()))

    (record,) = restored.records("Expenses")
    row = schema.parse_record(schema.EXPENSES, record)
    assert row["amount"] == amount
    assert row["running_balance"] == amount


def test_cell_value_keeps_floats_only_when_exact():
    amount = schema.get_table("expenses").columns[2]
    assert schema.cell_value(amount, Decimal("1500.75")) == 1500.75
    assert schema.cell_value(amount, Decimal("12")) == 12
    assert schema.cell_value(amount, Decimal("0.1000000000000000055511151231257827")) == (
        "0.1000000000000000055511151231257827"
    )


# ---------------------------------------------------------------------------
# Export
# ---------------------------------------------------------------------------


def test_export_drains_tables_larger_than_the_row_cap(tmp_path, clock):
    store = data_manager.MemoryRowStore(row_cap=5)
    for index in range(12):
        store.insert(
            "expenses",
            {
                "id": f"e{index:02d}",
                "date": DAY1,
                "amount": Decimal(1),
                "account": "CASH",
                "type": "INCOME",
                "name": "N/A",
                "running_balance": Decimal(index + 1),
                "created_at": datetime(2024, 3, 1, 9, index, tzinfo=UTC),
            },
        )
    exporter = SnapshotExporter(
        store, DirectoryBlobStore(tmp_path), BackupLog(store, clock=clock), page_size=5, clock=clock
    )

    doc = exporter.export_all()

    assert len(doc.records("Expenses")) == 12
    assert exporter.table_counts(doc)["expenses"] == 12


def test_create_backup_publishes_and_logs_success(resolver, expenses_engine, memory_store, exporter, blob_store, audit_log):
    _populate(resolver, expenses_engine, memory_store)

    result = exporter.create_backup(BackupKind.MANUAL)

    assert result.succeeded
    assert result.remote_file_id.startswith("Test_Backup_")
    assert (blob_store.root / result.remote_file_id).exists()
    assert result.counts["inventory"] == 2
    assert result.counts["stock"] == 4
    assert result.counts["pins"] == 1

    entry = audit_log.recent(1)[0]
    assert entry.status is BackupStatus.SUCCESS
    assert entry.remote_file_id == result.remote_file_id
    assert dict(entry.counts) == dict(result.counts)


def test_create_backup_logs_failure_without_raising(memory_store, audit_log, clock, caplog):
    blobs = Mock(name="blobs")
    blobs.upload.side_effect = BlobStoreError("remote offline")
    exporter = SnapshotExporter(memory_store, blobs, audit_log, clock=clock)

    result = exporter.create_backup(BackupKind.AUTOMATIC)

    assert result.status is BackupStatus.FAILED
    assert result.error_message == "remote offline"
    assert result.entry.kind is BackupKind.AUTOMATIC
    assert audit_log.last_successful() is None
    assert "AUTOMATIC backup failed" in caplog.text


# ---------------------------------------------------------------------------
# Directory blob store
# ---------------------------------------------------------------------------


def test_blob_store_round_trip(blob_store):
    remote_id = blob_store.upload(b"payload", "snap.xlsx")
    assert blob_store.download(remote_id) == b"payload"


def test_blob_store_never_overwrites(blob_store):
    blob_store.upload(b"first", "snap.xlsx")
    with pytest.raises(BlobStoreError):
        blob_store.upload(b"second", "snap.xlsx")
    assert blob_store.download("snap.xlsx") == b"first"


@pytest.mark.parametrize("remote_id", ["missing.xlsx", "../escape.xlsx", ""])
def test_blob_store_download_failures_raise_blob_store_error(blob_store, remote_id):
    with pytest.raises(BlobStoreError):
        blob_store.download(remote_id)


def test_blob_store_lists_newest_first(blob_store):
    blob_store.upload(b"old", "old.xlsx")
    blob_store.upload(b"new", "new.xlsx")
    os.utime(blob_store.root / "old.xlsx", (1_000_000, 1_000_000))
    os.utime(blob_store.root / "new.xlsx", (2_000_000, 2_000_000))

    assert [info.remote_id for info in blob_store.list_files()] == ["new.xlsx", "old.xlsx"]


def test_blob_store_lists_nothing_before_first_upload(tmp_path):
    assert DirectoryBlobStore(tmp_path / "absent").list_files() == []
