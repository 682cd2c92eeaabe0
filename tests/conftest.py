"""Shared pytest fixtures and utilities for PMR ledger tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Callable, Iterator

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from pmr_ledger import cli, constants, core_logic, data_manager, schema  # noqa: E402
from pmr_ledger.audit import BackupLog  # noqa: E402
from pmr_ledger.cascade import CascadeResolver  # noqa: E402
from pmr_ledger.ledger import LedgerEngine  # noqa: E402
from pmr_ledger.setup_excel import create_data_workbook  # noqa: E402
from pmr_ledger.snapshot import DirectoryBlobStore, SnapshotExporter  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Backup]\n"
    "Directory = {backup_dir}\n"
    "FilePrefix = Test_Backup\n"
    "IntervalHours = 24\n"
    "PageSize = {page_size}\n\n"
    "[Cascade]\n"
    "StrictLinks = {strict_links}\n"
)


class TickingClock:
    """Deterministic clock that advances by ``step`` on every call."""

    def __init__(self, start: datetime, step: timedelta = timedelta(seconds=1)) -> None:
        self.now = start
        self.step = step

    def __call__(self) -> datetime:
        current = self.now
        self.now = current + self.step
        return current


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    backup_dir: Path
    schema_version: str


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


# ---------------------------------------------------------------------------
# Store and engine fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> TickingClock:
    """Return a clock starting at a fixed UTC moment."""

    return TickingClock(datetime(2024, 3, 1, 9, 0, tzinfo=UTC))


@pytest.fixture
def memory_store() -> data_manager.MemoryRowStore:
    return data_manager.MemoryRowStore()


@pytest.fixture
def inventory_engine(memory_store, clock) -> LedgerEngine:
    return LedgerEngine(memory_store, schema.INVENTORY, clock=clock)


@pytest.fixture
def stock_engine(memory_store, clock) -> LedgerEngine:
    return LedgerEngine(memory_store, schema.STOCK, clock=clock)


@pytest.fixture
def expenses_engine(memory_store, clock) -> LedgerEngine:
    return LedgerEngine(memory_store, schema.EXPENSES, clock=clock)


@pytest.fixture
def resolver(inventory_engine, stock_engine) -> CascadeResolver:
    return CascadeResolver(inventory_engine, stock_engine)


@pytest.fixture
def blob_store(tmp_path: Path) -> DirectoryBlobStore:
    return DirectoryBlobStore(tmp_path / "backups")


@pytest.fixture
def audit_log(memory_store, clock) -> BackupLog:
    return BackupLog(memory_store, clock=clock)


@pytest.fixture
def exporter(memory_store, blob_store, audit_log, clock) -> SnapshotExporter:
    return SnapshotExporter(memory_store, blob_store, audit_log, prefix="Test_Backup", clock=clock)


# ---------------------------------------------------------------------------
# Configuration and runtime fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an initialized data workbook in a temp folder."""

    def _create_workbook(*, subdir: str | None = None, filename: str = "pmr_data.xlsx") -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_data_workbook(workbook_path, overwrite=True)
        return workbook_path

    return _create_workbook


@pytest.fixture
def data_workbook_path(workbook_factory: Callable[..., Path]) -> Path:
    """Return a fresh data workbook ready for use in a test."""

    return workbook_factory(subdir=f"workbook_{uuid.uuid4().hex}")


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        page_size: int = 1000,
        strict_links: bool = False,
    ) -> ConfigBundle:
        bundle_dir_name = f"bundle_{uuid.uuid4().hex}"
        bundle_dir = tmp_path / bundle_dir_name
        workbook_path = workbook_factory(subdir=bundle_dir_name)
        backup_dir = bundle_dir / "backups"
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=workbook_path.name if make_relative else str(workbook_path),
                schema_version=schema_version,
                backup_dir="backups" if make_relative else str(backup_dir),
                page_size=page_size,
                strict_links="true" if strict_links else "false",
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            backup_dir=backup_dir,
            schema_version=schema_version,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> core_logic.RuntimeContext:
    """Load the runtime context for tests through the public API."""

    context = core_logic.load_runtime_context(config_file)
    core_logic.ensure_schema_version(context)
    return context


@pytest.fixture
def settings(tmp_path: Path) -> data_manager.ConfigSettings:
    """Provide default configuration settings for in-memory runtime contexts."""

    return data_manager.ConfigSettings(
        data_file=tmp_path / "pmr_data.xlsx",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
        backup_dir=tmp_path / "backups",
    )


@pytest.fixture
def context(settings, memory_store) -> core_logic.RuntimeContext:
    """Assemble a runtime context over the in-memory store."""

    return core_logic.build_runtime_context(settings, memory_store)


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="pmr-test", description="PMR test CLI")


@pytest.fixture
def command_table_entry() -> tuple[str, cli.CommandSpec]:
    """Provide a placeholder command table entry for dispatch tests."""

    def execute(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
        execute.__dict__["called"] = True
        return 0

    def register(
        subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
    ) -> argparse.ArgumentParser:
        return subparsers.add_parser("ping")

    spec = cli.CommandSpec(name="ping", help_text="help", register=register, execute=execute)
    return "ping", spec
