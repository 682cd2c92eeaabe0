"""Utility for initializing the PMR ledger data workbook.

The module doubles as a script (``python -m pmr_ledger.setup_excel``) and as a
library used by tests or other tooling.
"""

from __future__ import annotations

import argparse
import uuid
from datetime import UTC, datetime
from pathlib import Path
from typing import Sequence, Tuple

from . import data_manager
from .constants import PinRole, TableName

CONFIG_FILE = "config.ini"

# Starter PINs; an administrator is expected to change them.
DEFAULT_PINS: Tuple[Tuple[str, PinRole], ...] = (
    ("1111", PinRole.ADMIN),
    ("2222", PinRole.EXPENSE_INVENTORY),
    ("3333", PinRole.INVENTORY_ONLY),
)


def create_data_workbook(
    destination: Path,
    *,
    default_pins: Sequence[Tuple[str, PinRole]] = DEFAULT_PINS,
    overwrite: bool = False,
) -> Path:
    """Create the data workbook at ``destination`` and seed the default PINs.

    Raises:
        FileExistsError: If the target exists and ``overwrite`` is false.
    """

    path = data_manager.initialize_workbook(destination, overwrite=overwrite)
    if default_pins:
        store = data_manager.WorkbookRowStore(path)
        now = datetime.now(UTC)
        for pin_number, role in default_pins:
            store.insert(
                TableName.PINS.value,
                {"id": uuid.uuid4().hex, "pin_number": pin_number, "role": role.value, "created_at": now},
            )
        store.save()
    return path


def run_from_config(config_path: Path, *, overwrite: bool = False) -> Path:
    """Create the workbook named by ``[System] DataFile`` in ``config_path``."""

    config_path = Path(config_path).expanduser().resolve()
    parser = data_manager.read_config(config_path)
    settings = data_manager.parse_settings(parser, base_path=config_path.parent)
    return create_data_workbook(settings.data_file, overwrite=overwrite)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for the setup script."""

    parser = argparse.ArgumentParser(description="Initialize the PMR ledger data file")
    parser.add_argument(
        "--config",
        default=CONFIG_FILE,
        help="Path to configuration file (default: config.ini)",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite the target workbook if it already exists.",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the setup script."""

    args = parse_args(argv)
    config_path = Path(args.config).expanduser().resolve()

    print("--- PMR Ledger Setup ---")
    print(f"Using configuration: {config_path}")

    try:
        output_path = run_from_config(config_path, overwrite=args.force)
    except (FileNotFoundError, KeyError) as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except FileExistsError as exc:
        print(f"\n[ERROR] {exc}")
        print("Run with --force to overwrite the existing file if appropriate.")
        return 1
    except OSError as exc:
        print(f"\n[ERROR] Unable to write workbook: {exc}")
        return 1

    print(f"\nSuccessfully created '{output_path}'.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
