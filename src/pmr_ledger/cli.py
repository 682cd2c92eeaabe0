"""Command-line entry points for the PMR ledger (`pmr-ledger`).

Each sub-command is a :class:`CommandSpec`: a registrar that adds its argparse
parser and an executor that turns the parsed namespace into a ``core_logic``
call. The workbook is saved only when the executor returns 0.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, log, schema
from .cascade import ActionKind, CascadeResult
from .constants import ActionType, BucketType, CashFlowType, ExpenseAccount, StockUnit, Warehouse
from .errors import CascadeLinkAmbiguity, InsufficiencyError, ValidationError
from .ledger import describe_partition
from .restore import RestoreStatus


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="pmr-ledger",
        description="Command-line tools for the PMR ledger workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to ./config.ini).",
    )
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    admin_specs = register_admin_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values(), *admin_specs.values()])


def _register_all(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
    specs: Dict[str, CommandSpec],
) -> Dict[str, CommandSpec]:
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_write_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare ledger-mutating CLI commands."""
    return _register_all(
        subparsers,
        {
            "stock-buckets": register_bucket_command("stock-buckets", "Record empty buckets arriving at a warehouse.", run_stock_buckets),
            "sell-buckets": register_bucket_command("sell-buckets", "Sell filled buckets, drawing Free DEF from stock.", run_sell_buckets),
            "add-urea": register_add_urea_command(),
            "produce-batch": register_produce_batch_command(),
            "sell-free-def": register_sell_free_def_command(),
            "cash": register_cash_command(),
            "delete": register_delete_command(),
        },
    )


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands."""
    return _register_all(
        subparsers,
        {
            "balances": register_balances_command(),
            "backups": register_backups_command(),
        },
    )


def register_admin_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare maintenance commands: repair, backup, restore and factory reset."""
    return _register_all(
        subparsers,
        {
            "repair": register_repair_command(),
            "backup": register_backup_command(),
            "restore": register_restore_command(),
            "factory-reset": register_factory_reset_command(),
        },
    )


def _date_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--date", type=date.fromisoformat, default=None, help="Business date (YYYY-MM-DD); defaults to today.")


def register_bucket_command(
    name: str,
    help_text: str,
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int],
) -> CommandSpec:
    """Register the parser and executor for a bucket movement command."""

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--bucket-type", choices=[member.value for member in BucketType if member is not BucketType.FREE_DEF], required=True)
        parser.add_argument("--warehouse", choices=[member.value for member in Warehouse], required=True)
        parser.add_argument("--quantity", required=True)
        parser.add_argument("--counterpart", default=None, help="Buyer or seller name.")
        if name == "sell-buckets":
            parser.add_argument("--force", action="store_true", help="Allow selling more than is on hand.")
        _date_argument(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=execute)


def register_add_urea_command() -> CommandSpec:
    """Register the parser and executor for ``add-urea``."""
    name = "add-urea"
    help_text = "Add Urea to raw material stock."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--quantity", required=True, help="Kilograms, or bags with --bags.")
        parser.add_argument("--bags", action="store_true", help="Read --quantity as 45 kg bags.")
        parser.add_argument("--description", default=None)
        _date_argument(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_urea)


def register_produce_batch_command() -> CommandSpec:
    """Register the parser and executor for ``produce-batch``."""
    name = "produce-batch"
    help_text = "Turn Urea into Free DEF (360 kg per 1000 L batch)."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--batches", default="1")
        _date_argument(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_produce_batch)


def register_sell_free_def_command() -> CommandSpec:
    """Register the parser and executor for ``sell-free-def``."""
    name = "sell-free-def"
    help_text = "Sell loose Free DEF from the factory."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--liters", required=True)
        parser.add_argument("--counterpart", default=None, help="Buyer name.")
        parser.add_argument("--description", default=None)
        _date_argument(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sell_free_def)


def register_cash_command() -> CommandSpec:
    """Register the parser and executor for ``cash``."""
    name = "cash"
    help_text = "Record income or an expense on a cash account."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--account", choices=[member.value for member in ExpenseAccount], required=True)
        parser.add_argument("--type", dest="flow", choices=[member.value for member in CashFlowType], required=True)
        parser.add_argument("--amount", required=True)
        parser.add_argument("--name", default=None)
        _date_argument(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_cash)


def register_delete_command() -> CommandSpec:
    """Register the parser and executor for ``delete``."""
    name = "delete"
    help_text = "Delete a ledger row together with its linked rows."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--table", choices=[spec.name for spec in schema.LEDGER_TABLES], required=True)
        parser.add_argument("--id", dest="row_id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete)


def register_balances_command() -> CommandSpec:
    """Register the parser and executor for ``balances``."""
    name = "balances"
    help_text = "Show the current balance of every partition."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--table", choices=[spec.name for spec in schema.LEDGER_TABLES], default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_balances)


def register_backups_command() -> CommandSpec:
    """Register the parser and executor for ``backups``."""
    name = "backups"
    help_text = "List recent backup and restore attempts."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--limit", type=int, default=10)
        parser.add_argument("--files", action="store_true", help="List stored snapshot files instead.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_backups)


def register_repair_command() -> CommandSpec:
    """Register the parser and executor for ``repair``."""
    name = "repair"
    help_text = "Recompute every running balance."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_repair)


def register_backup_command() -> CommandSpec:
    """Register the parser and executor for ``backup``."""
    name = "backup"
    help_text = "Export a snapshot of all data to the backup directory."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_backup)


def register_restore_command() -> CommandSpec:
    """Register the parser and executor for ``restore``."""
    name = "restore"
    help_text = "Replace live data with a snapshot (a safety backup is taken first)."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--file-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_restore)


def register_factory_reset_command() -> CommandSpec:
    """Register the parser and executor for ``factory-reset``."""
    name = "factory-reset"
    help_text = "Delete all inventory, cash and stock rows."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--yes", action="store_true", help="Confirm the reset.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_factory_reset)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    context = core_logic.load_runtime_context(config_path)
    core_logic.ensure_schema_version(context)
    return context


def dispatch_command(
    context: core_logic.RuntimeContext,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Dispatch the parsed arguments to the configured executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    return spec.execute(context, args)


def build_command_table(
    specs: Iterable[CommandSpec],
) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


def translate_bucket(args: argparse.Namespace, action: ActionType) -> core_logic.InventoryCommand:
    """Translate CLI args into an inventory command object."""
    return core_logic.InventoryCommand(
        bucket_type=BucketType(args.bucket_type),
        warehouse=Warehouse(args.warehouse),
        action=action,
        quantity=core_logic.require_positive_amount(args.quantity),
        occurred_on=args.date,
        counterpart=args.counterpart,
        force_oversell=getattr(args, "force", False),
    )


def translate_add_urea(args: argparse.Namespace) -> core_logic.StockCommand:
    """Translate CLI args into an ``ADD_UREA`` stock command."""
    return core_logic.StockCommand(
        action=ActionKind.ADD_UREA,
        quantity=core_logic.require_positive_amount(args.quantity),
        occurred_on=args.date,
        description=args.description,
        unit=StockUnit.BAGS if args.bags else StockUnit.KG,
    )


def translate_produce_batch(args: argparse.Namespace) -> core_logic.StockCommand:
    """Translate CLI args into a ``PRODUCE_BATCH`` stock command."""
    return core_logic.StockCommand(
        action=ActionKind.PRODUCE_BATCH,
        quantity=core_logic.require_positive_amount(args.batches),
        occurred_on=args.date,
    )


def translate_sell_free_def(args: argparse.Namespace) -> core_logic.StockCommand:
    """Translate CLI args into a ``SELL_FREE_DEF`` stock command."""
    return core_logic.StockCommand(
        action=ActionKind.SELL_FREE_DEF,
        quantity=core_logic.require_positive_amount(args.liters),
        occurred_on=args.date,
        counterpart=args.counterpart,
        description=args.description,
    )


def translate_cash(args: argparse.Namespace) -> core_logic.CashCommand:
    """Translate CLI args into a cash command object."""
    return core_logic.CashCommand(
        account=ExpenseAccount(args.account),
        flow=CashFlowType(args.flow),
        amount=core_logic.require_positive_amount(args.amount),
        occurred_on=args.date,
        name=args.name,
    )


def _print_rows(result: CascadeResult) -> None:
    for row in result.rows:
        balance = row.get("running_total", row.get("running_balance"))
        print(f"{row['id']}  {row['date']}  {row['quantity']}  balance={balance}")


def run_stock_buckets(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the bucket stocking workflow via the BLL."""
    _print_rows(core_logic.record_inventory(context, translate_bucket(args, ActionType.STOCK)))
    return 0


def run_sell_buckets(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the bucket sale workflow via the BLL."""
    _print_rows(core_logic.record_inventory(context, translate_bucket(args, ActionType.SELL)))
    return 0


def run_add_urea(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    _print_rows(core_logic.record_stock(context, translate_add_urea(args)))
    return 0


def run_produce_batch(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    _print_rows(core_logic.record_stock(context, translate_produce_batch(args)))
    return 0


def run_sell_free_def(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    _print_rows(core_logic.record_stock(context, translate_sell_free_def(args)))
    return 0


def run_cash(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the cash entry workflow via the BLL."""
    row = core_logic.record_cash(context, translate_cash(args))
    print(f"{row['id']}  {row['date']}  {row['amount']}  balance={row['running_balance']}")
    return 0


def run_delete(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the delete workflow via the BLL."""
    removed = core_logic.delete_transaction(context, args.table, args.row_id)
    print(f"Deleted {len(removed)} row(s)")
    return 0


def run_balances(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print partition balances for one or every ledger table."""
    tables = [args.table] if args.table else [spec.name for spec in schema.LEDGER_TABLES]
    for table in tables:
        for key, balance in core_logic.current_balances(context, table).items():
            print(f"{table}  {describe_partition(key)}  {balance}")
    return 0


def run_backups(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print recent audit entries or the stored snapshot files."""
    if args.files:
        for info in core_logic.list_snapshots(context):
            print(f"{info.remote_id}  {info.size}  {info.modified:%Y-%m-%d %H:%M:%S}")
        return 0
    for entry in core_logic.list_backups(context, args.limit):
        print(
            f"{entry.timestamp:%Y-%m-%d %H:%M:%S}  {entry.operation.value}  {entry.kind.value}  "
            f"{entry.status.value}  {entry.remote_file_id or '-'}  {entry.error_message or ''}".rstrip()
        )
    return 0


def run_repair(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the running balance repair via the BLL."""
    report = core_logic.repair_running_balances(context)
    for table, partitions in report.items():
        print(f"{table}: {sum(partitions.values())} balance(s) rewritten across {len(partitions)} partition(s)")
    return 0


def run_backup(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute a manual backup; the audit entry is persisted even on failure."""
    result = core_logic.run_backup(context)
    if not result.succeeded:
        persist_workbook(context)
        print(f"Backup failed: {result.error_message}")
        return 1
    print(f"Backup written: {result.remote_file_id}")
    return 0


def run_restore(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute a restore and report its outcome."""
    outcome = core_logic.run_restore(context, args.file_id)
    for error in outcome.errors:
        print(f"  {error}")
    if outcome.status is RestoreStatus.FAILED:
        persist_workbook(context)
        print(f"Restore failed ({outcome.phase.value}): {outcome.message}")
        if outcome.safety_backup_id:
            print(f"Safety backup: {outcome.safety_backup_id}")
        return 1
    print(
        f"Restore {outcome.status.value.lower()}: "
        + ", ".join(f"{table}={count}" for table, count in outcome.restored.items())
    )
    print(f"Safety backup: {outcome.safety_backup_id}")
    return 0


def run_factory_reset(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the factory reset once confirmed."""
    if not args.yes:
        print("Refusing to reset without --yes")
        return 1
    deleted = core_logic.factory_reset(context)
    print(", ".join(f"{table}={count}" for table, count in deleted.items()))
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, (ValidationError, InsufficiencyError, CascadeLinkAmbiguity)):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    log.error("%s", error)
    return 1


def persist_workbook(context: core_logic.RuntimeContext) -> None:
    """Persist workbook changes after successful execution."""
    try:
        core_logic.persist_context(context)
    except PermissionError as error:
        raise RuntimeError(str(error)) from error


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0:
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - exit codes covered by handle_cli_error tests
        return handle_cli_error(error)


if __name__ == "__main__":
    raise SystemExit(main())
