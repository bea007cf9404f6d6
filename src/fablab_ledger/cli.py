"""Command-line front-end for the FabLab ledger.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into the drafts and patches consumed by the ledger, and
printing what the report functions compute. Confirmation prompts and output
formatting live here; ledger rules do not.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from itertools import islice
from pathlib import Path
from typing import Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, log, reports
from .constants import Category
from .data_manager import ItemRow


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]
    mutates: bool = True


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="fablab-cli",
        description="Command-line tools for the FabLab inventory ledger.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to ./config.ini).",
    )
    parser.add_argument("--actor-id", default=None, help="Actor recorded on log entries (defaults to config).")
    parser.add_argument("--actor-email", default=None, help="Email stored with log entries (defaults to config).")
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values()])


def register_write_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare commands that change items or stock."""
    specs = {
        "add-item": register_add_item_command(subparsers),
        "edit-item": register_edit_item_command(subparsers),
        "adjust": register_adjust_command(subparsers),
        "restock": register_restock_command(subparsers),
        "use": register_use_command(subparsers),
        "remove-item": register_remove_item_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only listing and report commands."""
    specs = {
        "items": register_items_command(subparsers),
        "log": register_log_command(subparsers),
        "report": register_report_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def _add_descriptive_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--name", default=None)
    parser.add_argument(
        "--category",
        choices=[member.value for member in Category],
        default=None,
    )
    parser.add_argument("--threshold", default=None, help="Low-stock cutoff (inclusive).")
    parser.add_argument("--location", default=None)
    parser.add_argument("--description", default=None)
    parser.add_argument("--color-code", dest="color_code", default=None)
    parser.add_argument("--tags", default=None, help="Comma separated tags.")
    parser.add_argument("--image-ref", dest="image_ref", default=None)


def register_add_item_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-item``."""
    name = "add-item"
    help_text = "Add an item and log its initial stock."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_descriptive_arguments(parser)
        parser.add_argument("--quantity", default=None, help="Opening stock (defaults to 0).")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_item)


def register_edit_item_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``edit-item``."""
    name = "edit-item"
    help_text = "Edit item fields; a quantity change is logged."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--item-id", required=True)
        _add_descriptive_arguments(parser)
        parser.add_argument("--quantity", default=None)
        parser.add_argument("--expected-version", type=int, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_edit_item)


def register_adjust_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``adjust``."""
    name = "adjust"
    help_text = "Set an item's quantity."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--item-id", required=True)
        parser.add_argument("--quantity", type=int, required=True)
        parser.add_argument("--expected-version", type=int, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_adjust)


def register_restock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``restock``."""
    name = "restock"
    help_text = "Add units to an item's stock."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--item-id", required=True)
        parser.add_argument("--amount", type=int, required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_restock)


def register_use_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``use``."""
    name = "use"
    help_text = "Take units out of an item's stock."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--item-id", required=True)
        parser.add_argument("--amount", type=int, required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_use)


def register_remove_item_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``remove-item``."""
    name = "remove-item"
    help_text = "Delete an item; its log entries are kept."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--item-id", required=True)
        parser.add_argument("--yes", action="store_true", help="Confirm the deletion.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_remove_item)


def register_items_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``items``."""
    name = "items"
    help_text = "List items with their stock status."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--search", default="", help="Filter by name or category.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_items, mutates=False)


def register_log_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``log``."""
    name = "log"
    help_text = "Display the transaction log, newest first."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--item-id", default=None)
        parser.add_argument("--limit", type=int, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_log, mutates=False)


def register_report_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``report``."""
    name = "report"
    help_text = "Display the stock status histogram and the most used items."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--top", type=int, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_report, mutates=False)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    target = Path(config_path) if config_path is not None else Path.cwd() / "config.ini"
    context = core_logic.load_runtime_context(target)
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


def resolve_actor(context: core_logic.RuntimeContext, args: argparse.Namespace) -> core_logic.Actor:
    """Use the actor given on the command line, falling back to config defaults."""
    fallback = core_logic.default_actor(context)
    return core_logic.Actor(
        actor_id=getattr(args, "actor_id", None) or fallback.actor_id,
        email=getattr(args, "actor_email", None) or fallback.email,
    )


def translate_add_item(args: argparse.Namespace) -> core_logic.ItemDraft:
    """Translate CLI args into an item draft; sanitizing is left to the ledger."""
    return core_logic.ItemDraft(
        name=args.name,
        category=args.category,
        quantity=args.quantity,
        threshold=args.threshold,
        location=args.location,
        description=args.description,
        color_code=args.color_code,
        tags=args.tags,
        image_ref=args.image_ref,
    )


def translate_edit_item(args: argparse.Namespace) -> core_logic.ItemPatch:
    """Translate CLI args into a patch holding only the options given."""
    return core_logic.ItemPatch(
        name=args.name,
        category=args.category,
        quantity=args.quantity,
        threshold=args.threshold,
        location=args.location,
        description=args.description,
        color_code=args.color_code,
        tags=args.tags,
        image_ref=args.image_ref,
    )


def format_item(item: ItemRow) -> str:
    status = reports.stock_status(item).value
    return (
        f"{item.item_id}  {item.name:<28} {item.category.value:<13} "
        f"qty={item.quantity:<5} threshold={item.threshold:<4} {status}"
    )


def format_log_entry(entry: core_logic.LogView) -> str:
    sign = "+" if entry.change_amount > 0 else ""
    return (
        f"{entry.timestamp_iso}  {reports.actor_display_name(entry):<24} "
        f"{entry.action_type} {sign}{entry.change_amount:<6} {reports.item_display_name(entry)}"
    )


def run_add_item(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Create an item through the ledger."""
    item = core_logic.add_item(context, translate_add_item(args), actor=resolve_actor(context, args))
    print(format_item(item))
    return 0


def run_edit_item(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Apply an item edit through the ledger."""
    item = core_logic.edit_item(
        context,
        args.item_id,
        translate_edit_item(args),
        actor=resolve_actor(context, args),
        expected_version=args.expected_version,
    )
    print(format_item(item))
    return 0


def run_adjust(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Set an item's quantity through the ledger."""
    item = core_logic.adjust_quantity(
        context,
        args.item_id,
        args.quantity,
        actor=resolve_actor(context, args),
        expected_version=args.expected_version,
    )
    print(format_item(item))
    return 0


def run_restock(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    item = core_logic.record_restock(context, args.item_id, args.amount, actor=resolve_actor(context, args))
    print(format_item(item))
    return 0


def run_use(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    item = core_logic.record_usage(context, args.item_id, args.amount, actor=resolve_actor(context, args))
    print(format_item(item))
    return 0


def run_remove_item(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Delete an item once the user confirmed with ``--yes``."""
    if not args.yes:
        print(f"Refusing to delete '{args.item_id}' without --yes.")
        return 1
    core_logic.remove_item(context, args.item_id)
    print(f"Removed {args.item_id}")
    return 0


def run_items(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the (optionally filtered) item list."""
    snapshot = core_logic.refresh_snapshot(context)
    matches = reports.filter_items(snapshot.items, args.search)
    if not matches:
        print("No items found matching your search.")
    for item in matches:
        print(format_item(item))
    return 0


def run_log(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print log entries, optionally restricted to one item."""
    if args.item_id is None:
        entries: Iterable[core_logic.LogView] = core_logic.list_log(context, args.limit)
    else:
        if args.limit is not None and args.limit < 0:
            raise core_logic.ValidationFailure("Limit must be zero or positive")
        matching = (entry for entry in core_logic.list_log(context) if entry.item_id == args.item_id)
        entries = islice(matching, args.limit)
    for entry in entries:
        print(format_log_entry(entry))
    return 0


def run_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the stock histogram and the usage ranking."""
    snapshot = core_logic.refresh_snapshot(context)
    top = args.top if args.top is not None else context.settings.top_used_count

    print(f"Stock status ({context.settings.lab_name})")
    for status, count in reports.stock_status_histogram(snapshot.items).as_dict().items():
        print(f"  {status.value:<13} {count}")

    print(f"Top {top} used items")
    for rank, usage in enumerate(reports.top_used_items(snapshot.log_entries, top), start=1):
        print(f"  {rank}. {usage.item_name:<28} {usage.total_used}")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, core_logic.LedgerError):
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
        if exit_code == 0 and command_table[args.command].mutates:
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
