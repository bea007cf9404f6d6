"""Data access layer for the FabLab ledger.

This module provides low-level helpers that read from and write to the master
workbook. Ledger rules belong elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening and persisting the Excel file.
3. Sheet operations: loading structured records and appending, updating or
   deleting individual rows.
"""


from __future__ import annotations

import configparser
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Iterable, Iterator, Mapping, Optional, Sequence

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import (
    DEFAULT_COLOR_CODE,
    DEFAULT_THRESHOLD,
    DEFAULT_TOP_USED_COUNT,
    Category,
    SheetName,
)


CONFIG_FILE_NAME = "config.ini"
ITEMS_SHEET = SheetName.ITEMS.value
TRANSACTION_LOG_SHEET = SheetName.TRANSACTION_LOG.value
PROFILES_SHEET = SheetName.PROFILES.value

ITEM_COLUMNS: tuple[str, ...] = (
    "ItemID",
    "ItemName",
    "Category",
    "Quantity",
    "Threshold",
    "Location",
    "Description",
    "ColorCode",
    "Tags",
    "ImageRef",
    "Version",
)

LOG_COLUMNS: tuple[str, ...] = (
    "EntryID",
    "Timestamp",
    "ItemID",
    "ChangeAmount",
    "ActionType",
    "ActorID",
    "ActorEmail",
)

PROFILE_COLUMNS: tuple[str, ...] = (
    "ActorID",
    "FirstName",
    "LastName",
    "UserType",
    "AvatarRef",
)

# Maps ItemRow attribute names onto their worksheet columns.
ITEM_FIELD_COLUMNS: Mapping[str, str] = {
    "name": "ItemName",
    "category": "Category",
    "quantity": "Quantity",
    "threshold": "Threshold",
    "location": "Location",
    "description": "Description",
    "color_code": "ColorCode",
    "tags": "Tags",
    "image_ref": "ImageRef",
    "version": "Version",
}

TAG_SEPARATOR = ","


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    lab_name: str
    schema_version: str
    default_actor_id: str
    default_actor_email: str
    autosave: bool = False
    default_threshold: int = DEFAULT_THRESHOLD
    top_used_count: int = DEFAULT_TOP_USED_COUNT


@dataclass(frozen=True)
class ItemRow:
    """In-memory view of a row from the ``Items`` sheet."""

    item_id: str
    name: str
    category: Category
    quantity: int
    threshold: int
    location: str = ""
    description: str = ""
    color_code: str = DEFAULT_COLOR_CODE
    tags: tuple[str, ...] = ()
    image_ref: Optional[str] = None
    version: int = 1


@dataclass(frozen=True)
class LogEntryRow:
    """In-memory view of a row from the ``TransactionLog`` sheet."""

    entry_id: str
    timestamp_iso: str
    item_id: str
    change_amount: int
    action_type: str
    actor_id: Optional[str]
    actor_email: Optional[str]


@dataclass(frozen=True)
class ProfileRow:
    """In-memory view of a row from the ``Profiles`` sheet."""

    actor_id: str
    first_name: str
    last_name: str
    user_type: Optional[str] = None
    avatar_ref: Optional[str] = None


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME`` and returns the first match.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If no parent directory holds ``CONFIG_FILE_NAME``.
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


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    Required options live under ``[System]`` (``DataFile``, ``LabName``,
    ``SchemaVersion``) and ``[Defaults]`` (``DefaultActorID``,
    ``DefaultActorEmail``). ``AutoSave``, ``LowStockThreshold`` and
    ``TopUsedCount`` are optional. Relative ``DataFile`` entries are expanded
    against ``base_path`` when provided, or against the current working
    directory as a fallback.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Anchor directory for relative data files.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If a required section or option is missing.
        ValueError: If an optional numeric or boolean entry is malformed.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        lab_name = parser.get("System", "LabName")
        schema_version = parser.get("System", "SchemaVersion")
        default_actor_id = parser.get("Defaults", "DefaultActorID")
        default_actor_email = parser.get("Defaults", "DefaultActorEmail")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    autosave = parser.getboolean("System", "AutoSave", fallback=False)
    default_threshold = parser.getint("Defaults", "LowStockThreshold", fallback=DEFAULT_THRESHOLD)
    top_used_count = parser.getint("Defaults", "TopUsedCount", fallback=DEFAULT_TOP_USED_COUNT)
    if default_threshold < 0:
        raise ValueError(f"LowStockThreshold must be zero or positive, got {default_threshold}")

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        lab_name=lab_name,
        schema_version=schema_version,
        default_actor_id=default_actor_id,
        default_actor_email=default_actor_email,
        autosave=autosave,
        default_threshold=default_threshold,
        top_used_count=top_used_count,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the master workbook and return a live ``openpyxl`` workbook.

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
    """Persist the workbook to ``destination``, creating parent folders."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


def iter_items(workbook: Workbook) -> Iterator[ItemRow]:
    """Iterate over item records stored on the ``Items`` worksheet.

    Header and fully empty rows are skipped.
    """

    sheet = workbook[ITEMS_SHEET]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        if any(cell is not None for cell in raw):
            yield deserialize_item(raw)


def iter_log_entries(workbook: Workbook) -> Iterator[LogEntryRow]:
    """Stream log entries from the ``TransactionLog`` worksheet in sheet order."""

    sheet = workbook[TRANSACTION_LOG_SHEET]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        if any(cell is not None for cell in raw):
            yield deserialize_log_entry(raw)


def iter_profiles(workbook: Workbook) -> Iterator[ProfileRow]:
    """Stream actor profiles.

    The ``Profiles`` sheet is optional; workbooks without it simply have no
    profiles.
    """

    if PROFILES_SHEET not in workbook.sheetnames:
        return
    sheet = workbook[PROFILES_SHEET]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        if any(cell is not None for cell in raw):
            yield deserialize_profile(raw)


def append_item(workbook: Workbook, record: ItemRow) -> None:
    """Append an item record to the ``Items`` worksheet."""

    sheet = workbook[ITEMS_SHEET]
    sheet.append(serialize_item(record))


def append_log_entry(workbook: Workbook, record: LogEntryRow) -> None:
    """Append one complete entry to the ``TransactionLog`` worksheet.

    The row is serialized before touching the sheet, so a record is either
    appended whole or not at all.
    """

    values = serialize_log_entry(record)
    sheet = workbook[TRANSACTION_LOG_SHEET]
    sheet.append(values)


def append_profile(workbook: Workbook, record: ProfileRow) -> None:
    """Append a profile row, creating the ``Profiles`` sheet when missing."""

    if PROFILES_SHEET in workbook.sheetnames:
        sheet = workbook[PROFILES_SHEET]
    else:
        sheet = workbook.create_sheet(title=PROFILES_SHEET)
        sheet.append(list(PROFILE_COLUMNS))
    sheet.append(serialize_profile(record))


def update_item(workbook: Workbook, item_id: str, *, field_values: Mapping[str, Any]) -> None:
    """Update selected columns for an existing item.

    Only the columns named in ``field_values`` are written; every other cell
    of the row is left untouched.

    Args:
        workbook (Workbook): Workbook containing the items sheet.
        item_id (str): Identifier used to locate the target row.
        field_values (Mapping[str, Any]): Column names mapped to already
            serialized cell values (see :func:`item_field_values`).

    Raises:
        KeyError: If the item or any referenced column cannot be found.
    """

    row_index = locate_row(workbook, ITEMS_SHEET, "ItemID", item_id)
    if row_index is None:
        raise KeyError(f"Item not found: {item_id}")

    sheet = workbook[ITEMS_SHEET]
    header_map = _header_map(sheet)
    unknown = [field for field in field_values if field not in header_map]
    if unknown:
        raise KeyError(f"Unknown item field: {', '.join(unknown)}")

    for field, value in field_values.items():
        sheet.cell(row=row_index, column=header_map[field], value=value)


def delete_item(workbook: Workbook, item_id: str) -> None:
    """Remove the row holding ``item_id`` from the ``Items`` worksheet.

    Raises:
        KeyError: If no row carries ``item_id``.
    """

    row_index = locate_row(workbook, ITEMS_SHEET, "ItemID", item_id)
    if row_index is None:
        raise KeyError(f"Item not found: {item_id}")
    workbook[ITEMS_SHEET].delete_rows(row_index)


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    Args:
        workbook (Workbook): Workbook providing access to ``sheet_name``.
        sheet_name (str): Name of the worksheet to search.
        key_column (str): Header title identifying the lookup column.
        key_value (str): Value to match within the key column.

    Returns:
        int | None: 1-based Excel row index when a match is found, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    sheet = workbook[sheet_name]
    header_map = _header_map(sheet)
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = header_map[key_column]

    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        if len(row) < key_col_index:
            continue
        cell_value = row[key_col_index - 1]
        if cell_value is not None and str(cell_value) == key_value:
            return row_idx

    return None


def _header_map(sheet) -> dict[str, int]:
    return {cell.value: idx + 1 for idx, cell in enumerate(sheet[1]) if cell.value is not None}


def split_tags(raw: object) -> tuple[str, ...]:
    """Turn a comma separated string or an iterable into a tuple of tags.

    Tags are trimmed, empty fragments dropped and duplicates collapsed while
    keeping the order of first appearance.
    """

    if raw is None:
        return ()
    if isinstance(raw, str):
        fragments: Iterable[object] = raw.split(TAG_SEPARATOR)
    else:
        fragments = raw
    seen: dict[str, None] = {}
    for fragment in fragments:
        tag = str(fragment).strip()
        if tag:
            seen.setdefault(tag, None)
    return tuple(seen)


def join_tags(tags: Sequence[str]) -> Optional[str]:
    """Store tags as a single cell; no tags means an empty cell."""

    return f"{TAG_SEPARATOR} ".join(tags) if tags else None


def parse_timestamp(timestamp_iso: str) -> datetime:
    """Parse a stored ISO timestamp into an aware UTC-comparable datetime.

    Naive values are read as UTC and unreadable values sort as the oldest.
    """

    try:
        parsed = datetime.fromisoformat(timestamp_iso)
    except (TypeError, ValueError):
        return datetime.min.replace(tzinfo=UTC)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def item_field_values(changes: Mapping[str, Any]) -> dict[str, object]:
    """Translate ``ItemRow`` attribute changes into serialized column values.

    Raises:
        KeyError: If an attribute has no backing column.
    """

    values: dict[str, object] = {}
    for attribute, value in changes.items():
        column = ITEM_FIELD_COLUMNS.get(attribute)
        if column is None:
            raise KeyError(f"Unknown item attribute: {attribute}")
        if attribute == "category":
            value = Category.parse(value).value
        elif attribute == "tags":
            value = join_tags(split_tags(value))
        elif attribute == "image_ref":
            value = value or None
        values[column] = value
    return values


def serialize_item(record: ItemRow) -> list[object]:
    """Convert an item dataclass into the ``ITEM_COLUMNS`` ordering."""

    return [
        record.item_id,
        record.name,
        record.category.value,
        record.quantity,
        record.threshold,
        record.location,
        record.description,
        record.color_code,
        join_tags(record.tags),
        record.image_ref,
        record.version,
    ]


def serialize_log_entry(record: LogEntryRow) -> list[object]:
    """Convert a log entry dataclass into the ``LOG_COLUMNS`` ordering."""

    return [
        record.entry_id,
        record.timestamp_iso,
        record.item_id,
        record.change_amount,
        record.action_type,
        record.actor_id,
        record.actor_email,
    ]


def serialize_profile(record: ProfileRow) -> list[object]:
    return [
        record.actor_id,
        record.first_name,
        record.last_name,
        record.user_type,
        record.avatar_ref,
    ]


def _pad(raw_row: Sequence[object], width: int) -> list[object]:
    values = list(raw_row[:width])
    values.extend([None] * (width - len(values)))
    return values


def _as_int(raw: object, default: int, *, label: str) -> int:
    """Read a numeric cell; text like ``"4.0"`` is accepted, garbage reads as ``default``."""

    if raw is None or (isinstance(raw, str) and not raw.strip()):
        return default
    if isinstance(raw, int) and not isinstance(raw, bool):
        return raw
    try:
        number = float(str(raw).strip()) if isinstance(raw, str) else float(raw)
    except (TypeError, ValueError):
        number = None
    if number is None or not number.is_integer():
        log.warning("Malformed %s cell %r; reading it as %s", label, raw, default)
        return default
    return int(number)


def _as_text(raw: object) -> str:
    return str(raw) if raw is not None else ""


def _as_optional_text(raw: object) -> Optional[str]:
    if raw is None:
        return None
    text = str(raw)
    return text if text.strip() else None


def deserialize_item(raw_row: Sequence[object]) -> ItemRow:
    """Convert a raw worksheet row into a strongly typed item record.

    Numeric cells are coerced to ``int`` and text cells to ``str`` so values
    typed into the sheet by hand do not leak spreadsheet types. A category the
    enum does not know is read as ``Miscellaneous``.
    """

    (
        item_id,
        name,
        category_raw,
        quantity_raw,
        threshold_raw,
        location,
        description,
        color_code,
        tags_raw,
        image_ref,
        version_raw,
    ) = _pad(raw_row, len(ITEM_COLUMNS))

    try:
        category = Category.parse(category_raw)
    except ValueError:
        log.warning("Item '%s' has unknown category %r; reading it as Miscellaneous", item_id, category_raw)
        category = Category.MISCELLANEOUS

    return ItemRow(
        item_id=str(item_id),
        name=_as_text(name),
        category=category,
        quantity=_as_int(quantity_raw, 0, label=f"Quantity of item '{item_id}'"),
        threshold=_as_int(threshold_raw, DEFAULT_THRESHOLD, label=f"Threshold of item '{item_id}'"),
        location=_as_text(location),
        description=_as_text(description),
        color_code=_as_text(color_code) or DEFAULT_COLOR_CODE,
        tags=split_tags(tags_raw),
        image_ref=_as_optional_text(image_ref),
        version=_as_int(version_raw, 1, label=f"Version of item '{item_id}'"),
    )


def deserialize_log_entry(raw_row: Sequence[object]) -> LogEntryRow:
    """Convert a raw worksheet row into a strongly typed log entry."""

    (
        entry_id,
        timestamp_iso,
        item_id,
        change_raw,
        action_type,
        actor_id,
        actor_email,
    ) = _pad(raw_row, len(LOG_COLUMNS))

    return LogEntryRow(
        entry_id=str(entry_id),
        timestamp_iso=_as_text(timestamp_iso),
        item_id=_as_text(item_id),
        change_amount=_as_int(change_raw, 0, label=f"ChangeAmount of entry '{entry_id}'"),
        action_type=_as_text(action_type),
        actor_id=_as_optional_text(actor_id),
        actor_email=_as_optional_text(actor_email),
    )


def deserialize_profile(raw_row: Sequence[object]) -> ProfileRow:
    actor_id, first_name, last_name, user_type, avatar_ref = _pad(raw_row, len(PROFILE_COLUMNS))
    return ProfileRow(
        actor_id=str(actor_id),
        first_name=_as_text(first_name),
        last_name=_as_text(last_name),
        user_type=_as_optional_text(user_type),
        avatar_ref=_as_optional_text(avatar_ref),
    )
