"""Ledger rules for the FabLab inventory.

This module owns the item store, the append-only ``TransactionLog`` and the
coordinator that ties them together: every change to an item's quantity is
written alongside exactly one log entry whose ``change_amount`` equals the
delta. All I/O goes through the data access layer in :mod:`data_manager`.
"""

from __future__ import annotations

import math
import re
import uuid
from dataclasses import dataclass, field, fields, replace
from datetime import UTC, datetime
from itertools import islice
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional

from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import (
    DEFAULT_COLOR_CODE,
    DEFAULT_ITEM_NAME,
    DEFAULT_QUANTITY,
    DEFAULT_THRESHOLD,
    EXPECTED_SCHEMA_VERSION,
    ActionType,
    Category,
)


class LedgerError(Exception):
    """Base class for every failure reported by the ledger."""


class ValidationFailure(LedgerError, ValueError):
    """Raised when caller supplied data is rejected before reaching storage."""


class NotFound(LedgerError, LookupError):
    """Raised when an item referenced by id does not exist."""


class StorageUnavailable(LedgerError):
    """Raised when the workbook could not be read from or written to."""


class PartialCommit(LedgerError):
    """Raised when an item write succeeded but its paired log append failed.

    The item write is not rolled back; ``item`` holds the stored state and
    ``cause`` the failure of the second half.
    """

    def __init__(self, message: str, *, item: data_manager.ItemRow, cause: BaseException) -> None:
        super().__init__(message)
        self.item = item
        self.cause = cause


class Conflict(LedgerError):
    """Raised when an edit was based on an outdated version of the item."""


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration and workbook references used by the ledger."""

    settings: data_manager.ConfigSettings
    workbook: Workbook
    _cache: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)


@dataclass(frozen=True)
class Actor:
    """Identity stamped onto every log entry at write time."""

    actor_id: str
    email: str


@dataclass(frozen=True)
class ItemDraft:
    """Loosely typed user input for a new item.

    Values arrive the way a form delivers them (strings, blanks, ``None``);
    :func:`sanitize_draft` turns them into an :class:`data_manager.ItemRow`.
    """

    name: Optional[str] = None
    category: Any = None
    quantity: Any = None
    threshold: Any = None
    location: Optional[str] = None
    description: Optional[str] = None
    color_code: Optional[str] = None
    tags: Any = None
    image_ref: Optional[str] = None


@dataclass(frozen=True)
class ItemPatch:
    """Partial edit of an item; ``None`` means the field is left as stored.

    An empty string for ``image_ref`` clears the image reference.
    """

    name: Optional[str] = None
    category: Any = None
    quantity: Any = None
    threshold: Any = None
    location: Optional[str] = None
    description: Optional[str] = None
    color_code: Optional[str] = None
    tags: Any = None
    image_ref: Optional[str] = None

    def declared(self) -> Dict[str, Any]:
        """Return only the fields the caller actually set."""

        return {
            spec.name: getattr(self, spec.name)
            for spec in fields(self)
            if getattr(self, spec.name) is not None
        }


@dataclass(frozen=True)
class LogView:
    """A log entry joined with the names needed to display it.

    ``item_name`` is ``None`` when the referenced item no longer exists.
    ``actor_name`` is the profile's full name, or the email captured at write
    time when no profile is available.
    """

    entry: data_manager.LogEntryRow
    item_name: Optional[str]
    actor_name: Optional[str]

    @property
    def item_id(self) -> str:
        return self.entry.item_id

    @property
    def change_amount(self) -> int:
        return self.entry.change_amount

    @property
    def action_type(self) -> str:
        return self.entry.action_type

    @property
    def timestamp_iso(self) -> str:
        return self.entry.timestamp_iso


@dataclass(frozen=True)
class Snapshot:
    """Point-in-time read of all items and the joined log."""

    items: tuple[data_manager.ItemRow, ...]
    log_entries: tuple[LogView, ...]


_LEADING_INT = re.compile(r"[+-]?\d+")


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` or the current UTC time when it is ``None``."""

    return candidate if candidate is not None else datetime.now(UTC)


def _get_cache_bucket(context: RuntimeContext, name: str) -> Dict[str, Any]:
    """Return the mutable cache bucket stored under ``name``, creating it on demand."""

    bucket = context._cache.get(name)
    if bucket is None:
        log.debug("Initializing cache bucket '%s'", name)
        bucket = {}
        context._cache[name] = bucket
    return bucket


def _invalidate_cache(context: RuntimeContext, *names: str) -> None:
    """Evict cache buckets after mutating workbook state.

    Missing buckets are ignored so callers can invalidate unconditionally.
    """

    if not names:
        return

    log.debug("Invalidating cache buckets: %s", ", ".join(names))

    for name in names:
        context._cache.pop(name, None)


def _ensure_items_cache(context: RuntimeContext) -> Dict[str, Any]:
    """Populate the item bucket with ``all`` rows and a ``by_id`` lookup."""

    bucket = _get_cache_bucket(context, "items")
    if "all" not in bucket:
        all_items = _read(context, "read items", data_manager.iter_items)
        bucket["all"] = all_items
        bucket["by_id"] = {item.item_id: item for item in all_items}
        log.debug("Populated items cache with %d entries", len(all_items))
    return bucket


def _ensure_log_cache(context: RuntimeContext) -> Dict[str, Any]:
    """Populate the log bucket with entries sorted newest first.

    Entries sharing a timestamp keep their reverse sheet order, so the most
    recently appended one still comes first.
    """

    bucket = _get_cache_bucket(context, "log")
    if "newest_first" not in bucket:
        entries = _read(context, "read transaction log", data_manager.iter_log_entries)
        ordered = sorted(
            enumerate(entries),
            key=lambda pair: (data_manager.parse_timestamp(pair[1].timestamp_iso), pair[0]),
            reverse=True,
        )
        bucket["newest_first"] = [entry for _, entry in ordered]
        log.debug("Populated log cache with %d entries", len(entries))
    return bucket


def _ensure_profiles_cache(context: RuntimeContext) -> Dict[str, Any]:
    bucket = _get_cache_bucket(context, "profiles")
    if "by_id" not in bucket:
        profiles = _read(context, "read profiles", data_manager.iter_profiles)
        bucket["by_id"] = {profile.actor_id: profile for profile in profiles}
        log.debug("Populated profiles cache with %d entries", len(profiles))
    return bucket


def _read(context: RuntimeContext, action: str, reader: Callable[[Workbook], Any]) -> Any:
    """Run a data layer reader, reporting workbook failures as ``StorageUnavailable``."""

    try:
        return list(reader(context.workbook))
    except (KeyError, OSError) as exc:
        log.error("Storage read failed (%s): %s", action, exc)
        raise StorageUnavailable(f"Could not {action}: {exc}") from exc


def _write(context: RuntimeContext, action: str, operation: Callable[..., None], *args: Any, **kwargs: Any) -> None:
    """Apply one data layer write and persist it when autosave is enabled.

    Any failure, including a failed save, surfaces as
    :class:`StorageUnavailable` with the original error chained.
    """

    try:
        operation(context.workbook, *args, **kwargs)
        if context.settings.autosave:
            persist_context(context)
    except (KeyError, OSError) as exc:
        log.error("Storage write failed (%s): %s", action, exc)
        raise StorageUnavailable(f"Could not {action}: {exc}") from exc
    finally:
        _invalidate_cache(context, "items", "log")


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook for the ledger.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer searches upward from the current
            working directory.

    Returns:
        RuntimeContext: Context bundling settings, workbook and an empty cache.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, workbook=workbook)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Refuse to work on a workbook declared with another schema version.

    Raises:
        RuntimeError: If ``config.ini`` declares a schema version other than
            ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def default_actor(context: RuntimeContext) -> Actor:
    """Build the actor configured under ``[Defaults]``."""

    return Actor(
        actor_id=context.settings.default_actor_id,
        email=context.settings.default_actor_email,
    )


def generate_id(prefix: str, *, when: Optional[datetime] = None) -> str:
    """Generate a sortable, collision-safe identifier.

    The identifier is ``{prefix}{YYYYMMDDHHMMSSffffff}-{6 hex chars}``: the
    timestamp keeps ids in creation order and the random suffix separates
    records created within the same microsecond.
    """
    when = when or _resolve_timestamp(None)
    return f"{prefix}{when.strftime('%Y%m%d%H%M%S%f')}-{uuid.uuid4().hex[:6]}"


def _coerce_int(value: Any, default: Optional[int]) -> Optional[int]:
    """Read an integer the way a form field would.

    Leading integer text is accepted (``"12 pcs"`` reads as 12); anything
    without a number yields ``default``.
    """
    if value is None or isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if math.isfinite(value) else default
    match = _LEADING_INT.match(str(value).strip())
    return int(match.group()) if match else default


def _parse_category(value: Any) -> Category:
    try:
        return Category.parse(value)
    except ValueError as exc:
        log.error("Category validation failed: %r", value)
        raise ValidationFailure(str(exc)) from exc


def _require_threshold(value: int) -> int:
    if value < 0:
        log.error("Threshold validation failed: %s", value)
        raise ValidationFailure("Threshold must be zero or positive")
    return value


def _clamp_quantity(quantity: int, *, item_id: str) -> int:
    """Clamp negative quantities to zero; stock can never go below empty."""

    if quantity < 0:
        log.warning("Clamping negative quantity %s to 0 for item '%s'", quantity, item_id)
        return 0
    return quantity


def sanitize_draft(
    draft: ItemDraft,
    *,
    item_id: str,
    default_threshold: int = DEFAULT_THRESHOLD,
) -> data_manager.ItemRow:
    """Turn raw form input into a storable item.

    Rules:

    * a blank name becomes ``"Untitled Item"``;
    * a missing or non-numeric quantity becomes 0, a negative one is clamped
      to 0;
    * a missing or non-numeric threshold becomes ``default_threshold``;
    * tags given as a string are split on commas, trimmed and emptied
      fragments dropped;
    * a blank image reference is stored as ``None`` rather than ``""``.

    Raises:
        ValidationFailure: If the category is unknown or the threshold is
            negative.
    """
    name = (draft.name or "").strip() or DEFAULT_ITEM_NAME
    if draft.category is None or not str(draft.category).strip():
        category = Category.CONSUMABLE
    else:
        category = _parse_category(draft.category)
    quantity = _clamp_quantity(_coerce_int(draft.quantity, DEFAULT_QUANTITY), item_id=item_id)
    threshold = _require_threshold(_coerce_int(draft.threshold, default_threshold))

    return data_manager.ItemRow(
        item_id=item_id,
        name=name,
        category=category,
        quantity=quantity,
        threshold=threshold,
        location=draft.location or "",
        description=draft.description or "",
        color_code=draft.color_code or DEFAULT_COLOR_CODE,
        tags=data_manager.split_tags(draft.tags),
        image_ref=(draft.image_ref or "").strip() or None,
    )


def _normalize_patch(patch: ItemPatch, *, item_id: str) -> Dict[str, Any]:
    """Validate the declared fields of ``patch`` and convert them to stored types.

    Raises:
        ValidationFailure: If a declared value cannot be stored.
    """
    changes: Dict[str, Any] = {}
    for name, value in patch.declared().items():
        if name == "name":
            value = value.strip()
            if not value:
                log.error("Name validation failed for item '%s': blank name", item_id)
                raise ValidationFailure("Item name must not be empty")
        elif name == "category":
            value = _parse_category(value)
        elif name in ("quantity", "threshold"):
            number = _coerce_int(value, None)
            if number is None:
                log.error("%s validation failed for item '%s': %r", name, item_id, value)
                raise ValidationFailure(f"{name.capitalize()} must be a whole number")
            value = _clamp_quantity(number, item_id=item_id) if name == "quantity" else _require_threshold(number)
        elif name == "tags":
            value = data_manager.split_tags(value)
        elif name == "image_ref":
            value = value.strip() or None
        changes[name] = value
    return changes


# ---------------------------------------------------------------------------
# Item store
# ---------------------------------------------------------------------------


def list_items(context: RuntimeContext) -> List[data_manager.ItemRow]:
    """Return every item ordered by name.

    Names compare case-insensitively; the item id breaks ties so the order is
    stable between calls.
    """
    cache = _ensure_items_cache(context)
    return sorted(cache["all"], key=lambda item: (item.name.casefold(), item.item_id))


def get_item(context: RuntimeContext, item_id: str) -> data_manager.ItemRow:
    """Resolve an item by its identifier.

    Raises:
        NotFound: If ``item_id`` is absent from the workbook.
    """
    cache = _ensure_items_cache(context)
    try:
        return cache["by_id"][item_id]
    except KeyError as exc:
        log.warning("Item lookup failed for id '%s'", item_id)
        raise NotFound(f"Unknown item id: {item_id}") from exc


def create_item(context: RuntimeContext, draft: ItemDraft, *, timestamp: Optional[datetime] = None) -> data_manager.ItemRow:
    """Sanitize ``draft`` and append it to the ``Items`` sheet.

    This is the raw store operation and writes no log entry; use
    :func:`add_item` to create stock through the ledger.

    Raises:
        ValidationFailure: If the draft cannot be sanitized.
        StorageUnavailable: If the workbook rejects the write.
    """
    item_id = generate_id("I", when=_resolve_timestamp(timestamp))
    item = sanitize_draft(draft, item_id=item_id, default_threshold=context.settings.default_threshold)
    _write(context, "create item", data_manager.append_item, item)
    log.debug("Stored item '%s' (%s)", item.item_id, item.name)
    return item


def update_item(context: RuntimeContext, item_id: str, patch: ItemPatch) -> data_manager.ItemRow:
    """Write the declared descriptive fields of ``patch`` to an item.

    Only the fields set on ``patch`` are written. Quantity is not accepted
    here: stock changes must go through :func:`edit_item` or
    :func:`adjust_quantity` so they are logged.

    Raises:
        ValidationFailure: If ``patch`` declares ``quantity`` or an invalid
            value.
        NotFound: If ``item_id`` does not exist.
        StorageUnavailable: If the workbook rejects the write.
    """
    if patch.quantity is not None:
        log.error("Rejected unlogged quantity change for item '%s'", item_id)
        raise ValidationFailure("Quantity changes must go through the ledger")
    changes = _normalize_patch(patch, item_id=item_id)
    return _store_item_changes(context, get_item(context, item_id), changes)


def _store_item_changes(
    context: RuntimeContext,
    item: data_manager.ItemRow,
    changes: Dict[str, Any],
) -> data_manager.ItemRow:
    """Persist already normalized ``changes`` and bump the item's version."""

    if not changes:
        return item
    updated = replace(item, **changes, version=item.version + 1)
    field_values = data_manager.item_field_values(
        {name: getattr(updated, name) for name in (*changes, "version")}
    )
    _write(context, "update item", data_manager.update_item, item.item_id, field_values=field_values)
    log.debug("Updated item '%s' fields: %s", item.item_id, ", ".join(sorted(changes)))
    return updated


def delete_item(context: RuntimeContext, item_id: str) -> None:
    """Hard delete an item row.

    Raises:
        NotFound: If ``item_id`` does not exist.
        StorageUnavailable: If the workbook rejects the write.
    """
    get_item(context, item_id)
    _write(context, "delete item", data_manager.delete_item, item_id)


# ---------------------------------------------------------------------------
# Transaction log
# ---------------------------------------------------------------------------


def append_log_entry(
    context: RuntimeContext,
    *,
    item_id: str,
    change_amount: int,
    action_type: ActionType,
    actor: Actor,
    timestamp: Optional[datetime] = None,
) -> data_manager.LogEntryRow:
    """Append one immutable entry to the transaction log.

    The actor's email is stored next to the actor id so the entry stays
    readable after the actor's profile changes or disappears.

    Raises:
        StorageUnavailable: If the workbook rejects the write.
    """
    when = _resolve_timestamp(timestamp)
    entry = data_manager.LogEntryRow(
        entry_id=generate_id("L", when=when),
        timestamp_iso=when.isoformat(),
        item_id=item_id,
        change_amount=change_amount,
        action_type=ActionType(action_type).value,
        actor_id=actor.actor_id,
        actor_email=actor.email,
    )
    _write(context, "append log entry", data_manager.append_log_entry, entry)
    return entry


def list_log_for_item(context: RuntimeContext, item_id: str) -> Iterator[data_manager.LogEntryRow]:
    """Yield the entries of one item, newest first."""

    for entry in _ensure_log_cache(context)["newest_first"]:
        if entry.item_id == item_id:
            yield entry


def list_log(context: RuntimeContext, limit: Optional[int] = None) -> Iterator[LogView]:
    """Yield log entries newest first, joined with item and actor names.

    Entries whose item was deleted are still yielded, with ``item_name`` set
    to ``None``.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        limit (int | None): Maximum number of entries to yield; ``None``
            yields all of them.

    Raises:
        ValidationFailure: If ``limit`` is negative.
    """
    if limit is not None and limit < 0:
        raise ValidationFailure("Limit must be zero or positive")
    entries = _ensure_log_cache(context)["newest_first"]
    items_by_id = _ensure_items_cache(context)["by_id"]
    profiles_by_id = _ensure_profiles_cache(context)["by_id"]
    for entry in islice(entries, limit):
        item = items_by_id.get(entry.item_id)
        yield LogView(
            entry=entry,
            item_name=item.name if item is not None else None,
            actor_name=_actor_name(profiles_by_id.get(entry.actor_id), entry),
        )


def get_profile(context: RuntimeContext, actor_id: str) -> Optional[data_manager.ProfileRow]:
    """Return the stored profile for ``actor_id`` or ``None``."""

    return _ensure_profiles_cache(context)["by_id"].get(actor_id)


def _actor_name(profile: Optional[data_manager.ProfileRow], entry: data_manager.LogEntryRow) -> Optional[str]:
    if profile is not None:
        full_name = f"{profile.first_name} {profile.last_name}".strip()
        if full_name:
            return full_name
    return entry.actor_email


# ---------------------------------------------------------------------------
# Ledger coordinator
# ---------------------------------------------------------------------------


def add_item(
    context: RuntimeContext,
    draft: ItemDraft,
    *,
    actor: Actor,
    timestamp: Optional[datetime] = None,
) -> data_manager.ItemRow:
    """Create an item and record its opening stock.

    The ``Initial Stock`` entry is written even when the opening quantity is
    zero, so every item starts with exactly one log entry.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        draft (ItemDraft): Raw user input for the new item.
        actor (Actor): Who is creating the item.
        timestamp (datetime | None): Moment of creation; defaults to now.

    Returns:
        data_manager.ItemRow: The stored item.

    Raises:
        ValidationFailure: If the draft is rejected.
        StorageUnavailable: If the item could not be stored.
        PartialCommit: If the item was stored but its log entry was not. The
            item is left in place.
    """
    when = _resolve_timestamp(timestamp)
    item = create_item(context, draft, timestamp=when)
    try:
        append_log_entry(
            context,
            item_id=item.item_id,
            change_amount=item.quantity,
            action_type=ActionType.INITIAL_STOCK,
            actor=actor,
            timestamp=when,
        )
    except StorageUnavailable as exc:
        log.error("Item '%s' stored without its Initial Stock entry: %s", item.item_id, exc)
        raise PartialCommit(
            f"Item '{item.item_id}' was created but its initial stock was not logged",
            item=item,
            cause=exc,
        ) from exc

    log.info(
        "Added item '%s' (%s) with initial stock %s by '%s'",
        item.item_id,
        item.name,
        item.quantity,
        actor.actor_id,
    )
    return item


def edit_item(
    context: RuntimeContext,
    item_id: str,
    patch: ItemPatch,
    *,
    actor: Actor,
    expected_version: Optional[int] = None,
    timestamp: Optional[datetime] = None,
) -> data_manager.ItemRow:
    """Apply an edit and log the quantity delta, if any.

    The previous quantity is read from the workbook at call time, never taken
    from the caller. A non-zero delta produces one ``Restock`` (positive) or
    ``Usage`` (negative) entry; a zero delta and edits of descriptive fields
    produce none.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        item_id (str): Item to edit.
        patch (ItemPatch): Fields to replace; undeclared fields keep their
            stored values.
        actor (Actor): Who is making the change.
        expected_version (int | None): When given, the edit is refused unless
            the stored item still carries this version.
        timestamp (datetime | None): Moment of the change; defaults to now.

    Returns:
        data_manager.ItemRow: The item as stored after the edit.

    Raises:
        ValidationFailure: If a declared value is invalid.
        NotFound: If ``item_id`` does not exist.
        Conflict: If ``expected_version`` no longer matches.
        StorageUnavailable: If the item could not be updated.
        PartialCommit: If the item was updated but the log entry was not.
    """
    _invalidate_cache(context, "items")
    previous = get_item(context, item_id)
    changes = _normalize_patch(patch, item_id=item_id)
    if expected_version is not None and previous.version != expected_version:
        log.warning(
            "Version conflict on item '%s': expected %s, stored %s",
            item_id,
            expected_version,
            previous.version,
        )
        raise Conflict(
            f"Item '{item_id}' changed since it was read "
            f"(expected version {expected_version}, found {previous.version})"
        )

    delta = changes["quantity"] - previous.quantity if "quantity" in changes else 0
    if delta == 0:
        changes.pop("quantity", None)

    updated = _store_item_changes(context, previous, changes)
    if delta != 0:
        try:
            append_log_entry(
                context,
                item_id=item_id,
                change_amount=delta,
                action_type=ActionType.for_delta(delta),
                actor=actor,
                timestamp=timestamp,
            )
        except StorageUnavailable as exc:
            log.error("Item '%s' updated without its log entry (delta=%s): %s", item_id, delta, exc)
            raise PartialCommit(
                f"Item '{item_id}' was updated but the stock change of {delta} was not logged",
                item=updated,
                cause=exc,
            ) from exc

    log.info(
        "Edited item '%s' by '%s' (fields=%s, delta=%s)",
        item_id,
        actor.actor_id,
        ", ".join(sorted(changes)) or "none",
        delta,
    )
    return updated


def adjust_quantity(
    context: RuntimeContext,
    item_id: str,
    new_quantity: int,
    *,
    actor: Actor,
    expected_version: Optional[int] = None,
    timestamp: Optional[datetime] = None,
) -> data_manager.ItemRow:
    """Set an item's quantity, logging the delta.

    Equivalent to :func:`edit_item` with a patch holding only ``quantity``.
    Negative values are clamped to zero.
    """
    return edit_item(
        context,
        item_id,
        ItemPatch(quantity=new_quantity),
        actor=actor,
        expected_version=expected_version,
        timestamp=timestamp,
    )


def record_restock(context: RuntimeContext, item_id: str, amount: int, *, actor: Actor) -> data_manager.ItemRow:
    """Add ``amount`` units to the stored quantity.

    Raises:
        ValidationFailure: If ``amount`` is not a positive whole number.
    """
    require_positive_amount(amount)
    current = _fresh_item(context, item_id)
    return adjust_quantity(context, item_id, current.quantity + amount, actor=actor)


def record_usage(context: RuntimeContext, item_id: str, amount: int, *, actor: Actor) -> data_manager.ItemRow:
    """Take ``amount`` units out of stock; the result never drops below zero.

    Raises:
        ValidationFailure: If ``amount`` is not a positive whole number.
    """
    require_positive_amount(amount)
    current = _fresh_item(context, item_id)
    return adjust_quantity(context, item_id, current.quantity - amount, actor=actor)


def remove_item(context: RuntimeContext, item_id: str) -> None:
    """Delete an item, leaving its log entries in place.

    Orphaned entries keep rendering through :func:`list_log` with an
    unresolved item name.

    Raises:
        NotFound: If ``item_id`` does not exist.
        StorageUnavailable: If the workbook rejects the delete.
    """
    delete_item(context, item_id)
    log.info("Removed item '%s'", item_id)


def require_positive_amount(amount: Any) -> None:
    """Validate that a restock or usage amount is a positive whole number."""

    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        log.error("Amount validation failed: %r", amount)
        raise ValidationFailure("Amount must be a whole number greater than zero")


def _fresh_item(context: RuntimeContext, item_id: str) -> data_manager.ItemRow:
    _invalidate_cache(context, "items")
    return get_item(context, item_id)


# ---------------------------------------------------------------------------
# Snapshots and persistence
# ---------------------------------------------------------------------------


def refresh_snapshot(context: RuntimeContext, *, log_limit: Optional[int] = None) -> Snapshot:
    """Re-read all items and the joined log from the workbook.

    Caches are dropped first so the snapshot reflects every write made through
    this context.
    """
    _invalidate_cache(context, "items", "log", "profiles")
    snapshot = Snapshot(
        items=tuple(list_items(context)),
        log_entries=tuple(list_log(context, log_limit)),
    )
    log.debug(
        "Refreshed snapshot: %d items, %d log entries",
        len(snapshot.items),
        len(snapshot.log_entries),
    )
    return snapshot


def persist_context(context: RuntimeContext) -> None:
    """Save the workbook to the configured data file."""
    data_manager.save_workbook(
        context.workbook,
        destination=context.settings.data_file,
    )
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook from disk, dropping unsaved changes and caches.

    Raises:
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(settings=context.settings, workbook=workbook)
