"""Derived views over an item snapshot and the transaction log.

Every function here is pure: it reads the sequences it is given and returns a
new value. Missing references degrade to fallback labels instead of raising.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence

from . import log
from .constants import DEFAULT_TOP_USED_COUNT, UNKNOWN_ACTOR_NAME, UNKNOWN_ITEM_NAME, ActionType, StockStatus
from .core_logic import LogView
from .data_manager import ItemRow


@dataclass(frozen=True)
class StockHistogram:
    """Number of items per stock status bucket."""

    in_stock: int = 0
    low_stock: int = 0
    out_of_stock: int = 0

    @property
    def total(self) -> int:
        return self.in_stock + self.low_stock + self.out_of_stock

    def as_dict(self) -> Dict[StockStatus, int]:
        return {
            StockStatus.IN_STOCK: self.in_stock,
            StockStatus.LOW_STOCK: self.low_stock,
            StockStatus.OUT_OF_STOCK: self.out_of_stock,
        }


@dataclass(frozen=True)
class UsageTotal:
    """Total units consumed for one item name."""

    item_name: str
    total_used: int


def is_low_stock(item: ItemRow) -> bool:
    """Low stock is inclusive of the threshold: ``quantity <= threshold``."""

    return item.quantity <= item.threshold


def stock_status(item: ItemRow) -> StockStatus:
    """Classify one item.

    An item with nothing left (or a negative legacy quantity) is out of stock;
    one at or under its threshold is low; anything else is in stock.
    """

    if item.quantity <= 0:
        return StockStatus.OUT_OF_STOCK
    if is_low_stock(item):
        return StockStatus.LOW_STOCK
    return StockStatus.IN_STOCK


def stock_status_histogram(items: Iterable[ItemRow]) -> StockHistogram:
    """Count items per stock status.

    Each item lands in exactly one bucket, so ``histogram.total`` equals the
    number of items supplied.
    """

    counts = {status: 0 for status in StockStatus}
    for item in items:
        counts[stock_status(item)] += 1
    histogram = StockHistogram(
        in_stock=counts[StockStatus.IN_STOCK],
        low_stock=counts[StockStatus.LOW_STOCK],
        out_of_stock=counts[StockStatus.OUT_OF_STOCK],
    )
    log.debug("Computed stock histogram: %s", histogram)
    return histogram


def low_stock_flags(items: Iterable[ItemRow]) -> Dict[str, bool]:
    """Map every item id to whether the item is at or under its threshold."""

    return {item.item_id: is_low_stock(item) for item in items}


def item_display_name(entry: LogView) -> str:
    """Name to show for a log row; deleted items read as ``"Unknown"``."""

    return entry.item_name or UNKNOWN_ITEM_NAME


def actor_display_name(entry: LogView) -> str:
    """Name to show for the actor of a log row.

    ``LogView.actor_name`` already falls back to the stored email; when even
    that is missing the actor id is used.
    """

    return entry.actor_name or entry.entry.actor_id or UNKNOWN_ACTOR_NAME


def top_used_items(log_entries: Iterable[LogView], n: int = DEFAULT_TOP_USED_COUNT) -> List[UsageTotal]:
    """Rank item names by total units consumed.

    Only ``Usage`` entries count. Entries are grouped by the resolved item
    name (``"Unknown"`` when the item is gone), their absolute changes summed,
    and the groups sorted by total, largest first. Equal totals keep the order
    in which the names first appeared. At most ``n`` groups are returned.

    Args:
        log_entries (Iterable[LogView]): Joined log rows, typically from
            :func:`core_logic.list_log`.
        n (int): Maximum number of groups; zero or less yields an empty list.

    Returns:
        list[UsageTotal]: Ranking sorted by ``total_used`` descending.
    """

    if n <= 0:
        return []

    totals: Dict[str, int] = {}
    for entry in log_entries:
        if entry.action_type != ActionType.USAGE.value:
            continue
        name = item_display_name(entry)
        totals[name] = totals.get(name, 0) + abs(entry.change_amount)

    ranking = sorted(totals.items(), key=lambda pair: pair[1], reverse=True)
    return [UsageTotal(item_name=name, total_used=total) for name, total in ranking[:n]]


def filter_items(items: Sequence[ItemRow], query: Optional[str]) -> List[ItemRow]:
    """Case-insensitive substring search on item name or category.

    The query is matched as typed, surrounding spaces included. An empty
    query returns every item in its original order.
    """

    needle = (query or "").casefold()
    if not needle:
        return list(items)
    return [
        item
        for item in items
        if needle in item.name.casefold() or needle in item.category.value.casefold()
    ]
