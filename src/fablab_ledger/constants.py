"""Enumerations and defaults shared across the FabLab ledger modules.

The data access layer, the ledger rules, the report functions and the CLI all
import their identifiers from here so that sheet names, categories and action
labels are spelled exactly once.
"""

from __future__ import annotations

from enum import Enum


# Schema version the workbook declared in config.ini must match.
EXPECTED_SCHEMA_VERSION = "1.0.0"

DEFAULT_ITEM_NAME = "Untitled Item"
DEFAULT_QUANTITY = 0
DEFAULT_THRESHOLD = 5
DEFAULT_COLOR_CODE = "#3b82f6"
DEFAULT_TOP_USED_COUNT = 5
UNKNOWN_ITEM_NAME = "Unknown"
UNKNOWN_ACTOR_NAME = "Unknown"


class Category(str, Enum):
    """Closed set of item categories."""

    CONSUMABLE = "Consumable"
    TOOL = "Tool"
    EQUIPMENT = "Equipment"
    MISCELLANEOUS = "Miscellaneous"

    @classmethod
    def parse(cls, value: object) -> "Category":
        """Resolve a category from an enum member or its display value.

        Raises:
            ValueError: If ``value`` does not name a known category.
        """

        if isinstance(value, cls):
            return value
        text = str(value).strip().casefold()
        for member in cls:
            if member.value.casefold() == text:
                return member
        raise ValueError(f"Unknown category: {value!r}")


class ActionType(str, Enum):
    """Labels recorded on transaction log entries."""

    INITIAL_STOCK = "Initial Stock"
    RESTOCK = "Restock"
    USAGE = "Usage"

    @classmethod
    def for_delta(cls, delta: int) -> "ActionType":
        """Pick the label for a non-zero quantity change."""

        if delta == 0:
            raise ValueError("A zero quantity change has no action type")
        return cls.RESTOCK if delta > 0 else cls.USAGE


class StockStatus(str, Enum):
    """Buckets used by the stock status histogram."""

    IN_STOCK = "In Stock"
    LOW_STOCK = "Low Stock"
    OUT_OF_STOCK = "Out of Stock"


class SheetName(str, Enum):
    """Worksheet names inside the master workbook."""

    ITEMS = "Items"
    TRANSACTION_LOG = "TransactionLog"
    PROFILES = "Profiles"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "DEFAULT_ITEM_NAME",
    "DEFAULT_QUANTITY",
    "DEFAULT_THRESHOLD",
    "DEFAULT_COLOR_CODE",
    "DEFAULT_TOP_USED_COUNT",
    "UNKNOWN_ITEM_NAME",
    "UNKNOWN_ACTOR_NAME",
    "Category",
    "ActionType",
    "StockStatus",
    "SheetName",
]
