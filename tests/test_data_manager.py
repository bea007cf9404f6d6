"""Unit tests documenting the expected behavior of the data access layer."""

from __future__ import annotations

import configparser
from datetime import UTC, datetime
from pathlib import Path

import openpyxl
from openpyxl.workbook import Workbook as OpenpyxlWorkbook
import pytest

from fablab_ledger import constants, data_manager  # noqa: E402


def _item(item_id: str = "I1", **overrides) -> data_manager.ItemRow:
    values = dict(
        item_id=item_id,
        name="PLA Filament",
        category=constants.Category.CONSUMABLE,
        quantity=10,
        threshold=5,
    )
    values.update(overrides)
    return data_manager.ItemRow(**values)


def _entry(entry_id: str = "L1", **overrides) -> data_manager.LogEntryRow:
    values = dict(
        entry_id=entry_id,
        timestamp_iso="2025-03-01T10:00:00+00:00",
        item_id="I1",
        change_amount=10,
        action_type=constants.ActionType.INITIAL_STOCK.value,
        actor_id="A-DEFAULT",
        actor_email="lab@example.org",
    )
    values.update(overrides)
    return data_manager.LogEntryRow(**values)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def test_find_config_file_respects_explicit_path(config_file: Path):
    """Supplying an explicit path should be treated as the winning answer."""

    result = data_manager.find_config_file(config_file)
    assert result == config_file


def test_find_config_file_discovers_in_parent_directory(tmp_path, monkeypatch):
    """Auto-discovery should walk up from the working directory."""

    config_file = tmp_path / "config.ini"
    config_file.write_text("[System]\nDataFile=master_workbook.xlsx")
    nested = tmp_path / "nested" / "deeper"
    nested.mkdir(parents=True)
    monkeypatch.chdir(nested)

    result = data_manager.find_config_file()
    assert result == config_file


def test_find_config_file_raises_when_missing(tmp_path, monkeypatch):
    """Absent configuration should surface a clear FileNotFoundError."""

    monkeypatch.chdir(tmp_path)
    if any((parent / "config.ini").exists() for parent in tmp_path.parents):
        pytest.skip("A config.ini exists above the temporary directory")
    with pytest.raises(FileNotFoundError):
        data_manager.find_config_file()


def test_read_config_loads_sections(config_file: Path):
    """read_config should return a populated ConfigParser."""

    parser = data_manager.read_config(config_file)
    assert parser.get("System", "LabName") == "Test FabLab"
    assert parser.get("Defaults", "DefaultActorID") == "A-DEFAULT"


def test_read_config_missing_file_raises(tmp_path):
    """Missing files should propagate a FileNotFoundError."""

    with pytest.raises(FileNotFoundError):
        data_manager.read_config(tmp_path / "not_there.ini")


def test_parse_settings_resolves_relative_paths(config_factory):
    """Relative DataFile entries should be anchored to the config location."""

    parser = configparser.ConfigParser()
    bundle = config_factory(make_relative=True)
    parser.read(bundle.config_path)
    settings = data_manager.parse_settings(parser, base_path=bundle.config_path.parent)
    assert settings.data_file == (bundle.config_path.parent / bundle.workbook_path.name).resolve()
    assert settings.default_actor_id == "A-DEFAULT"
    assert settings.default_actor_email == "lab@example.org"
    assert settings.lab_name == "Test FabLab"


def test_parse_settings_applies_optional_defaults(config_file: Path):
    """Optional entries fall back to their documented defaults."""

    parser = data_manager.read_config(config_file)
    settings = data_manager.parse_settings(parser, base_path=config_file.parent)
    assert settings.autosave is False
    assert settings.default_threshold == constants.DEFAULT_THRESHOLD
    assert settings.top_used_count == constants.DEFAULT_TOP_USED_COUNT


def test_parse_settings_reads_optional_entries(config_factory):
    """AutoSave, LowStockThreshold and TopUsedCount override the defaults."""

    bundle = config_factory(autosave=True, extra="LowStockThreshold = 2\nTopUsedCount = 3\n")
    parser = data_manager.read_config(bundle.config_path)
    settings = data_manager.parse_settings(parser, base_path=bundle.directory)
    assert settings.autosave is True
    assert settings.default_threshold == 2
    assert settings.top_used_count == 3


def test_parse_settings_rejects_negative_threshold(config_factory):
    bundle = config_factory(extra="LowStockThreshold = -1\n")
    parser = data_manager.read_config(bundle.config_path)
    with pytest.raises(ValueError):
        data_manager.parse_settings(parser, base_path=bundle.directory)


def test_parse_settings_requires_expected_sections(tmp_path):
    """Missing keys should result in a descriptive KeyError."""

    parser = configparser.ConfigParser()
    parser.read_string("[Other]\nvalue=1")
    with pytest.raises(KeyError):
        data_manager.parse_settings(parser, base_path=tmp_path)


# ---------------------------------------------------------------------------
# Workbook lifecycle
# ---------------------------------------------------------------------------


def test_open_workbook_returns_openpyxl_instance(master_workbook_path):
    """open_workbook should hand back a loaded Workbook object."""

    workbook = data_manager.open_workbook(master_workbook_path)
    assert isinstance(workbook, OpenpyxlWorkbook)


def test_open_workbook_missing_file_raises(tmp_path):
    """Missing workbook files should yield FileNotFoundError."""

    with pytest.raises(FileNotFoundError):
        data_manager.open_workbook(tmp_path / "missing.xlsx")


def test_save_workbook_with_destination_creates_copy(master_workbook_path, tmp_path):
    """Providing a destination should create a new file independent of the source."""

    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.append_item(workbook, _item("I-copy"))
    copy_path = tmp_path / "copies" / "copy.xlsx"
    data_manager.save_workbook(workbook, destination=copy_path)

    copy = openpyxl.load_workbook(copy_path)
    rows = list(copy[constants.SheetName.ITEMS.value].iter_rows(min_row=2, values_only=True))
    assert rows[0][0] == "I-copy"
    original = data_manager.open_workbook(master_workbook_path)
    assert list(data_manager.iter_items(original)) == []


def test_refresh_workbook_discards_unsaved_changes(master_workbook_path):
    """refresh_workbook should return a freshly loaded workbook from disk."""

    original = data_manager.open_workbook(master_workbook_path)
    data_manager.append_item(original, _item("I-unsaved"))

    refreshed = data_manager.refresh_workbook(master_workbook_path)
    assert refreshed is not original
    assert list(data_manager.iter_items(refreshed)) == []


# ---------------------------------------------------------------------------
# Sheet operations
# ---------------------------------------------------------------------------


def test_append_and_iter_items_round_trip_through_disk(master_workbook_path):
    """Items written to the sheet should read back as equal ItemRow records."""

    record = _item(
        "I300",
        location="Shelf B",
        description="1.75mm white",
        color_code="#ffffff",
        tags=("3d", "printing"),
        image_ref="pla.png",
        version=3,
    )
    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.append_item(workbook, record)
    data_manager.save_workbook(workbook, master_workbook_path)

    refreshed = data_manager.open_workbook(master_workbook_path)
    assert list(data_manager.iter_items(refreshed)) == [record]


def test_iter_items_skips_blank_rows(master_workbook_path):
    workbook = data_manager.open_workbook(master_workbook_path)
    sheet = workbook[constants.SheetName.ITEMS.value]
    sheet.append([None] * len(data_manager.ITEM_COLUMNS))
    data_manager.append_item(workbook, _item("I-after-blank"))

    assert [row.item_id for row in data_manager.iter_items(workbook)] == ["I-after-blank"]


def test_iter_items_coerces_hand_typed_cells(master_workbook_path):
    """Cells typed by hand in Excel should still produce well-typed rows."""

    workbook = data_manager.open_workbook(master_workbook_path)
    sheet = workbook[constants.SheetName.ITEMS.value]
    sheet.append(["I-hand", "Glue", "gadgets", "7", None, None, None, None, "a, b,,a", "  ", None])

    (row,) = data_manager.iter_items(workbook)
    assert row.category is constants.Category.MISCELLANEOUS
    assert row.quantity == 7
    assert row.threshold == constants.DEFAULT_THRESHOLD
    assert row.color_code == constants.DEFAULT_COLOR_CODE
    assert row.tags == ("a", "b")
    assert row.image_ref is None
    assert row.version == 1


@pytest.mark.parametrize(
    "quantity_cell, threshold_cell, version_cell, expected",
    [
        ("4.0", "2", 3.0, (4, 2, 3)),
        ("abc", "n/a", "x", (0, constants.DEFAULT_THRESHOLD, 1)),
        (2.5, "  ", "", (0, constants.DEFAULT_THRESHOLD, 1)),
    ],
)
def test_iter_items_defaults_malformed_numeric_cells(
    master_workbook_path, caplog, quantity_cell, threshold_cell, version_cell, expected
):
    """Unreadable numbers in hand-edited rows fall back to defaults instead of failing the read."""

    workbook = data_manager.open_workbook(master_workbook_path)
    sheet = workbook[constants.SheetName.ITEMS.value]
    sheet.append(["I-bad", "Glue", "Tool", quantity_cell, threshold_cell, None, None, None, None, None, version_cell])
    caplog.set_level("WARNING")

    (row,) = data_manager.iter_items(workbook)

    assert (row.quantity, row.threshold, row.version) == expected
    if expected[0] == 0:
        assert any("Quantity of item 'I-bad'" in record.getMessage() for record in caplog.records)


def test_iter_log_entries_defaults_malformed_change_amount(master_workbook_path, caplog):
    workbook = data_manager.open_workbook(master_workbook_path)
    sheet = workbook[constants.SheetName.TRANSACTION_LOG.value]
    sheet.append(["L-bad", "2025-03-01T10:00:00+00:00", "I1", "lots", "Usage", "A-DEFAULT", None])
    sheet.append(["L-ok", "2025-03-01T10:00:00+00:00", "I1", "-3.0", "Usage", "A-DEFAULT", None])
    caplog.set_level("WARNING")

    entries = list(data_manager.iter_log_entries(workbook))

    assert [entry.change_amount for entry in entries] == [0, -3]
    assert any("L-bad" in record.getMessage() for record in caplog.records)


def test_append_log_entry_keeps_sheet_order(master_workbook_path):
    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.append_log_entry(workbook, _entry("L1"))
    data_manager.append_log_entry(workbook, _entry("L2", change_amount=-3, action_type="Usage"))

    entries = list(data_manager.iter_log_entries(workbook))
    assert [entry.entry_id for entry in entries] == ["L1", "L2"]
    assert entries[1].change_amount == -3
    assert entries[1].actor_email == "lab@example.org"


def test_iter_profiles_reads_seeded_default_actor(master_workbook_path):
    """The setup script seeds a profile for the configured default actor."""

    workbook = data_manager.open_workbook(master_workbook_path)
    profiles = list(data_manager.iter_profiles(workbook))
    assert [profile.actor_id for profile in profiles] == ["A-DEFAULT"]


def test_iter_profiles_tolerates_missing_sheet(master_workbook_path):
    workbook = data_manager.open_workbook(master_workbook_path)
    workbook.remove(workbook[constants.SheetName.PROFILES.value])
    assert list(data_manager.iter_profiles(workbook)) == []


def test_append_profile_creates_missing_sheet(master_workbook_path):
    workbook = data_manager.open_workbook(master_workbook_path)
    workbook.remove(workbook[constants.SheetName.PROFILES.value])

    profile = data_manager.ProfileRow("A-2", "Ada", "Lovelace", user_type="Member")
    data_manager.append_profile(workbook, profile)

    assert list(data_manager.iter_profiles(workbook)) == [profile]


def test_update_item_writes_only_named_columns(master_workbook_path):
    """update_item should leave every column it was not given untouched."""

    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.append_item(workbook, _item("I400", location="Bin 1"))

    data_manager.update_item(workbook, "I400", field_values={"Quantity": 4, "Version": 2})

    (row,) = data_manager.iter_items(workbook)
    assert row.quantity == 4
    assert row.version == 2
    assert row.location == "Bin 1"
    assert row.name == "PLA Filament"


def test_update_item_missing_row_raises(master_workbook_path):
    workbook = data_manager.open_workbook(master_workbook_path)
    with pytest.raises(KeyError):
        data_manager.update_item(workbook, "missing", field_values={"Quantity": 1})


def test_update_item_unknown_column_raises(master_workbook_path):
    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.append_item(workbook, _item("I401"))
    with pytest.raises(KeyError):
        data_manager.update_item(workbook, "I401", field_values={"Price": 1})


def test_delete_item_removes_only_target_row(master_workbook_path):
    workbook = data_manager.open_workbook(master_workbook_path)
    for item_id in ("I1", "I2", "I3"):
        data_manager.append_item(workbook, _item(item_id))

    data_manager.delete_item(workbook, "I2")

    assert [row.item_id for row in data_manager.iter_items(workbook)] == ["I1", "I3"]
    with pytest.raises(KeyError):
        data_manager.delete_item(workbook, "I2")


def test_locate_row_returns_excel_index(master_workbook_path):
    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.append_item(workbook, _item("I1"))
    data_manager.append_item(workbook, _item("I2"))

    assert data_manager.locate_row(workbook, constants.SheetName.ITEMS.value, "ItemID", "I2") == 3
    assert data_manager.locate_row(workbook, constants.SheetName.ITEMS.value, "ItemID", "nope") is None
    with pytest.raises(KeyError):
        data_manager.locate_row(workbook, constants.SheetName.ITEMS.value, "Missing", "I1")


# ---------------------------------------------------------------------------
# Value helpers
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "raw, expected",
    [
        (None, ()),
        ("", ()),
        (" red , blue ,, red ", ("red", "blue")),
        (["pla", " ", "abs"], ("pla", "abs")),
    ],
)
def test_split_tags(raw, expected):
    assert data_manager.split_tags(raw) == expected


def test_join_tags_uses_empty_cell_for_no_tags():
    assert data_manager.join_tags(()) is None
    assert data_manager.join_tags(("a", "b")) == "a, b"


def test_parse_timestamp_handles_naive_and_invalid_values():
    """Naive values read as UTC; unreadable ones sort before everything else."""

    assert data_manager.parse_timestamp("2025-03-01T10:00:00") == datetime(2025, 3, 1, 10, tzinfo=UTC)
    assert data_manager.parse_timestamp("garbage") < data_manager.parse_timestamp("2000-01-01T00:00:00")


def test_item_field_values_serializes_attributes():
    values = data_manager.item_field_values(
        {
            "category": constants.Category.TOOL,
            "tags": ("a", "b"),
            "image_ref": "",
            "quantity": 3,
        }
    )
    assert values == {"Category": "Tool", "Tags": "a, b", "ImageRef": None, "Quantity": 3}


def test_item_field_values_rejects_unknown_attribute():
    with pytest.raises(KeyError):
        data_manager.item_field_values({"item_id": "I9"})
