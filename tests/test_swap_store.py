# tests/test_swap_store.py
"""
Unit tests for the JSON swap record store.
"""
import json
from unittest.mock import patch

import pytest

from micropay.oracle.records import SwapRecord, SwapStatus
from micropay.oracle.store import (
    DuplicateSwapError,
    StoreCorruptedError,
    SwapRecordStore,
)


def _record(swap_id, **overrides):
    return SwapRecord(swap_id=swap_id, user_address="0xabc", content_id="1", **overrides)


class TestLoadAll:
    """Test reading the store."""

    def test_missing_file_is_empty(self, store):
        """A store that was never written holds no records."""
        assert not store.path.exists()
        assert store.load_all() == []

    def test_empty_file_is_empty(self, store):
        """A blank file holds no records."""
        store.path.write_text("  \n")
        assert store.load_all() == []

    def test_invalid_json_raises(self, store):
        """Unparseable content is reported, not treated as empty."""
        store.path.write_text("[{not json")
        with pytest.raises(StoreCorruptedError):
            store.load_all()

    def test_non_array_raises(self, store):
        """The top level must be an array."""
        store.path.write_text(json.dumps({"swapId": "s1"}))
        with pytest.raises(StoreCorruptedError):
            store.load_all()

    def test_invalid_record_raises(self, store):
        """Records missing required fields are rejected."""
        store.path.write_text(json.dumps([{"swapId": "s1"}]))
        with pytest.raises(StoreCorruptedError):
            store.load_all()

    def test_reads_legacy_records(self, store):
        """Records written with userStarknetAddress load."""
        store.path.write_text(json.dumps([
            {"swapId": "s1", "userStarknetAddress": "0xabc", "contentId": "1", "status": "PENDING_DEPOSIT"}
        ]))
        records = store.load_all()
        assert records[0].user_address == "0xabc"


class TestSaveAll:
    """Test atomic writes."""

    def test_round_trip_preserves_order(self, store):
        """Records come back in the order they were saved."""
        store.save_all([_record("s1"), _record("s2"), _record("s3")])
        assert [r.swap_id for r in store.load_all()] == ["s1", "s2", "s3"]

    def test_saving_loaded_records_is_idempotent(self, store):
        """Loading and saving unchanged records leaves the file unchanged."""
        store.save_all([_record("s1"), _record("s2", status=SwapStatus.CONFIRMED)])
        before = store.path.read_text()
        store.save_all(store.load_all())
        assert store.path.read_text() == before

    def test_creates_parent_directory(self, tmp_path):
        """Missing directories are created."""
        store = SwapRecordStore(tmp_path / "nested" / "swaps.json")
        store.save_all([_record("s1")])
        assert store.path.exists()

    def test_interrupted_write_keeps_previous_content(self, store):
        """A failed rename leaves the old file and no temp files behind."""
        store.save_all([_record("s1")])
        before = store.path.read_text()

        with patch("micropay.oracle.store.os.replace", side_effect=OSError("disk full")):
            with pytest.raises(OSError):
                store.save_all([_record("s1"), _record("s2")])

        assert store.path.read_text() == before
        assert [p for p in store.path.parent.iterdir() if p.name.endswith(".tmp")] == []


class TestMutations:
    """Test append, upsert and lookup."""

    def test_append_and_get(self, store):
        """Appended records can be fetched by id."""
        store.append(_record("s1"))
        assert store.get("s1").swap_id == "s1"
        assert store.get("missing") is None

    def test_append_duplicate_rejected(self, store):
        """Swap ids are unique."""
        store.append(_record("s1"))
        with pytest.raises(DuplicateSwapError):
            store.append(_record("s1"))
        assert len(store.load_all()) == 1

    def test_upsert_replaces_in_place(self, store):
        """Upsert replaces the matching record and keeps the others."""
        store.save_all([_record("s1"), _record("s2")])
        updated = _record("s1", status=SwapStatus.FAILED, failure_reason="refunded")
        store.upsert(updated)

        records = store.load_all()
        assert [r.swap_id for r in records] == ["s1", "s2"]
        assert records[0].status is SwapStatus.FAILED
        assert records[1].status is SwapStatus.PENDING_DEPOSIT

    def test_upsert_appends_missing(self, store):
        """Upserting an unknown id adds it."""
        store.upsert(_record("s9"))
        assert store.get("s9") is not None

    def test_count_by_status(self, store):
        """Counts cover every status, including empty ones."""
        store.save_all([_record("s1"), _record("s2", status=SwapStatus.CONFIRMED)])
        assert store.count_by_status() == {"PENDING_DEPOSIT": 1, "CONFIRMED": 1, "FAILED": 0}
