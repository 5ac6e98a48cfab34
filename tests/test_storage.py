"""
Tests for the local blob store.
"""
import pytest

from mfg_tracker.models import db
from mfg_tracker.storage import (
    LocalBlobStore,
    discard_after_commit,
    replace_after_commit,
    sanitize_name,
    staged_blob,
)


class TestSanitizeName:

    def test_replaces_unsafe_characters(self):
        assert sanitize_name("board spec (rev A).pdf") == "board_spec_rev_A_.pdf"

    def test_strips_directories(self):
        assert sanitize_name("../../etc/passwd") == "passwd"

    def test_empty_falls_back(self):
        assert sanitize_name("") == "file"


class TestLocalBlobStore:

    def test_save_read_delete(self, tmp_path):
        store = LocalBlobStore(str(tmp_path), "http://files")
        handle = store.save(b"abc", "a.pdf")
        assert handle.endswith("_a.pdf")
        assert store.read(handle) == b"abc"
        assert store.url(handle) == f"http://files/api/uploads/{handle}"
        assert store.delete(handle) is True
        assert store.delete(handle) is False

    def test_handles_do_not_collide(self, tmp_path):
        store = LocalBlobStore(str(tmp_path), "")
        first = store.save(b"1", "same.pdf")
        second = store.save(b"2", "same.pdf")
        assert first != second

    def test_rejects_path_handles(self, tmp_path):
        store = LocalBlobStore(str(tmp_path), "")
        with pytest.raises(ValueError):
            store.path("../escape.pdf")

    def test_staged_blob_removed_on_error(self, tmp_path):
        store = LocalBlobStore(str(tmp_path), "")
        with pytest.raises(RuntimeError):
            with staged_blob(store, b"data", "x.pdf") as handle:
                assert store.exists(handle)
                raise RuntimeError("validation failed")
        assert not store.exists(handle)

    def test_staged_blob_kept_on_success(self, tmp_path):
        store = LocalBlobStore(str(tmp_path), "")
        with staged_blob(store, b"data", handle="fixed.pdf") as handle:
            pass
        assert handle == "fixed.pdf"
        assert store.read("fixed.pdf") == b"data"

    def test_move_replaces_target(self, tmp_path):
        store = LocalBlobStore(str(tmp_path), "")
        store.save_as("card.pdf", b"old")
        store.save_as("scratch.pdf", b"new")
        store.move("scratch.pdf", "card.pdf")
        assert store.read("card.pdf") == b"new"
        assert not store.exists("scratch.pdf")


# ==============================================================================
# TRANSACTION-BOUND OPERATIONS
# ==============================================================================

class TestTransactionBoundOperations:

    def test_discard_waits_for_commit(self, app, tmp_path):
        store = LocalBlobStore(str(tmp_path), "")
        handle = store.save(b"data", "a.pdf")
        discard_after_commit(db.session, store, handle)
        assert store.exists(handle)

        db.session.commit()
        assert not store.exists(handle)

    def test_savepoint_commit_does_not_run_actions(self, app, tmp_path):
        store = LocalBlobStore(str(tmp_path), "")
        handle = store.save(b"data", "a.pdf")
        discard_after_commit(db.session, store, handle)

        with db.session.begin_nested():
            pass
        assert store.exists(handle)

        db.session.commit()
        assert not store.exists(handle)

    def test_replace_promoted_on_commit(self, app, tmp_path):
        store = LocalBlobStore(str(tmp_path), "")
        store.save_as("card.pdf", b"original")
        scratch = replace_after_commit(db.session, store, b"edited", "card.pdf")
        assert store.read("card.pdf") == b"original"

        db.session.commit()
        assert store.read("card.pdf") == b"edited"
        assert not store.exists(scratch)

    def test_replace_abandoned_on_rollback(self, app, tmp_path):
        store = LocalBlobStore(str(tmp_path), "")
        store.save_as("card.pdf", b"original")
        with db.session.begin_nested():
            scratch = replace_after_commit(db.session, store, b"edited", "card.pdf")

        db.session.rollback()
        assert store.read("card.pdf") == b"original"
        assert not store.exists(scratch)

        db.session.commit()
        assert store.read("card.pdf") == b"original"
