"""
Local disk blob store for uploaded files and generated documents.

Handles are plain filenames under UPLOAD_DIR; the public URL for a handle
is "{API_BASE_URL}/api/uploads/{handle}".
"""
import os
import re
import tempfile
from contextlib import contextmanager

from flask import current_app
from sqlalchemy import event
from sqlalchemy.orm import Session

from mfg_tracker.datetime_utils import utcnow
from mfg_tracker.logging_config import get_logger

logger = get_logger(__name__)

_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9._-]+")
MAX_NAME_LENGTH = 100


def sanitize_name(name):
    cleaned = _UNSAFE_CHARS.sub("_", os.path.basename(name or "")).strip("._")
    return (cleaned or "file")[-MAX_NAME_LENGTH:]


class LocalBlobStore:
    def __init__(self, root, base_url):
        self.root = os.path.abspath(root)
        self.base_url = (base_url or "").rstrip("/")
        os.makedirs(self.root, exist_ok=True)

    def path(self, handle):
        safe = os.path.basename(handle)
        if not safe or safe != handle:
            raise ValueError(f"Invalid storage handle: {handle!r}")
        return os.path.join(self.root, safe)

    def url(self, handle):
        return f"{self.base_url}/api/uploads/{handle}"

    def exists(self, handle):
        return os.path.isfile(self.path(handle))

    def read(self, handle):
        with open(self.path(handle), "rb") as fh:
            return fh.read()

    def new_handle(self, original_name):
        """Timestamp-prefixed, sanitized handle that does not exist yet."""
        stamp = int(utcnow().timestamp() * 1000)
        name = sanitize_name(original_name)
        handle = f"{stamp}_{name}"
        while self.exists(handle):
            stamp += 1
            handle = f"{stamp}_{name}"
        return handle

    def save(self, data, original_name):
        handle = self.new_handle(original_name)
        self.save_as(handle, data)
        return handle

    def save_as(self, handle, data):
        """Write bytes under an explicit handle, replacing any previous content."""
        target = self.path(handle)
        fd, tmp_path = tempfile.mkstemp(dir=self.root, prefix=".upload-")
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
            os.replace(tmp_path, target)
        except Exception:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise
        return handle

    def move(self, source, target):
        """Atomically rename one handle over another."""
        os.replace(self.path(source), self.path(target))
        return target

    def delete(self, handle):
        """Remove a blob. Returns False when it was already gone."""
        try:
            os.remove(self.path(handle))
            return True
        except FileNotFoundError:
            return False


def init_blob_store(app):
    store = LocalBlobStore(app.config["UPLOAD_DIR"], app.config.get("API_BASE_URL"))
    app.extensions["blob_store"] = store
    return store


def get_blob_store():
    return current_app.extensions["blob_store"]


def discard_blob(store, handle):
    """Best-effort removal used on failure paths; never raises."""
    try:
        store.delete(handle)
    except OSError as exc:
        logger.error("Failed to clean up staged blob", handle=handle, error=str(exc))


@contextmanager
def staged_blob(store, data, original_name=None, handle=None, session=None):
    """
    Write a blob and yield its handle. If the block raises, the blob is
    removed before the exception propagates. With a session, the blob is
    also removed if that session's transaction ends without committing.
    """
    if handle is None:
        handle = store.save(data, original_name)
    else:
        store.save_as(handle, data)
    try:
        yield handle
    except BaseException:
        discard_blob(store, handle)
        raise
    if session is not None:
        discard_on_rollback(session, store, handle)


# ==============================================================================
# TRANSACTION-BOUND BLOB OPERATIONS
# ==============================================================================
# Removing or overwriting a blob cannot be undone, so those operations wait
# for the surrounding database transaction. Queued work lives in
# session.info and is dropped when the outermost transaction ends.

_ON_COMMIT = "blob_on_commit"
_ON_ROLLBACK = "blob_on_rollback"


def _queue(session, key, action):
    session.info.setdefault(key, []).append(action)


def discard_after_commit(session, store, handle):
    """Remove a blob once the current transaction commits."""
    _queue(session, _ON_COMMIT, lambda: discard_blob(store, handle))


def discard_on_rollback(session, store, handle):
    """Remove a freshly written blob unless the current transaction commits."""
    _queue(session, _ON_ROLLBACK, lambda: discard_blob(store, handle))


def replace_after_commit(session, store, data, handle):
    """
    Replace the bytes behind an existing handle once the current transaction
    commits. The new bytes are written to a scratch handle immediately, so
    a failed write surfaces inside the request; if the transaction does not
    commit, the scratch blob is removed and the original stays untouched.
    """
    scratch = store.save(data, f"pending_{handle}")

    def promote():
        try:
            store.move(scratch, handle)
        except OSError as exc:
            logger.error("Failed to replace blob", handle=handle, error=str(exc))
            discard_blob(store, scratch)

    _queue(session, _ON_COMMIT, promote)
    _queue(session, _ON_ROLLBACK, lambda: discard_blob(store, scratch))
    return scratch


@event.listens_for(Session, "after_commit")
def _run_commit_actions(session):
    if session.in_nested_transaction():
        return
    actions = session.info.pop(_ON_COMMIT, [])
    session.info.pop(_ON_ROLLBACK, None)
    for action in actions:
        action()


@event.listens_for(Session, "after_transaction_end")
def _run_rollback_actions(session, transaction):
    if transaction.parent is not None:
        return
    session.info.pop(_ON_COMMIT, None)
    for action in session.info.pop(_ON_ROLLBACK, []):
        action()
