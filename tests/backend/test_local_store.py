"""
Tests for the local directory provider and the shared upload loop.
"""

import io
import os
import sys
import threading
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from drivepool.backends.local import LocalAuth, LocalDirectoryStore
from drivepool.exceptions import (
    RemoteAuthError,
    RemoteRejectedError,
    RemoteUnavailableError,
    SessionExpiredError,
    UploadCancelledError,
)


def payload(size):
    return bytes(i % 251 for i in range(size))


class TestLocalDirectoryStore:
    """Tests for LocalDirectoryStore."""

    @pytest.fixture
    def store(self, tmp_path):
        """Create a 10 KB store with small chunks."""
        return LocalDirectoryStore(
            "acct-1",
            tmp_path / "disk",
            capacity_bytes=10_000,
            page_size=2,
            resumable_threshold=1000,
            chunk_size=400,
            retry_delay=0,
        )

    def test_layout_and_permissions(self, store, tmp_path):
        """Test that the directory layout is created with 0o700."""
        for name in ("disk", "disk/objects", "disk/sessions"):
            assert os.stat(tmp_path / name).st_mode & 0o777 == 0o700

    def test_empty_quota(self, store):
        """Test the quota of a fresh store."""
        quota = store.get_quota()

        assert quota.bytes_total == 10_000
        assert quota.bytes_used == 0
        assert quota.free_bytes == 10_000

    def test_simple_upload_and_download(self, store):
        """Test a small upload going up in one request."""
        progress = []
        remote_id = store.upload("a.txt", io.BytesIO(b"hello"), 5, "text/plain", on_progress=progress.append)

        assert b"".join(store.download(remote_id)) == b"hello"
        assert progress == [5]
        assert store.get_quota().bytes_used == 5

    def test_object_permissions(self, store, tmp_path):
        """Test that stored objects are 0o600."""
        remote_id = store.upload("a.txt", io.BytesIO(b"hello"), 5)

        assert os.stat(tmp_path / "disk" / "objects" / remote_id).st_mode & 0o777 == 0o600

    def test_resumable_upload(self, store):
        """Test that a large file goes up in chunks with progress."""
        data = payload(1500)
        sessions = []
        progress = []

        remote_id = store.upload(
            "big.bin", io.BytesIO(data), len(data),
            on_progress=progress.append, on_session=sessions.append,
        )

        assert b"".join(store.download(remote_id)) == data
        assert len(sessions) == 1
        assert progress == [400, 800, 1200, 1500]

    def test_cancel_and_resume(self, store):
        """Test that a cancelled upload resumes from the acknowledged offset."""
        data = payload(1500)
        cancel = threading.Event()
        sessions = []

        def cancel_after_first_chunk(offset):
            if offset >= 400:
                cancel.set()

        with pytest.raises(UploadCancelledError) as exc_info:
            store.upload(
                "big.bin", io.BytesIO(data), len(data),
                on_progress=cancel_after_first_chunk,
                on_session=sessions.append,
                cancel_event=cancel,
            )
        assert exc_info.value.offset == 400

        progress = []
        remote_id = store.upload(
            "big.bin", io.BytesIO(data), len(data),
            on_progress=progress.append, session_token=sessions[0],
        )

        assert progress[0] == 400
        assert b"".join(store.download(remote_id)) == data

    def test_cancel_before_simple_upload(self, store):
        """Test that a set cancel event stops a small upload before it starts."""
        cancel = threading.Event()
        cancel.set()

        with pytest.raises(UploadCancelledError):
            store.upload("a.txt", io.BytesIO(b"x"), 1, cancel_event=cancel)
        assert list(store.list_all()) == []

    def test_unknown_session(self, store):
        """Test that resuming an unknown session raises SessionExpiredError."""
        with pytest.raises(SessionExpiredError):
            store.upload("big.bin", io.BytesIO(payload(1500)), 1500, session_token="0" * 32)

    def test_malformed_session_token(self, store):
        """Test that a token that is not a session id is rejected."""
        with pytest.raises(SessionExpiredError):
            store.upload("big.bin", io.BytesIO(payload(1500)), 1500, session_token="../../etc")

    def test_transient_chunk_failure_requeries(self, store):
        """Test that a failed chunk is retried after re-querying the session."""
        original = store._send_chunk
        calls = {"n": 0}

        def flaky(token, offset, data, size):
            calls["n"] += 1
            if calls["n"] == 2:
                raise RemoteUnavailableError("connection reset")
            return original(token, offset, data, size)

        store._send_chunk = flaky
        data = payload(1500)
        remote_id = store.upload("big.bin", io.BytesIO(data), len(data))

        assert b"".join(store.download(remote_id)) == data

    def test_chunk_retries_exhausted(self, store):
        """Test that persistent chunk failures propagate."""
        def broken(token, offset, data, size):
            raise RemoteUnavailableError("down")

        store._send_chunk = broken
        with pytest.raises(RemoteUnavailableError):
            store.upload("big.bin", io.BytesIO(payload(1500)), 1500)

    def test_capacity_enforced(self, store):
        """Test that uploads beyond capacity are rejected."""
        store.upload("a.bin", io.BytesIO(payload(900)), 900)
        store.capacity_bytes = 1000

        with pytest.raises(RemoteRejectedError) as exc_info:
            store.upload("b.bin", io.BytesIO(payload(200)), 200)
        assert exc_info.value.status_code == 403

    def test_rejected_commit_discards_session(self, store, tmp_path):
        """Test that a session refused at commit leaves nothing behind."""
        data = payload(1200)

        def shrink_capacity(offset):
            if offset >= 400:
                store.capacity_bytes = 1000

        with pytest.raises(RemoteRejectedError):
            store.upload("big.bin", io.BytesIO(data), len(data), on_progress=shrink_capacity)

        assert list((tmp_path / "disk" / "sessions").iterdir()) == []
        assert list((tmp_path / "disk" / "objects").iterdir()) == []
        assert store.get_quota().bytes_used == 0

    def test_open_sessions_count_against_capacity(self, store):
        """Test that bytes held by a paused session are not handed out twice."""
        store.capacity_bytes = 1500
        data = payload(1200)
        cancel = threading.Event()
        sessions = []

        def cancel_after_two_chunks(offset):
            if offset >= 800:
                cancel.set()

        with pytest.raises(UploadCancelledError):
            store.upload(
                "big.bin", io.BytesIO(data), len(data),
                on_progress=cancel_after_two_chunks,
                on_session=sessions.append,
                cancel_event=cancel,
            )

        with pytest.raises(RemoteRejectedError):
            store.upload("other.bin", io.BytesIO(payload(800)), 800)

        remote_id = store.upload("big.bin", io.BytesIO(data), len(data), session_token=sessions[0])
        assert b"".join(store.download(remote_id)) == data
        assert store.get_quota().bytes_used == 1200

    def test_unlimited_capacity(self, tmp_path):
        """Test that a store without capacity reports no limit."""
        store = LocalDirectoryStore("acct-1", tmp_path / "disk")

        assert store.get_quota().bytes_total is None

    def test_list_all_paginates(self, store):
        """Test that listing walks every page and filters by name."""
        for name in ("alpha.txt", "beta.txt", "gamma.txt", "ALPHA-2.txt"):
            store.upload(name, io.BytesIO(b"x"), 1)

        names = sorted(r.name for r in store.list_all())
        assert names == ["ALPHA-2.txt", "alpha.txt", "beta.txt", "gamma.txt"]
        assert sorted(r.name for r in store.list_all("alpha")) == ["ALPHA-2.txt", "alpha.txt"]
        assert all(r.account_id == "acct-1" for r in store.list_all())

    def test_list_all_restarts(self, store):
        """Test that listing again starts from the first page."""
        for name in ("a", "b", "c"):
            store.upload(name, io.BytesIO(b"x"), 1)

        assert len(list(store.list_all())) == len(list(store.list_all())) == 3

    def test_download_unknown(self, store):
        """Test that downloading an unknown id raises a 404 rejection."""
        with pytest.raises(RemoteRejectedError) as exc_info:
            store.download("abcdef")
        assert exc_info.value.status_code == 404

    def test_download_rejects_path_ids(self, store):
        """Test that remote ids cannot escape the objects directory."""
        with pytest.raises(RemoteRejectedError):
            store.download("../index.json")

    def test_delete(self, store):
        """Test that delete removes the object and frees space."""
        remote_id = store.upload("a.txt", io.BytesIO(b"hello"), 5)
        store.delete(remote_id)

        assert store.get_quota().bytes_used == 0
        with pytest.raises(RemoteRejectedError):
            store.delete(remote_id)


class TestLocalAuth:
    """Tests for LocalAuth."""

    @pytest.fixture
    def auth(self):
        return LocalAuth()

    def test_exchange_and_identity(self, auth):
        """Test that the label becomes a stable identity."""
        tokens = auth.exchange_code_for_tokens("usb-disk")
        identity = auth.get_identity(tokens.access_token)

        assert identity.email == "usb-disk@local"
        assert identity.name == "usb-disk"
        assert identity.id.startswith("local-")
        assert auth.get_identity(auth.exchange_code_for_tokens("usb-disk").access_token) == identity

    def test_refresh_issues_new_token(self, auth):
        """Test that refresh returns a different, unexpired token."""
        tokens = auth.exchange_code_for_tokens("usb-disk")
        access = auth.refresh(tokens.refresh_token)

        assert access.token != tokens.access_token
        assert not access.is_expired()

    @pytest.mark.parametrize("label", ["", "-leading", "has space", "x" * 65])
    def test_invalid_label(self, auth, label):
        """Test that bad labels are rejected."""
        with pytest.raises(RemoteAuthError):
            auth.exchange_code_for_tokens(label)

    def test_invalid_token(self, auth):
        """Test that a foreign token is rejected."""
        with pytest.raises(RemoteAuthError):
            auth.refresh("not-a-local-token")
