from __future__ import annotations

from datetime import datetime, timezone
import random

from s3rag.modules.remote import RemoteDocument
from s3rag.modules.sync import SyncRecord, detect_changes

_TS = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _remote(key: str, etag: str) -> RemoteDocument:
    return RemoteDocument(key=key, etag=etag, last_modified=_TS, size=10)


def _record(key: str, etag: str) -> SyncRecord:
    return SyncRecord(key=key, etag=etag, last_modified=_TS, chunk_count=1)


def test_classifies_each_key() -> None:
    known = {
        "same.md": _record("same.md", "1"),
        "changed.md": _record("changed.md", "1"),
        "gone.md": _record("gone.md", "1"),
    }
    remote = [
        _remote("changed.md", "2"),
        _remote("fresh.md", "1"),
        _remote("same.md", "1"),
    ]

    changes = detect_changes(remote, known)

    assert [doc.key for doc in changes.new] == ["fresh.md"]
    assert [doc.key for doc in changes.modified] == ["changed.md"]
    assert changes.deleted == ("gone.md",)
    assert [doc.key for doc in changes.unchanged] == ["same.md"]
    assert changes.has_changes
    assert changes.counts() == {"new": 1, "modified": 1, "deleted": 1, "unchanged": 1}


def test_timestamps_alone_do_not_signal_change() -> None:
    later = RemoteDocument(
        key="a.md",
        etag="1",
        last_modified=datetime(2030, 1, 1, tzinfo=timezone.utc),
        size=999,
    )

    changes = detect_changes([later], {"a.md": _record("a.md", "1")})

    assert not changes.has_changes
    assert [doc.key for doc in changes.unchanged] == ["a.md"]


def test_empty_inputs() -> None:
    assert not detect_changes([], {}).has_changes
    assert detect_changes([], {"a.md": _record("a.md", "1")}).deleted == ("a.md",)


def test_duplicate_remote_keys_keep_first_occurrence() -> None:
    changes = detect_changes([_remote("a.md", "1"), _remote("a.md", "2")], {})

    assert [(doc.key, doc.etag) for doc in changes.new] == [("a.md", "1")]


def test_partition_holds_for_random_sets() -> None:
    rng = random.Random(42)
    keys = [f"doc-{i}.md" for i in range(30)]
    for _ in range(25):
        known = {
            key: _record(key, str(rng.randint(0, 2)))
            for key in rng.sample(keys, rng.randint(0, len(keys)))
        }
        remote = [
            _remote(key, str(rng.randint(0, 2)))
            for key in rng.sample(keys, rng.randint(0, len(keys)))
        ]

        changes = detect_changes(remote, known)

        remote_keys = {doc.key for doc in remote}
        new = {doc.key for doc in changes.new}
        modified = {doc.key for doc in changes.modified}
        unchanged = {doc.key for doc in changes.unchanged}
        deleted = set(changes.deleted)
        assert new | modified | unchanged == remote_keys
        assert len(new) + len(modified) + len(unchanged) == len(remote_keys)
        assert modified | unchanged | deleted == set(known)
        assert len(modified) + len(unchanged) + len(deleted) == len(known)
        assert not new & set(known)
