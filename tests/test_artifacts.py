import hashlib
import pytest
from app.core.artifacts import ArtifactStore


def test_put_bytes_is_content_addressed(store):
    digest = store.put_bytes(b"bundle")

    assert digest == hashlib.sha256(b"bundle").hexdigest()
    assert store.path(digest) == store.root / digest[:2] / digest
    assert store.read_bytes(digest) == b"bundle"
    assert store.put_bytes(b"bundle") == digest


def test_put_file_matches_put_bytes(store, tmp_path):
    src = tmp_path / "source.tar"
    src.write_bytes(b"x" * 3_000_000)

    assert store.put_file(src) == store.put_bytes(b"x" * 3_000_000)


def test_objects_are_read_only(store):
    digest = store.put_bytes(b"immutable")
    assert store.path(digest).stat().st_mode & 0o777 == 0o444


def test_locations_round_trip(store):
    digest = store.put_bytes(b"abc")
    location = ArtifactStore.location(digest)

    assert location == f"artifact://{digest}"
    assert store.exists(location)
    assert store.read_bytes(location) == b"abc"


def test_missing_object(store):
    assert not store.exists("0" * 64)
    with pytest.raises(FileNotFoundError):
        store.open("0" * 64)


def test_no_leftover_temp_files(store):
    store.put_bytes(b"one")
    store.put_bytes(b"one")
    leftovers = [p for p in store.root.rglob(".incoming-*")]
    assert leftovers == []
