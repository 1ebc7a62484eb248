"""Blob store tests: layout, compression and path safety."""

import gzip
import os
import uuid

import pytest

from snaptrail.blobs import SNAPSHOTS_DIR, BlobStore, shard_key, validate_snapshot_id
from snaptrail.errors import PathViolation, ValidationError


@pytest.fixture
def blobs(tmp_path):
    return BlobStore(tmp_path / "root")


def new_id():
    return str(uuid.uuid4())


class TestLayout:
    def test_put_returns_relative_sharded_ref(self, blobs):
        sid = new_id()
        ref = blobs.put(sid, "hello", "file:///a.txt")
        assert ref == f"{SNAPSHOTS_DIR}/{shard_key('file:///a.txt')}/{sid}.txt"
        assert (blobs.root / ref).read_text(encoding="utf-8") == "hello"

    def test_shard_is_sixteen_hex_chars(self):
        key = shard_key("file:///a.txt")
        assert len(key) == 16
        int(key, 16)

    def test_same_file_shares_shard(self, blobs):
        r1 = blobs.put(new_id(), "one", "f")
        r2 = blobs.put(new_id(), "two", "f")
        assert r1.rsplit("/", 1)[0] == r2.rsplit("/", 1)[0]

    def test_round_trip_unicode(self, blobs):
        ref = blobs.put(new_id(), "naïve — ünïcode\n", "f")
        assert blobs.get(ref) == "naïve — ünïcode\n"

    def test_rejects_non_uuid_snapshot_id(self, blobs):
        with pytest.raises(ValidationError):
            blobs.put("not-a-uuid", "x", "f")

    def test_validate_snapshot_id_requires_v4(self):
        validate_snapshot_id(new_id())
        with pytest.raises(ValidationError):
            validate_snapshot_id(str(uuid.uuid1()))
        with pytest.raises(ValidationError):
            validate_snapshot_id("")


class TestCompression:
    def test_large_content_is_gzipped(self, tmp_path):
        blobs = BlobStore(tmp_path, compression_threshold=16)
        content = "x" * 100
        ref = blobs.put(new_id(), content, "f")
        assert ref.endswith(".txt.gz")
        assert gzip.decompress((blobs.root / ref).read_bytes()).decode() == content
        assert blobs.get(ref, compressed=True) == content

    def test_small_content_stays_plain(self, tmp_path):
        blobs = BlobStore(tmp_path, compression_threshold=16)
        assert blobs.put(new_id(), "short", "f").endswith(".txt")

    def test_compression_disabled(self, tmp_path):
        blobs = BlobStore(tmp_path, enable_compression=False, compression_threshold=1)
        assert blobs.put(new_id(), "x" * 100, "f").endswith(".txt")

    def test_rewrite_drops_stale_sibling(self, tmp_path):
        blobs = BlobStore(tmp_path, compression_threshold=16)
        sid = new_id()
        big = blobs.put(sid, "x" * 100, "f")
        small = blobs.put(sid, "tiny", "f")
        assert small.endswith(".txt")
        assert not (blobs.root / big).exists()
        assert blobs.get(small) == "tiny"


class TestDelete:
    def test_delete_removes_blob_and_empty_shard(self, blobs):
        ref = blobs.put(new_id(), "x", "f")
        shard = (blobs.root / ref).parent
        blobs.delete(ref)
        assert not (blobs.root / ref).exists()
        assert not shard.exists()
        assert blobs.snapshots_dir.exists()

    def test_delete_keeps_shard_with_other_blobs(self, blobs):
        r1 = blobs.put(new_id(), "x", "f")
        r2 = blobs.put(new_id(), "y", "f")
        blobs.delete(r1)
        assert (blobs.root / r2).is_file()

    def test_delete_missing_is_noop(self, blobs):
        blobs.delete(f"{SNAPSHOTS_DIR}/{shard_key('f')}/{new_id()}.txt")

    def test_get_missing_raises(self, blobs):
        with pytest.raises(FileNotFoundError):
            blobs.get(f"{SNAPSHOTS_DIR}/{shard_key('f')}/{new_id()}.txt")


class TestSizes:
    def test_size_of_and_total(self, blobs):
        r1 = blobs.put(new_id(), "a" * 10, "f")
        blobs.put(new_id(), "b" * 20, "g")
        assert blobs.size_of(r1) == 10
        assert blobs.total_size() == 30

    def test_size_of_missing_is_zero(self, blobs):
        assert blobs.size_of(f"{SNAPSHOTS_DIR}/{shard_key('f')}/{new_id()}.txt") == 0


class TestPathSafety:
    @pytest.mark.parametrize(
        "ref",
        [
            "../outside.txt",
            "snapshots/../../etc/passwd",
            "~/secrets.txt",
            "/etc/passwd",
            "C:/Windows/system.ini",
            "",
            "snapshots/a\x00b",
        ],
    )
    def test_dangerous_refs_rejected(self, blobs, ref):
        with pytest.raises(PathViolation):
            blobs.resolve(ref)

    def test_operations_reject_traversal_before_io(self, blobs, tmp_path):
        victim = tmp_path / "victim.txt"
        victim.write_text("keep me")
        with pytest.raises(PathViolation):
            blobs.delete("../victim.txt")
        with pytest.raises(PathViolation):
            blobs.get("../victim.txt")
        assert victim.read_text() == "keep me"

    def test_root_itself_rejected(self, blobs):
        with pytest.raises(PathViolation):
            blobs.resolve(".")

    @pytest.mark.skipif(os.name == "nt", reason="symlinks need privileges on Windows")
    def test_symlink_escaping_root_rejected(self, blobs, tmp_path):
        outside = tmp_path / "outside"
        outside.mkdir()
        (outside / "secret.txt").write_text("secret")
        (blobs.snapshots_dir / "link").symlink_to(outside, target_is_directory=True)
        with pytest.raises(PathViolation):
            blobs.get("snapshots/link/secret.txt")
