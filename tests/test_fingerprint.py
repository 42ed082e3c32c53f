"""Tests for content fingerprinting."""

import hashlib

from docforge.services.fingerprint import fingerprint_files, hash_content, hash_parts, hash_set
from docforge.services.records import FileRecord, SourceFile
from tests.conftest import T0


def _record(path: str, content: str) -> FileRecord:
    return FileRecord(path=path, content_hash=hash_content(content), size=len(content), last_seen_at=T0)


class TestHashContent:

    def test_matches_sha256_of_bytes(self):
        assert hash_content(b"hello") == hashlib.sha256(b"hello").hexdigest()

    def test_str_is_utf8_encoded(self):
        assert hash_content("héllo") == hash_content("héllo".encode("utf-8"))

    def test_deterministic(self):
        assert hash_content("same") == hash_content("same")

    def test_single_byte_change_changes_hash(self):
        assert hash_content("value = 1\n") != hash_content("value = 2\n")

    def test_empty_content(self):
        assert hash_content("") == hashlib.sha256(b"").hexdigest()


class TestHashSet:

    def test_order_independent(self):
        a, b, c = _record("a.py", "1"), _record("b.py", "2"), _record("c.py", "3")
        assert hash_set([a, b, c]) == hash_set([c, a, b])

    def test_path_is_part_of_identity(self):
        assert hash_set([_record("a.py", "1")]) != hash_set([_record("b.py", "1")])

    def test_content_change_changes_set_hash(self):
        before = hash_set([_record("a.py", "1"), _record("b.py", "2")])
        after = hash_set([_record("a.py", "1"), _record("b.py", "changed")])
        assert before != after

    def test_empty_set_is_stable(self):
        assert hash_set([]) == hash_set([])


class TestHashParts:

    def test_order_matters(self):
        assert hash_parts("a", "b") != hash_parts("b", "a")

    def test_length_prefix_prevents_concatenation_collisions(self):
        assert hash_parts("ab", "c") != hash_parts("a", "bc")


class TestFingerprintFiles:

    def test_preserves_input_order_and_sizes(self):
        files = [SourceFile("z.py", "zz"), SourceFile("a.py", b"\x00\x01\x02")]
        records = fingerprint_files(files, T0)
        assert [r.path for r in records] == ["z.py", "a.py"]
        assert [r.size for r in records] == [2, 3]
        assert records[1].content_hash == hashlib.sha256(b"\x00\x01\x02").hexdigest()
        assert all(r.last_seen_at == T0 for r in records)

    def test_size_counts_utf8_bytes(self):
        (record,) = fingerprint_files([SourceFile("u.md", "é")], T0)
        assert record.size == 2
