"""
Tests for codexmem.store — JSONL log, latest resolution, rewrites.
"""

import glob
import json
import os

import pytest

from codexmem.errors import ValidationError
from codexmem.store import MemoryStore, parse_text, select_latest
from codexmem.types import MemoryItem, MemoryPatch


@pytest.fixture
def log_path(tmp_path):
    return str(tmp_path / "mem" / "memory.jsonl")


@pytest.fixture
def store(log_path):
    return MemoryStore(log_path)


def _line(item_id, updated, content="c", **extra):
    rec = {
        "id": item_id,
        "createdAt": "2024-01-01T00:00:00Z",
        "updatedAt": updated,
        "scope": "project",
        "tags": [],
        "content": content,
        "summary": None,
        "metadata": None,
        "importance": 0.5,
        "deleted": False,
    }
    rec.update(extra)
    return json.dumps(rec)


def _write(path, *lines):
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        f.write("\n".join(lines) + "\n")


def _line_count(path):
    with open(path, encoding="utf-8") as f:
        return sum(1 for ln in f if ln.strip())


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


class TestParseText:
    def test_empty(self):
        result = parse_text("")
        assert result.items == []
        assert result.stats.total_lines == 1
        assert result.stats.empty_lines == 1

    def test_crlf_and_blank_lines(self):
        text = _line("a", "2024-01-02T00:00:00Z") + "\r\n\r\n" + _line("b", "2024-01-02T00:00:00Z")
        result = parse_text(text)
        assert [it.id for it in result.items] == ["a", "b"]
        assert result.stats.valid_lines == 2
        assert result.stats.empty_lines == 1

    def test_corrupt_lines_become_diagnostics(self):
        text = "\n".join([
            _line("a", "2024-01-02T00:00:00Z"),
            "{not json",
            json.dumps({"id": "x"}),
            "[]",
            _line("b", "2024-01-02T00:00:00Z"),
        ])
        result = parse_text(text)
        assert [it.id for it in result.items] == ["a", "b"]
        assert [e.line_number for e in result.errors] == [2, 3, 4]
        assert all(str(e).startswith(f"Line {e.line_number}: ") for e in result.errors)
        assert "Invalid or missing content" in str(result.errors[1])
        assert "Memory item is not an object" in str(result.errors[2])
        assert result.errors[0].raw == "{not json"
        assert result.stats.invalid_lines == 3

    def test_record_without_summary_key_is_corrupt(self):
        rec = json.loads(_line("a", "2024-01-02T00:00:00Z"))
        del rec["summary"]
        result = parse_text(json.dumps(rec))
        assert result.items == []
        assert "Invalid summary" in str(result.errors[0])

    def test_bytes_counted(self):
        text = _line("a", "2024-01-02T00:00:00Z") + "\n"
        assert parse_text(text).stats.bytes == len(text.encode("utf-8"))


class TestSelectLatest:
    def _item(self, item_id, updated, content):
        return MemoryItem(id=item_id, created_at="2024-01-01T00:00:00Z",
                          updated_at=updated, scope="p", content=content)

    def test_greatest_updated_wins(self):
        items = [
            self._item("a", "2024-01-03T00:00:00Z", "new"),
            self._item("a", "2024-01-02T00:00:00Z", "old"),
        ]
        assert select_latest(items)[0].content == "new"

    def test_exact_tie_later_record_wins(self):
        items = [
            self._item("a", "2024-01-02T00:00:00Z", "first"),
            self._item("a", "2024-01-02T00:00:00Z", "second"),
        ]
        assert select_latest(items)[0].content == "second"

    def test_unparsable_updated_falls_back_to_created(self):
        items = [
            self._item("a", "2024-01-01T12:00:00Z", "dated"),
            self._item("a", "garbage", "undated"),
        ]
        # "undated" resolves to createdAt (2024-01-01T00:00Z), older than "dated".
        assert select_latest(items)[0].content == "dated"

    def test_idempotent(self):
        items = [
            self._item("a", "2024-01-02T00:00:00Z", "x"),
            self._item("b", "2024-01-02T00:00:00Z", "y"),
            self._item("a", "2024-01-03T00:00:00Z", "z"),
        ]
        once = select_latest(items)
        assert select_latest(once) == once
        assert [it.id for it in once] == ["a", "b"]


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------


class TestAdd:
    def test_creates_file_and_parent(self, log_path):
        MemoryStore(log_path)
        assert os.path.exists(log_path)

    def test_defaults_and_normalisation(self, store):
        item = store.add("  project ", "use postgres", tags=["DB", "db", " "])
        assert item.scope == "project"
        assert item.tags == ["db"]
        assert item.importance == 0.5
        assert item.deleted is False
        assert item.created_at == item.updated_at

    def test_get_returns_equal_item(self, store):
        item = store.add("p", "hello", metadata={"k": [1, 2]}, importance=0.9)
        assert store.get(item.id) == item

    def test_ids_unique(self, store):
        ids = {store.add("p", f"note {i}").id for i in range(50)}
        assert len(ids) == 50

    @pytest.mark.parametrize("scope,content", [("", "x"), ("  ", "x"), ("p", ""), ("p", " \n")])
    def test_requires_scope_and_content(self, store, scope, content):
        with pytest.raises(ValidationError):
            store.add(scope, content)
        assert store.list_items() == []

    def test_rejects_bad_tags(self, store):
        with pytest.raises(ValidationError):
            store.add("p", "x", tags="db")

    def test_appends_one_line_per_add(self, store, log_path):
        store.add("p", "one")
        store.add("p", "two\nlines")
        assert _line_count(log_path) == 2


class TestUpdate:
    def test_only_supplied_fields_change(self, store):
        item = store.add("p", "old", tags=["a"], summary="s")
        updated = store.update(item.id, {"content": "new"})
        assert updated.content == "new"
        assert updated.tags == ["a"]
        assert updated.summary == "s"
        assert updated.created_at == item.created_at
        assert store.get(item.id).content == "new"

    def test_accepts_patch_object(self, store):
        item = store.add("p", "x", summary="s")
        assert store.update(item.id, MemoryPatch(summary=None)).summary is None

    def test_unknown_id_returns_none(self, store, log_path):
        assert store.update("missing", {"content": "x"}) is None
        assert _line_count(log_path) == 0

    def test_invalid_patch_writes_nothing(self, store, log_path):
        item = store.add("p", "x")
        with pytest.raises(ValidationError):
            store.update(item.id, {"content": ""})
        with pytest.raises(ValidationError):
            store.update(item.id, {"id": "other"})
        assert _line_count(log_path) == 1

    def test_delete_is_soft(self, store, log_path):
        item = store.add("p", "x")
        deleted = store.delete(item.id)
        assert deleted.deleted is True
        assert store.get(item.id).deleted is True
        assert _line_count(log_path) == 2


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


class TestRead:
    def test_corruption_tolerated(self, log_path):
        _write(log_path,
               _line("a", "2024-01-02T00:00:00Z"),
               "garbage",
               _line("b", "2024-01-02T00:00:00Z"))
        result = MemoryStore(log_path).read_all()
        assert [it.id for it in result.items] == ["a", "b"]
        assert len(result.errors) == 1
        assert result.errors[0].line_number == 2

    def test_undecodable_bytes_are_a_corrupt_line(self, log_path):
        os.makedirs(os.path.dirname(log_path), exist_ok=True)
        with open(log_path, "wb") as f:
            f.write(_line("a", "2024-01-02T00:00:00Z").encode() + b"\n\xff\xfe\n")
        result = MemoryStore(log_path).read_all()
        assert [it.id for it in result.items] == ["a"]
        assert result.stats.invalid_lines == 1

    def test_read_latest_resolves(self, log_path):
        _write(log_path,
               _line("a", "2024-01-02T00:00:00Z", content="v1"),
               _line("a", "2024-01-05T00:00:00Z", content="v3"),
               _line("a", "2024-01-03T00:00:00Z", content="v2"))
        latest = MemoryStore(log_path).list_items()
        assert len(latest) == 1
        assert latest[0].content == "v3"


# ---------------------------------------------------------------------------
# Rewrites
# ---------------------------------------------------------------------------


class TestCompact:
    def test_reduces_to_latest(self, store, log_path):
        item = store.add("p", "v1")
        for i in range(5):
            store.update(item.id, {"content": f"v{i + 2}"})
        other = store.add("p", "other")
        before = store.list_items()

        result = store.compact()

        assert result.compacted is True
        assert _line_count(log_path) == 2
        assert store.list_items() == before
        assert store.get(item.id).content == "v6"
        assert store.get(other.id) is not None
        assert os.path.exists(result.backup_file)
        assert _line_count(result.backup_file) == 7

    def test_empty_log(self, store, log_path):
        store.compact()
        with open(log_path, encoding="utf-8") as f:
            assert f.read() == ""

    def test_crash_before_swap_keeps_primary(self, store, log_path, monkeypatch):
        for i in range(3):
            store.add("p", f"note {i}")
        expected = {it.id for it in store.list_items()}
        with open(log_path, "rb") as f:
            original = f.read()

        def crashing_replace(src, dst):
            raise OSError("simulated crash")

        monkeypatch.setattr("codexmem.store.os.replace", crashing_replace)
        with pytest.raises(OSError, match="simulated crash"):
            store.compact()
        monkeypatch.undo()

        assert os.path.exists(log_path)
        with open(log_path, "rb") as f:
            assert f.read() == original
        reopened = MemoryStore(log_path)
        assert {it.id for it in reopened.list_items()} == expected
        (backup,) = glob.glob(log_path + ".bak.*")
        with open(backup, "rb") as f:
            assert f.read() == original
        assert not os.path.exists(log_path + ".lock")

    def test_crash_during_backup_keeps_primary(self, store, log_path, monkeypatch):
        store.add("p", "only")
        with open(log_path, "rb") as f:
            original = f.read()

        def crashing_copy(src, dst):
            raise OSError("disk full")

        monkeypatch.setattr("codexmem.store.shutil.copyfile", crashing_copy)
        with pytest.raises(OSError, match="disk full"):
            store.compact()
        monkeypatch.undo()

        with open(log_path, "rb") as f:
            assert f.read() == original
        assert len(MemoryStore(log_path).list_items()) == 1


class TestRepair:
    def _corrupt_log(self, log_path):
        _write(log_path,
               _line("a", "2024-01-02T00:00:00Z", content="v1"),
               "{broken",
               _line("a", "2024-01-03T00:00:00Z", content="v2"),
               json.dumps({"id": "z"}))

    def test_drops_and_quarantines(self, log_path):
        self._corrupt_log(log_path)
        store = MemoryStore(log_path)
        result = store.repair()

        assert result.repaired is True
        assert result.compacted is False
        assert result.quarantined_lines == 2
        with open(result.quarantined_file, encoding="utf-8") as f:
            entries = [json.loads(ln) for ln in f]
        assert [e["lineNumber"] for e in entries] == [2, 4]
        assert entries[0]["raw"] == "{broken"
        assert _line_count(log_path) == 2
        assert store.read_all().errors == []

    def test_no_quarantine(self, log_path, tmp_path):
        self._corrupt_log(log_path)
        result = MemoryStore(log_path).repair(quarantine=False)
        assert result.quarantined_file is None
        assert glob.glob(log_path + ".corrupt.*") == []

    def test_with_compact(self, log_path):
        self._corrupt_log(log_path)
        store = MemoryStore(log_path)
        result = store.repair(compact=True)
        assert result.compacted is True
        assert _line_count(log_path) == 1
        assert store.get("a").content == "v2"

    def test_clean_log_untouched(self, store, log_path):
        store.add("p", "x")
        result = store.repair()
        assert result.repaired is False
        assert result.backup_file is None
        assert glob.glob(log_path + ".bak.*") == []


class TestHealth:
    def test_clean(self, store):
        store.add("p", "x")
        health = store.health()
        assert health.latest_items == 1
        assert health.should_compact is False
        assert health.needs_repair is False
        assert health.reasons == []

    def test_line_ratio(self, store):
        item = store.add("p", "x")
        for i in range(3):
            store.update(item.id, {"content": f"x{i}"})
        health = store.health(max_line_ratio=2.0, min_lines=4)
        assert health.should_compact is True
        assert health.reasons == ["line-ratio:4.00>=2"]

    def test_min_lines_gate(self, store):
        item = store.add("p", "x")
        store.update(item.id, {"content": "y"})
        assert store.health(max_line_ratio=2.0, min_lines=200).reasons == []

    def test_bytes(self, store):
        store.add("p", "x" * 100)
        health = store.health(max_bytes=50)
        assert any(r.startswith("bytes:") for r in health.reasons)

    def test_invalid_lines(self, log_path):
        _write(log_path, _line("a", "2024-01-02T00:00:00Z"), "junk")
        health = MemoryStore(log_path).health()
        assert health.needs_repair is True
        assert "invalid-lines:1" in health.reasons
        assert health.should_compact is True
