"""
Tests for codexmem.engine — the public operations end to end.
"""

import os
import threading
import time
from datetime import datetime, timedelta, timezone

import pytest

from codexmem.config import (
    MemoryConfig,
    PruneConfig,
    RetrievalConfig,
    StoreConfig,
    SummarizationConfig,
)
from codexmem.engine import MemoryEngine, run_sanity_check
from codexmem.errors import (
    ItemNotFoundError,
    LockTimeoutError,
    SanityCheckError,
    ValidationError,
)
from codexmem.index import load_index
from codexmem.lock import lock_path_for
from codexmem.store import MemoryStore
from codexmem.types import MemoryPatch


def _config(tmp_path, **sections):
    store = StoreConfig(
        memory_file=str(tmp_path / ".memory" / "memory.jsonl"),
        index_file=str(tmp_path / ".memory" / "index.json"),
    )
    return MemoryConfig(store=store, **sections)


@pytest.fixture
def engine(tmp_path):
    return MemoryEngine(_config(tmp_path))


def _touch_future(path, seconds=10):
    later = time.time() + seconds
    os.utime(path, (later, later))


# ---------------------------------------------------------------------------
# CRUD
# ---------------------------------------------------------------------------


class TestAddGet:
    def test_roundtrip(self, engine):
        item = engine.add("project", "Use postgres", tags=["db"],
                          metadata={"source": "adr-1"}, importance=0.8, summary="pg")
        got = engine.get(item.id)
        assert got.content == "Use postgres"
        assert got.scope == "project"
        assert got.tags == ["db"]
        assert got.metadata == {"source": "adr-1"}
        assert got.importance == 0.8
        assert got.summary == "pg"

    def test_ids_unique(self, engine):
        ids = [engine.add("p", f"note {i}").id for i in range(30)]
        assert len(set(ids)) == 30

    def test_add_updates_index(self, engine):
        item = engine.add("project", "x", tags=["db"])
        index = load_index(engine.index_file)
        assert index.by_scope_tag == {"project": {"db": [item.id]}}

    def test_validation(self, engine):
        with pytest.raises(ValidationError):
            engine.add("", "content")
        with pytest.raises(ValidationError):
            engine.add("p", "")
        with pytest.raises(ValidationError):
            engine.add("p", "x", tags="db")

    def test_get_missing(self, engine):
        with pytest.raises(ItemNotFoundError) as exc_info:
            engine.get("nope")
        assert exc_info.value.item_id == "nope"
        assert "nope" in str(exc_info.value)


class TestUpdateDelete:
    def test_update(self, engine):
        item = engine.add("p", "old", tags=["a"])
        updated = engine.update(item.id, {"content": "new", "tags": ["b"]})
        assert updated.content == "new"
        assert engine.get(item.id).tags == ["b"]
        assert load_index(engine.index_file).by_tag == {"b": [item.id]}

    def test_update_with_patch_object(self, engine):
        item = engine.add("p", "x", summary="s")
        assert engine.update(item.id, MemoryPatch(summary=None)).summary is None

    def test_update_missing(self, engine):
        with pytest.raises(ItemNotFoundError):
            engine.update("nope", {"content": "x"})

    def test_update_requires_patch(self, engine):
        item = engine.add("p", "x")
        with pytest.raises(ValidationError):
            engine.update(item.id, None)

    def test_delete_hides_from_search(self, engine):
        item = engine.add("p", "x", tags=["t"])
        engine.delete(item.id)
        assert engine.get(item.id).deleted is True
        assert engine.search(scope="p") == []
        assert [r.item.id for r in engine.search(scope="p", include_deleted=True)] == [item.id]
        assert load_index(engine.index_file).by_scope == {}

    def test_delete_missing(self, engine):
        with pytest.raises(ItemNotFoundError):
            engine.delete("nope")

    def test_list_items(self, engine):
        a = engine.add("p", "a")
        b = engine.add("q", "b")
        engine.delete(b.id)
        assert [it.id for it in engine.list_items()] == [a.id]
        assert [it.id for it in engine.list_items(include_deleted=True)] == [a.id, b.id]
        assert engine.list_items(scope="q") == []


# ---------------------------------------------------------------------------
# Search
# ---------------------------------------------------------------------------


class TestSearch:
    def test_scope_tag_scenario(self, engine):
        a = engine.add("s", "alpha", tags=["x"], importance=0.9)
        engine.add("s", "beta", tags=["y"], importance=0.1)
        results = engine.search(scope="s", tags=["x"])
        assert [r.item.id for r in results] == [a.id]
        assert results[0].score > 0

    @pytest.mark.parametrize("prebuilt", [True, False])
    def test_rebuild_then_scope_search(self, tmp_path, prebuilt):
        engine = MemoryEngine(_config(tmp_path))
        keep = [engine.add("S", f"keep {i}").id for i in range(3)]
        gone = engine.add("S", "gone")
        engine.delete(gone.id)
        engine.add("T", "other scope")
        if not prebuilt:
            os.remove(engine.index_file)
        engine.rebuild_index()
        results = engine.search(scope="S", limit=0)
        assert sorted(r.item.id for r in results) == sorted(keep)

    def test_missing_index_rebuilt_on_search(self, engine):
        item = engine.add("p", "x")
        os.remove(engine.index_file)
        assert [r.item.id for r in engine.search(scope="p")] == [item.id]
        assert os.path.exists(engine.index_file)

    def test_stale_index_rebuilt_on_search(self, engine):
        engine.add("p", "indexed")
        # A second writer that does not maintain the index.
        other = MemoryStore(engine.store.path).add("p", "unindexed")
        _touch_future(engine.store.path)
        ids = {r.item.id for r in engine.search(scope="p")}
        assert other.id in ids
        assert len(ids) == 2

    def test_text_filter(self, engine):
        pg = engine.add("p", "We chose postgres")
        engine.add("p", "Frontend uses react")
        assert [r.item.id for r in engine.search(query="postgres")] == [pg.id]

    def test_default_limit_from_config(self, tmp_path):
        engine = MemoryEngine(_config(tmp_path, retrieval=RetrievalConfig(default_limit=2)))
        for i in range(5):
            engine.add("p", f"n{i}")
        assert len(engine.search(scope="p")) == 2
        assert len(engine.search(scope="p", limit=0)) == 5

    def test_deterministic(self, engine):
        for i in range(6):
            engine.add("p", f"note {i}", tags=["t"], importance=i / 6)
        now = datetime.now(timezone.utc)
        first = engine.search(scope="p", tags=["t"], now=now)
        second = engine.search(scope="p", tags=["t"], now=now)
        assert [(r.item.id, r.score) for r in first] == [(r.item.id, r.score) for r in second]

    def test_importance_ranks_higher(self, engine):
        low = engine.add("p", "same words", importance=0.1)
        high = engine.add("p", "same words again", importance=0.9)
        ids = [r.item.id for r in engine.search(scope="p")]
        assert ids.index(high.id) < ids.index(low.id)

    def test_corrupt_line_skipped(self, engine):
        item = engine.add("p", "good")
        with open(engine.store.path, "a", encoding="utf-8") as f:
            f.write("{corrupt\n")
        assert [r.item.id for r in engine.search()] == [item.id]


# ---------------------------------------------------------------------------
# Prune
# ---------------------------------------------------------------------------


class TestPrune:
    def test_dedup_leaves_one_with_union_tags(self, engine):
        engine.add("p", "Deploy with  docker", tags=["ops"])
        engine.add("p", "deploy with docker", tags=["ci"])
        result = engine.prune()
        assert result["dryRun"] is False
        assert result["stats"]["deduped"] == 1
        visible = engine.list_items()
        assert len(visible) == 1
        assert set(visible[0].tags) == {"ops", "ci"}

    def test_dry_run_writes_nothing(self, engine):
        engine.add("p", "dup")
        engine.add("p", "dup")
        size = os.path.getsize(engine.store.path)
        result = engine.prune(dry_run=True)
        assert result["dryRun"] is True
        assert len(result["actions"]) == 1
        assert os.path.getsize(engine.store.path) == size
        assert len(engine.list_items()) == 2

    def test_aging_summarizes_instead_of_deleting(self, tmp_path):
        config = _config(
            tmp_path,
            prune=PruneConfig(max_per_scope=1, delete_older_than_days=9999,
                              compress_older_than_days=1),
            summarization=SummarizationConfig(max_content_length=50, older_than_days=1),
        )
        engine = MemoryEngine(config)
        engine.add("p", "pinned", importance=1.0)
        old = engine.add("p", "Long note. " * 30, importance=0.0)

        later = datetime.now(timezone.utc) + timedelta(days=100)
        result = engine.prune(now=later)

        assert result["stats"]["summarized"] == 1
        assert result["stats"]["deleted"] == 0
        current = engine.get(old.id)
        assert current.deleted is False
        assert current.summary is not None
        assert len(current.summary) <= 50 + len("...")

    def test_scope_filter(self, engine):
        engine.add("p", "dup")
        engine.add("p", "dup")
        engine.add("q", "dup")
        engine.add("q", "dup")
        result = engine.prune(scope="q")
        assert result["stats"]["deduped"] == 1
        assert len(engine.list_items(scope="p")) == 2
        assert len(engine.list_items(scope="q")) == 1

    def test_scope_is_trimmed(self, engine):
        engine.add("q", "dup")
        engine.add("q", "dup")
        result = engine.prune(scope="  q ")
        assert result["stats"]["deduped"] == 1
        assert len(engine.list_items(scope="q")) == 1

    def test_index_follows_prune(self, engine):
        engine.add("p", "dup", tags=["a"])
        b = engine.add("p", "dup", tags=["b"])
        engine.prune()
        index = load_index(engine.index_file)
        assert b.id not in index.by_scope.get("p", [])
        assert "b" in index.by_tag


# ---------------------------------------------------------------------------
# Maintenance
# ---------------------------------------------------------------------------


class TestMaintenance:
    def test_health_uses_config_thresholds(self, tmp_path):
        from codexmem.config import MaintenanceConfig
        engine = MemoryEngine(_config(
            tmp_path, maintenance=MaintenanceConfig(max_line_ratio=2.0, min_lines=2),
        ))
        item = engine.add("p", "x")
        engine.update(item.id, {"content": "y"})
        health = engine.health()
        assert health.should_compact is True
        assert health.latest_items == 1

    def test_compact_keeps_latest_and_index(self, engine):
        item = engine.add("p", "v1", tags=["t"])
        engine.update(item.id, {"content": "v2"})
        result = engine.compact()
        assert result.compacted is True
        assert engine.get(item.id).content == "v2"
        assert engine.health().stats.valid_lines == 1
        assert load_index(engine.index_file).by_tag == {"t": [item.id]}

    def test_repair_rebuilds_index(self, engine):
        item = engine.add("p", "x", tags=["t"])
        with open(engine.store.path, "a", encoding="utf-8") as f:
            f.write("junk\n")
        os.remove(engine.index_file)
        result = engine.repair()
        assert result.repaired is True
        assert result.quarantined_lines == 1
        assert load_index(engine.index_file).by_tag == {"t": [item.id]}

    def test_lock_timeout(self, tmp_path):
        config = _config(tmp_path)
        config.store.lock_timeout_ms = 100
        config.store.lock_retry_delay_ms = 10
        engine = MemoryEngine(config)
        with open(lock_path_for(engine.store.path), "w") as f:
            f.write("{}")
        with pytest.raises(LockTimeoutError):
            engine.add("p", "x")
        assert engine.list_items() == []


# ---------------------------------------------------------------------------
# Index consistency
# ---------------------------------------------------------------------------


class TestIndexConsistency:
    def test_concurrent_writers_keep_every_item(self, tmp_path):
        config = _config(tmp_path)
        engines = [MemoryEngine(config), MemoryEngine(config)]
        engines[0].add("s", "seed")
        errors = []

        def writer(engine, n):
            try:
                for i in range(15):
                    engine.add("s", f"writer {n} note {i}")
            except Exception as exc:
                errors.append(exc)

        threads = [
            threading.Thread(target=writer, args=(e, n))
            for n, e in enumerate(engines)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert len(load_index(config.store.index_file).by_scope["s"]) == 31
        assert len(engines[1].search(scope="s", limit=0)) == 31

    def test_write_after_index_stamp_stays_visible(self, engine):
        engine.add("s", "indexed")
        index_mtime = os.stat(engine.index_file).st_mtime_ns
        foreign = MemoryStore(engine.store.path).add("s", "written elsewhere")
        # Same filesystem tick: the mtime comparison cannot see the write.
        os.utime(engine.store.path, ns=(index_mtime, index_mtime))

        ids = [r.item.id for r in engine.search(scope="s", limit=0)]
        assert foreign.id in ids
        assert len(ids) == 2

    def test_unreadable_index_does_not_narrow(self, engine):
        item = engine.add("s", "x", tags=["t"])
        with open(engine.index_file, "w") as f:
            f.write("{nope")
        _touch_future(engine.index_file)
        assert [r.item.id for r in engine.search(scope="s", tags=["t"])] == [item.id]

    def test_unreadable_index_not_patched(self, engine):
        engine.add("s", "x")
        with open(engine.index_file, "w") as f:
            f.write("{nope")
        _touch_future(engine.index_file)
        engine.add("s", "y")
        with open(engine.index_file) as f:
            assert f.read() == "{nope"
        assert len(engine.search(scope="s", limit=0)) == 2

    def test_index_lock_held_write_still_lands(self, tmp_path):
        config = _config(tmp_path)
        config.store.lock_timeout_ms = 100
        config.store.lock_retry_delay_ms = 10
        engine = MemoryEngine(config)
        marker = lock_path_for(engine.index_file)
        os.makedirs(os.path.dirname(marker), exist_ok=True)
        with open(marker, "w") as f:
            f.write("{}")
        try:
            item = engine.add("s", "x")
            assert [r.item.id for r in engine.search(scope="s")] == [item.id]
        finally:
            os.remove(marker)
        assert [r.item.id for r in engine.search(scope="s")] == [item.id]
        assert load_index(engine.index_file).by_scope == {"s": [item.id]}


# ---------------------------------------------------------------------------
# Sanity check
# ---------------------------------------------------------------------------


class TestSanityCheck:
    def _leftovers(self, config):
        parent = os.path.dirname(config.store.memory_file)
        return [n for n in os.listdir(parent) if n.startswith("sanity-")]

    def test_passes_and_cleans_up(self, tmp_path):
        config = _config(tmp_path)
        assert run_sanity_check(config) == {"ok": True}
        assert self._leftovers(config) == []
        assert not os.path.exists(config.store.memory_file)

    def test_failure_raises_and_cleans_up(self, tmp_path, monkeypatch):
        config = _config(tmp_path)
        monkeypatch.setattr(MemoryEngine, "search", lambda self, **kw: [])
        with pytest.raises(SanityCheckError):
            run_sanity_check(config)
        assert self._leftovers(config) == []
