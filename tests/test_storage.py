"""Tests for kgmem.storage: load / migrate / rebuild / save state machine."""

import json
import logging
from pathlib import Path

import pytest

from kgmem.errors import StorageIOError
from kgmem.index import build_index, parse_index
from kgmem.layout import (
    DATA_MARKER_START,
    INDEX_MARKER_END,
    INDEX_MARKER_START,
    has_index_section,
    index_payload,
    record_lines,
    render,
)
from kgmem.models import Entity, KnowledgeGraph, Relation
from kgmem.storage import StorageManager


def _same_graph(a: KnowledgeGraph, b: KnowledgeGraph) -> bool:
    return a.entities == b.entities and set(a.relations) == set(b.relations)


# ---------------------------------------------------------------------------
# load_index
# ---------------------------------------------------------------------------


class TestLoadIndex:
    def test_missing_file_is_created_empty(self, storage, memory_path):
        index = storage.load_index()
        assert index.entities == {}
        assert memory_path.exists()
        assert has_index_section(memory_path.read_text())
        assert storage.is_loaded

    def test_missing_parent_directory_is_created(self, tmp_path):
        path = tmp_path / "nested" / "dir" / "memory.json"
        StorageManager(path).load_index()
        assert path.exists()

    def test_returns_cache_when_file_unchanged(self, storage):
        first = storage.load_index()
        assert storage.load_index() is first

    def test_reloads_after_external_write(self, storage, memory_path, legacy_text):
        storage.load_index()
        memory_path.write_text(legacy_text(KnowledgeGraph.build([Entity("Outside", "t", ["written elsewhere"])])))
        index = storage.load_index()
        assert list(index.entities) == ["Outside"]

    def test_markers_present_matches_rebuild(self, storage, memory_path, sample_graph):
        StorageManager(memory_path).save_graph(sample_graph)
        loaded = storage.load_index()
        assert loaded == build_index(sample_graph)
        assert loaded == storage.rebuild_index()

    def test_empty_existing_file_is_migrated(self, storage, memory_path):
        memory_path.write_text("")
        assert storage.load_index().entities == {}
        assert has_index_section(memory_path.read_text())


# ---------------------------------------------------------------------------
# Legacy migration
# ---------------------------------------------------------------------------


class TestLegacyMigration:
    def test_legacy_file_gains_markers(self, storage, memory_path, sample_graph, legacy_text):
        memory_path.write_text(legacy_text(sample_graph))
        index = storage.load_index()
        assert index == build_index(sample_graph)
        text = memory_path.read_text()
        assert text.startswith(INDEX_MARKER_START)
        assert _same_graph(storage.load_full_graph(), sample_graph)

    def test_legacy_bad_lines_are_dropped_rest_kept(self, storage, memory_path):
        memory_path.write_text(
            '{"type":"entity","name":"A","entityType":"t","observations":["x"]}\n'
            "garbage line\n"
            '{"type":"relation","from":"A","to":"B","relationType":"r"}\n'
        )
        graph = storage.load_full_graph()
        assert list(graph.entities) == ["A"]
        assert graph.relations == [Relation("A", "B", "r")]


# ---------------------------------------------------------------------------
# Corrupt index recovery
# ---------------------------------------------------------------------------


def _with_index_section(index_text: str, graph: KnowledgeGraph) -> str:
    return "\n".join([INDEX_MARKER_START, index_text, INDEX_MARKER_END, DATA_MARKER_START, *record_lines(graph)])


class TestCorruptIndex:
    @pytest.mark.parametrize(
        "index_text",
        [
            '{"metadata": {"version": "2.0.0", "entityCo',
            "not json at all",
            '{"metadata": {"version": "2.0.0", "entityCount": 7, "relationCount": 0},'
            ' "entityIndices": [], "typeIndices": [], "relationIndices": []}',
        ],
    )
    def test_invalid_payload_rebuilds_from_data(self, storage, memory_path, sample_graph, index_text, caplog):
        memory_path.write_text(_with_index_section(index_text, sample_graph))
        with caplog.at_level(logging.WARNING, logger="kgmem.storage"):
            index = storage.load_index()
        assert index == build_index(sample_graph)
        assert any("rebuilding" in r.getMessage() for r in caplog.records)
        assert storage.verify_index() == []

    def test_end_marker_missing(self, storage, memory_path, sample_graph):
        text = "\n".join([INDEX_MARKER_START, "{", DATA_MARKER_START, *record_lines(sample_graph)])
        memory_path.write_text(text)
        assert storage.load_index() == build_index(sample_graph)

    def test_end_marker_before_start(self, storage, memory_path, sample_graph):
        text = "\n".join([INDEX_MARKER_END, INDEX_MARKER_START, "{}", DATA_MARKER_START, *record_lines(sample_graph)])
        memory_path.write_text(text)
        assert storage.load_index() == build_index(sample_graph)

    def test_no_data_marker_treats_whole_file_as_legacy(self, storage, memory_path, sample_graph):
        text = "\n".join([INDEX_MARKER_START, '{"metadata": trunc', *record_lines(sample_graph)])
        memory_path.write_text(text)
        assert storage.load_index() == build_index(sample_graph)
        assert _same_graph(storage.load_full_graph(), sample_graph)


# ---------------------------------------------------------------------------
# Save / full graph
# ---------------------------------------------------------------------------


class TestSaveAndLoad:
    def test_round_trip(self, storage, sample_graph):
        storage.save_graph(sample_graph)
        assert _same_graph(StorageManager(storage.file_path).load_full_graph(), sample_graph)

    def test_round_trip_empty_graph(self, storage):
        storage.save_graph(KnowledgeGraph())
        assert _same_graph(storage.load_full_graph(), KnowledgeGraph())

    def test_round_trip_unicode(self, storage):
        g = KnowledgeGraph.build([Entity("Zoë", "Person", ["naïve café ☕", "日本語"])])
        storage.save_graph(g)
        assert StorageManager(storage.file_path).load_full_graph() == g

    @pytest.mark.parametrize("sep", ["\u2028", "\u2029", "\x85", "\x0b", "\x1c"])
    def test_round_trip_unicode_line_separators(self, storage, sep):
        g = KnowledgeGraph.build(
            [Entity(f"A{sep}1", "t", [f"line one{sep}line two"]), Entity("B", "t")],
            [Relation(f"A{sep}1", "B", f"r{sep}s")],
        )
        storage.save_graph(g)
        assert StorageManager(storage.file_path).load_full_graph() == g
        assert storage.verify_index() == []

    def test_written_index_matches_data_section(self, storage, memory_path, sample_graph):
        written = storage.save_graph(sample_graph)
        text = memory_path.read_text()
        stored = parse_index(index_payload(text))
        assert stored == written
        assert stored == StorageManager(memory_path).rebuild_index()

    def test_save_leaves_no_tmp_file(self, storage, memory_path, sample_graph):
        storage.save_graph(sample_graph)
        assert not memory_path.with_name(memory_path.name + ".tmp").exists()

    def test_load_full_graph_comes_from_data_not_index(self, storage, memory_path, sample_graph):
        storage.save_graph(sample_graph)
        text = memory_path.read_text()
        # append a record behind the index's back: it is data, so it is returned
        memory_path.write_text(text + '{"type":"entity","name":"Late","entityType":"t"}\n')
        assert "Late" in storage.load_full_graph()

    def test_bad_record_in_data_section_is_skipped(self, storage, memory_path, sample_graph):
        storage.save_graph(sample_graph)
        memory_path.write_text(memory_path.read_text() + "{oops\n")
        assert _same_graph(storage.load_full_graph(), sample_graph)


# ---------------------------------------------------------------------------
# Lookups and primitives
# ---------------------------------------------------------------------------


class TestLookups:
    @pytest.fixture(autouse=True)
    def _seed(self, storage, sample_graph):
        storage.save_graph(sample_graph)

    def test_get_entity_by_name(self, storage):
        assert storage.get_entity_by_name("Bob") == Entity("Bob", "person", ["plays chess"])
        assert storage.get_entity_by_name("bob") is None
        assert storage.get_entity_by_name("Ghost") is None

    def test_get_entities_by_type(self, storage):
        assert [e.name for e in storage.get_entities_by_type("person")] == ["Alice", "Bob", "Carol"]
        assert storage.get_entities_by_type("planet") == []

    def test_get_relations_by_type(self, storage):
        assert storage.get_relations_by_type("works_on") == [
            Relation("Alice", "Apollo", "works_on"),
            Relation("Carol", "Apollo", "works_on"),
        ]
        assert storage.get_relations_by_type("haunts") == [Relation("Ghost", "Alice", "haunts")]
        assert storage.get_relations_by_type("WORKS_ON") == []

    def test_search_entities_by_name(self, storage):
        assert [e.name for e in storage.search_entities_by_name("AL")] == ["Alice"]
        assert [e.name for e in storage.search_entities_by_name("o")] == ["Bob", "Carol", "Apollo"]


class TestPrimitives:
    def test_upsert_entity_inserts_and_replaces(self, storage):
        storage.upsert_entity(Entity("A", "t", ["x"]))
        storage.upsert_entity(Entity("A", "t", ["x", "y"]))
        assert storage.load_index().entities["A"].observation_count == 2
        assert storage.get_entity_by_name("A").observations == ["x", "y"]

    def test_upsert_relation_no_duplicates(self, storage):
        r = Relation("A", "B", "r")
        storage.upsert_relation(r)
        storage.upsert_relation(r)
        assert storage.load_full_graph().relations == [r]
        assert storage.load_index().metadata.relation_count == 1

    def test_delete_entity_cascades(self, storage, sample_graph):
        storage.save_graph(sample_graph)
        storage.delete_entity("Apollo")
        graph = storage.load_full_graph()
        assert "Apollo" not in graph
        assert all(not r.touches("Apollo") for r in graph.relations)
        assert len(graph.relations) == 3
        assert "Apollo" not in storage.load_index().entities

    def test_delete_relation_exact_triple(self, storage, sample_graph):
        storage.save_graph(sample_graph)
        storage.delete_relation(Relation("Alice", "Bob", "likes"))
        assert len(storage.load_full_graph().relations) == 5
        storage.delete_relation(Relation("Alice", "Bob", "knows"))
        assert Relation("Alice", "Bob", "knows") not in storage.load_full_graph().relations

    def test_apply_without_change_does_not_rewrite(self, storage, memory_path, sample_graph):
        storage.save_graph(sample_graph)
        before = memory_path.read_text()
        storage.apply(lambda g: (g.with_relation(Relation("Alice", "Bob", "knows")), None))
        assert memory_path.read_text() == before

    def test_apply_exception_leaves_file_untouched(self, storage, memory_path, sample_graph):
        storage.save_graph(sample_graph)
        before = memory_path.read_text()

        def edit(g):
            g.with_entity(Entity("Never", "t"))
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            storage.apply(edit)
        assert memory_path.read_text() == before


# ---------------------------------------------------------------------------
# Cache state and I/O failures
# ---------------------------------------------------------------------------


class TestCacheAndFailures:
    def test_set_file_path_invalidates_cache(self, storage, tmp_path, sample_graph):
        storage.save_graph(sample_graph)
        assert storage.is_loaded
        other = tmp_path / "other.json"
        storage.set_file_path(other)
        assert not storage.is_loaded
        assert storage.load_index().entities == {}
        assert storage.file_path == other

    def test_unreadable_file_raises_and_resets_cache(self, tmp_path):
        path = tmp_path / "is_a_dir"
        path.mkdir()
        storage = StorageManager(path)
        with pytest.raises(StorageIOError):
            storage.load_index()
        assert not storage.is_loaded

    def test_failed_write_raises_and_resets_cache(self, storage, memory_path, sample_graph, monkeypatch):
        storage.save_graph(sample_graph)
        before = memory_path.read_text()

        def disk_full(self, target):
            raise OSError(28, "No space left on device")

        monkeypatch.setattr(Path, "replace", disk_full)
        with pytest.raises(StorageIOError, match="No space left"):
            storage.upsert_entity(Entity("New", "t"))
        assert not storage.is_loaded
        assert storage.load_index().entities.keys() == build_index(sample_graph).entities.keys()
        monkeypatch.undo()
        assert memory_path.read_text() == before
        assert not memory_path.with_name(memory_path.name + ".tmp").exists()

    def test_unencodable_text_raises_and_leaves_no_tmp(self, storage, memory_path, sample_graph):
        storage.save_graph(sample_graph)
        before = memory_path.read_text()
        with pytest.raises(StorageIOError, match="Failed to write"):
            storage.upsert_entity(Entity("bad\ud800", "t", ["lone surrogate"]))
        assert not storage.is_loaded
        assert memory_path.read_text() == before
        assert not memory_path.with_name(memory_path.name + ".tmp").exists()
        assert "bad\ud800" not in storage.load_full_graph()


# ---------------------------------------------------------------------------
# verify_index
# ---------------------------------------------------------------------------


class TestVerifyIndex:
    def test_coherent_after_save(self, storage, sample_graph):
        storage.save_graph(sample_graph)
        assert storage.verify_index() == []

    def test_reports_stale_index(self, storage, memory_path, sample_graph):
        storage.save_graph(sample_graph)
        stale = build_index(KnowledgeGraph.build([Entity("Alice", "robot")]))
        memory_path.write_text(render(sample_graph, stale))
        problems = storage.verify_index()
        assert "entity missing from index: Bob" in problems

    def test_reports_legacy_and_missing(self, storage, memory_path, sample_graph, legacy_text):
        assert storage.verify_index()[0].startswith("memory file does not exist")
        memory_path.write_text(legacy_text(sample_graph))
        assert storage.verify_index() == ["no index section (legacy format)"]
        assert not has_index_section(memory_path.read_text())

    def test_index_metadata_in_file(self, storage, memory_path, sample_graph):
        storage.save_graph(sample_graph)
        meta = json.loads(index_payload(memory_path.read_text()))["metadata"]
        assert meta["entityCount"] == 4
        assert meta["relationCount"] == 5
        assert meta["compressionEnabled"] is False
