"""StorageManager: one memory file, its cached index, and every write to it.

Read path:
    load_index()       cached index, or parse / migrate / rebuild as needed
    load_full_graph()  the graph parsed from the data section
    get_entity_by_name(), get_entities_by_type(), get_relations_by_type(),
    search_entities_by_name()
                       index narrows the candidate keys, data supplies records

Write path:
    save_graph(graph)  the only writer: derive index, render, atomic replace
    apply(edit)        load -> edit -> save (skipped when nothing changed)

The index is fully re-derived on every save; there is no incremental update.
Every public method holds the instance lock, so one StorageManager never
interleaves a read with another caller's write. Nothing guards against a
second process writing the same file; the cache is dropped whenever the
file's (mtime, size) no longer matches what this instance last saw.
"""

from __future__ import annotations

import contextlib
import fcntl
import logging
import os
import threading
from pathlib import Path
from typing import TYPE_CHECKING, TypeVar

from kgmem.errors import IndexFormatError, StorageIOError
from kgmem.index import GraphIndex, build_index, diff_indexes, empty_index, parse_index
from kgmem.layout import has_index_section, index_payload, parse_records, records_text, render
from kgmem.models import KnowledgeGraph

if TYPE_CHECKING:
    from collections.abc import Callable

    from kgmem.models import Entity, Relation

logger = logging.getLogger("kgmem.storage")

T = TypeVar("T")


class StorageManager:
    """Index-first storage for a single memory file."""

    def __init__(self, file_path: Path | str) -> None:
        self._path = Path(file_path)
        self._index: GraphIndex = empty_index()
        self._loaded = False
        self._signature: tuple[int, int] | None = None
        self.lock = threading.RLock()

    # ------------------------------------------------------------------
    # Path / cache state
    # ------------------------------------------------------------------

    @property
    def file_path(self) -> Path:
        return self._path

    def set_file_path(self, path: Path | str) -> None:
        """Point at another file. The cached index belongs to the old one."""
        with self.lock:
            self._path = Path(path)
            self.invalidate()

    @property
    def is_loaded(self) -> bool:
        return self._loaded

    def invalidate(self) -> None:
        """Forget the cached index; the next read goes back to the file."""
        with self.lock:
            self._index = empty_index()
            self._loaded = False
            self._signature = None

    # ------------------------------------------------------------------
    # File access
    # ------------------------------------------------------------------

    def _io_failure(self, action: str, exc: OSError | UnicodeError) -> StorageIOError:
        logger.error("failed to %s %s: %s", action, self._path, exc)
        self.invalidate()
        return StorageIOError(f"Failed to {action} memory file {self._path}: {exc}")

    def _stat_signature(self) -> tuple[int, int] | None:
        try:
            st = self._path.stat()
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise self._io_failure("stat", exc) from exc
        return (st.st_mtime_ns, st.st_size)

    def _read_text(self) -> str | None:
        """File content, or None when the file does not exist."""
        try:
            return self._path.read_text(encoding="utf-8", errors="replace")
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise self._io_failure("read", exc) from exc

    def _write_text(self, text: str) -> None:
        """Write to a sibling tmp file under flock, fsync, then rename over the target.

        Text that cannot be encoded (lone surrogates) fails like a disk error.
        """
        tmp = self._path.with_name(self._path.name + ".tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with tmp.open("w", encoding="utf-8") as f:
                fcntl.flock(f, fcntl.LOCK_EX)
                f.write(text)
                f.flush()
                os.fsync(f.fileno())
            tmp.replace(self._path)
        except (OSError, UnicodeEncodeError) as exc:
            with contextlib.suppress(OSError):
                tmp.unlink()
            raise self._io_failure("write", exc) from exc

    # ------------------------------------------------------------------
    # Index
    # ------------------------------------------------------------------

    def load_index(self) -> GraphIndex:
        """Return the index, loading, migrating or rebuilding it as needed.

        - no file: an empty graph is written and its index returned
        - no index marker: legacy records, migrated to the indexed layout
        - unusable index payload: rebuilt from the data section
        """
        with self.lock:
            signature = self._stat_signature()
            if self._loaded and signature is not None and signature == self._signature:
                return self._index

            text = self._read_text()
            if text is None:
                logger.info("memory file %s does not exist, creating it", self._path)
                return self.save_graph(KnowledgeGraph())

            if not has_index_section(text):
                return self._migrate_legacy(text)

            try:
                index = parse_index(index_payload(text))
            except IndexFormatError as exc:
                logger.warning("invalid index in %s (%s), rebuilding from data", self._path, exc)
                return self._rebuild_from_text(text)

            self._index = index
            self._loaded = True
            self._signature = signature
            return index

    def rebuild_index(self) -> GraphIndex:
        """Re-derive the index from the data section and rewrite the file."""
        with self.lock:
            text = self._read_text()
            if text is None:
                return self.save_graph(KnowledgeGraph())
            return self._rebuild_from_text(text)

    def _rebuild_from_text(self, text: str) -> GraphIndex:
        graph = parse_records(records_text(text))
        logger.info(
            "rebuilding index for %s: %d entities, %d relations",
            self._path, len(graph.entities), len(graph.relations),
        )
        return self.save_graph(graph)

    def _migrate_legacy(self, text: str) -> GraphIndex:
        graph = parse_records(text)
        logger.info(
            "migrating legacy memory file %s: %d entities, %d relations",
            self._path, len(graph.entities), len(graph.relations),
        )
        return self.save_graph(graph)

    def verify_index(self) -> list[str]:
        """Compare the stored index with one derived from the data. Read-only.

        Returns a list of discrepancies; empty means the two agree.
        """
        with self.lock:
            text = self._read_text()
            if text is None:
                return [f"memory file does not exist: {self._path}"]
            if not has_index_section(text):
                return ["no index section (legacy format)"]
            try:
                stored = parse_index(index_payload(text))
            except IndexFormatError as exc:
                return [f"unusable index: {exc}"]
            derived = build_index(parse_records(records_text(text)))
            return diff_indexes(stored, derived)

    # ------------------------------------------------------------------
    # Graph
    # ------------------------------------------------------------------

    def load_full_graph(self) -> KnowledgeGraph:
        """Parse every record in the data section. Bad lines are skipped."""
        with self.lock:
            self.load_index()
            text = self._read_text()
            if text is None:
                return KnowledgeGraph()
            return parse_records(records_text(text))

    def save_graph(self, graph: KnowledgeGraph) -> GraphIndex:
        """Write graph and its freshly derived index. The only write path."""
        with self.lock:
            index = build_index(graph)
            self._write_text(render(graph, index))
            self._index = index
            self._loaded = True
            self._signature = self._stat_signature()
            return index

    def apply(self, edit: Callable[[KnowledgeGraph], tuple[KnowledgeGraph, T]]) -> T:
        """Load the graph, run edit on it, save the result if it changed.

        edit returns (new_graph, result); result is passed back to the caller.
        An exception from edit leaves the file untouched.
        """
        with self.lock:
            graph = self.load_full_graph()
            updated, result = edit(graph)
            if updated != graph:
                self.save_graph(updated)
            return result

    # ------------------------------------------------------------------
    # Point lookups (index for candidate keys, data for content)
    # ------------------------------------------------------------------

    def get_entity_by_name(self, name: str) -> Entity | None:
        with self.lock:
            if name not in self.load_index().entities:
                return None
            return self.load_full_graph().get(name)

    def get_entities_by_type(self, entity_type: str) -> list[Entity]:
        with self.lock:
            names = self.load_index().names_of_type(entity_type)
            if not names:
                return []
            graph = self.load_full_graph()
            return [e for e in graph.entities.values() if e.name in names]

    def get_relations_by_type(self, relation_type: str) -> list[Relation]:
        with self.lock:
            pairs = self.load_index().pairs_of_type(relation_type)
            if not pairs:
                return []
            graph = self.load_full_graph()
            return [
                r for r in graph.relations
                if r.relation_type == relation_type and (r.source, r.target) in pairs
            ]

    def search_entities_by_name(self, query: str) -> list[Entity]:
        with self.lock:
            names = set(self.load_index().names_matching(query))
            if not names:
                return []
            graph = self.load_full_graph()
            return [e for e in graph.entities.values() if e.name in names]

    # ------------------------------------------------------------------
    # Mutation primitives
    # ------------------------------------------------------------------

    def upsert_entity(self, entity: Entity) -> None:
        self.apply(lambda g: (g.with_entity(entity), None))

    def upsert_relation(self, relation: Relation) -> None:
        """Add relation unless the identical triple is already stored."""
        self.apply(lambda g: (g.with_relation(relation), None))

    def delete_entity(self, name: str) -> None:
        """Remove the entity and every relation that starts or ends at it."""
        self.apply(lambda g: (g.without_entity(name), None))

    def delete_relation(self, relation: Relation) -> None:
        self.apply(lambda g: (g.without_relation(relation), None))
