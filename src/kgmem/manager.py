"""KnowledgeGraphManager: the operations adapters call.

Each mutating call is a single load -> edit -> save under the storage lock
and reports what actually changed. The strictness differs per operation:

    create_entities / create_relations   existing items silently skipped
    add_observations                     unknown entity -> EntityNotFoundError
    delete_*                             unknown items silently skipped
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from kgmem.models import Entity, KnowledgeGraph, Relation
from kgmem.search import search
from kgmem.storage import StorageManager

if TYPE_CHECKING:
    from collections.abc import Iterable
    from pathlib import Path

    from kgmem.index import GraphIndex

logger = logging.getLogger("kgmem.manager")

VERSION = "2.0.0-index"


class KnowledgeGraphManager:
    def __init__(self, file_path: Path | str, storage: StorageManager | None = None) -> None:
        self.storage = storage or StorageManager(file_path)

    @property
    def file_path(self) -> Path:
        return self.storage.file_path

    def set_file_path(self, path: Path | str) -> None:
        logger.info("memory file changed to %s", path)
        self.storage.set_file_path(path)

    def health(self) -> dict[str, Any]:
        return {
            "status": "ok",
            "memoryFilePath": str(self.file_path),
            "indexSupport": True,
            "version": VERSION,
        }

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def read_index(self) -> GraphIndex:
        return self.storage.load_index()

    def read_graph(self) -> KnowledgeGraph:
        logger.info("read_graph loads the whole graph; read_index plus targeted lookups is cheaper")
        return self.storage.load_full_graph()

    def expand_entity(self, name: str) -> Entity | None:
        return self.storage.get_entity_by_name(name)

    def get_entities_by_type(self, entity_type: str) -> list[Entity]:
        return self.storage.get_entities_by_type(entity_type)

    def get_relations_by_type(self, relation_type: str) -> list[Relation]:
        return self.storage.get_relations_by_type(relation_type)

    def search_nodes(self, query: str) -> KnowledgeGraph:
        with self.storage.lock:
            index = self.storage.load_index()
            return search(self.storage.load_full_graph(), index, query)

    def open_nodes(self, names: Iterable[str]) -> KnowledgeGraph:
        """Named entities (misses dropped, request order kept) plus induced relations."""
        graph = self.storage.load_full_graph()
        found = [n for n in dict.fromkeys(names) if n in graph]
        return KnowledgeGraph(
            entities={n: graph.entities[n] for n in found},
            relations=graph.induced_relations(found),
        )

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_entities(self, entities: Iterable[Entity]) -> list[Entity]:
        """Store entities with new names; returns exactly those."""
        items = list(entities)
        return self.storage.apply(lambda g: g.add_entities(items))

    def create_relations(self, relations: Iterable[Relation]) -> list[Relation]:
        """Store triples not already present; returns exactly those."""
        items = list(relations)
        return self.storage.apply(lambda g: g.add_relations(items))

    def add_observations(self, additions: Iterable[tuple[str, Iterable[str]]]) -> list[dict[str, Any]]:
        """Append new observations per entity.

        Returns [{"entityName", "addedObservations"}] in input order. If any
        entity is missing, EntityNotFoundError is raised and nothing is saved.
        """
        items = [(name, list(contents)) for name, contents in additions]

        def edit(graph: KnowledgeGraph) -> tuple[KnowledgeGraph, list[dict[str, Any]]]:
            results = []
            for name, contents in items:
                graph, added = graph.add_observations(name, contents)
                results.append({"entityName": name, "addedObservations": added})
            return graph, results

        return self.storage.apply(edit)

    def delete_entities(self, names: Iterable[str]) -> None:
        items = list(names)

        def edit(graph: KnowledgeGraph) -> tuple[KnowledgeGraph, None]:
            for name in items:
                graph = graph.without_entity(name)
            return graph, None

        self.storage.apply(edit)

    def delete_observations(self, deletions: Iterable[tuple[str, Iterable[str]]]) -> None:
        items = [(name, list(observations)) for name, observations in deletions]

        def edit(graph: KnowledgeGraph) -> tuple[KnowledgeGraph, None]:
            for name, observations in items:
                graph = graph.remove_observations(name, observations)
            return graph, None

        self.storage.apply(edit)

    def delete_relations(self, relations: Iterable[Relation]) -> None:
        items = list(relations)

        def edit(graph: KnowledgeGraph) -> tuple[KnowledgeGraph, None]:
            for relation in items:
                graph = graph.without_relation(relation)
            return graph, None

        self.storage.apply(edit)
