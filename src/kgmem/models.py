"""Graph data model: entities, relations and the knowledge graph value.

KnowledgeGraph is treated as a value: every edit returns a new graph and
leaves the receiver untouched. Entities are keyed by name, relations by
their (from, to, relationType) triple.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any

from kgmem.errors import EntityNotFoundError, RecordFormatError

if TYPE_CHECKING:
    from collections.abc import Iterable


def _dedupe(items: Iterable[str]) -> list[str]:
    """Drop repeated strings, keeping the first occurrence."""
    return list(dict.fromkeys(items))


@dataclass
class Entity:
    """A named, typed node with an ordered list of observations."""

    name: str
    entity_type: str
    observations: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Entity:
        name = d.get("name")
        entity_type = d.get("entityType")
        observations = d.get("observations", [])
        if not isinstance(name, str) or not isinstance(entity_type, str):
            msg = "entity record needs string 'name' and 'entityType'"
            raise RecordFormatError(msg)
        if not isinstance(observations, list) or not all(isinstance(o, str) for o in observations):
            msg = f"entity {name!r}: 'observations' must be a list of strings"
            raise RecordFormatError(msg)
        return cls(name=name, entity_type=entity_type, observations=_dedupe(observations))

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "entityType": self.entity_type,
            "observations": list(self.observations),
        }


@dataclass(frozen=True)
class Relation:
    """A directed, typed edge. The triple itself is the identity."""

    source: str
    target: str
    relation_type: str

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Relation:
        source, target, relation_type = d.get("from"), d.get("to"), d.get("relationType")
        if not all(isinstance(v, str) for v in (source, target, relation_type)):
            msg = "relation record needs string 'from', 'to' and 'relationType'"
            raise RecordFormatError(msg)
        return cls(source=source, target=target, relation_type=relation_type)  # type: ignore[arg-type]

    def to_dict(self) -> dict[str, Any]:
        return {"from": self.source, "to": self.target, "relationType": self.relation_type}

    def touches(self, name: str) -> bool:
        return name in (self.source, self.target)


@dataclass
class KnowledgeGraph:
    """Entities keyed by name plus an insertion-ordered set of relations."""

    entities: dict[str, Entity] = field(default_factory=dict)
    relations: list[Relation] = field(default_factory=list)

    @classmethod
    def build(cls, entities: Iterable[Entity] = (), relations: Iterable[Relation] = ()) -> KnowledgeGraph:
        """Build a graph, collapsing duplicate names (last wins) and duplicate triples."""
        by_name: dict[str, Entity] = {}
        for e in entities:
            by_name[e.name] = e
        return cls(entities=by_name, relations=list(dict.fromkeys(relations)))

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def __contains__(self, name: object) -> bool:
        return name in self.entities

    def get(self, name: str) -> Entity | None:
        return self.entities.get(name)

    def has_relation(self, relation: Relation) -> bool:
        return relation in self.relations

    def induced_relations(self, names: Iterable[str]) -> list[Relation]:
        """Relations whose both endpoints are in names."""
        keep = set(names)
        return [r for r in self.relations if r.source in keep and r.target in keep]

    def subgraph(self, names: Iterable[str]) -> KnowledgeGraph:
        """Entities named in names (in graph order) plus their induced relations."""
        keep = set(names)
        entities = {n: e for n, e in self.entities.items() if n in keep}
        return KnowledgeGraph(entities=entities, relations=self.induced_relations(entities))

    # ------------------------------------------------------------------
    # Edits (each returns a new graph)
    # ------------------------------------------------------------------

    def with_entity(self, entity: Entity) -> KnowledgeGraph:
        """Insert or replace an entity. A replaced entity keeps its position."""
        entities = dict(self.entities)
        entities[entity.name] = entity
        return KnowledgeGraph(entities=entities, relations=list(self.relations))

    def with_relation(self, relation: Relation) -> KnowledgeGraph:
        if self.has_relation(relation):
            return self
        return KnowledgeGraph(entities=dict(self.entities), relations=[*self.relations, relation])

    def without_entity(self, name: str) -> KnowledgeGraph:
        """Remove an entity and every relation it is an endpoint of.

        Unknown names are a no-op: dangling relations that mention a name
        that was never an entity are left alone.
        """
        if name not in self.entities:
            return self
        entities = {n: e for n, e in self.entities.items() if n != name}
        return KnowledgeGraph(entities=entities, relations=[r for r in self.relations if not r.touches(name)])

    def without_relation(self, relation: Relation) -> KnowledgeGraph:
        return KnowledgeGraph(
            entities=dict(self.entities),
            relations=[r for r in self.relations if r != relation],
        )

    def add_entities(self, entities: Iterable[Entity]) -> tuple[KnowledgeGraph, list[Entity]]:
        """Add entities whose names are new. Returns (graph, added)."""
        graph = self
        added: list[Entity] = []
        for e in entities:
            if e.name in graph.entities:
                continue
            stored = replace(e, observations=_dedupe(e.observations))
            graph = graph.with_entity(stored)
            added.append(stored)
        return graph, added

    def add_relations(self, relations: Iterable[Relation]) -> tuple[KnowledgeGraph, list[Relation]]:
        """Add triples not already present. Returns (graph, added)."""
        graph = self
        added: list[Relation] = []
        for r in relations:
            if graph.has_relation(r):
                continue
            graph = graph.with_relation(r)
            added.append(r)
        return graph, added

    def add_observations(self, name: str, contents: Iterable[str]) -> tuple[KnowledgeGraph, list[str]]:
        """Append observations not already on the entity. Raises if it is missing."""
        entity = self.entities.get(name)
        if entity is None:
            raise EntityNotFoundError(name)
        existing = set(entity.observations)
        new = [c for c in _dedupe(contents) if c not in existing]
        if not new:
            return self, []
        return self.with_entity(replace(entity, observations=[*entity.observations, *new])), new

    def remove_observations(self, name: str, observations: Iterable[str]) -> KnowledgeGraph:
        """Drop the listed observations. Unknown entities are skipped."""
        entity = self.entities.get(name)
        if entity is None:
            return self
        drop = set(observations)
        return self.with_entity(replace(entity, observations=[o for o in entity.observations if o not in drop]))

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        return {
            "entities": [e.to_dict() for e in self.entities.values()],
            "relations": [r.to_dict() for r in self.relations],
        }
