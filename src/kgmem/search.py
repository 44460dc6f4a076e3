"""Query parsing and filtering for search_nodes.

Three mutually exclusive modes, picked per query:

    type Person                 entities of exactly that type (type index)
    relations X / from X / to X / type R
                                relation-first: filter relations, then take
                                the entities at their endpoints
    alpha beta                  free terms, OR-ed: an entity matches if any
                                term is a substring of its name, type or an
                                observation (case-insensitive)

A bare leading "type <T>" is an entity-type query. As soon as any other
relation keyword appears, every keyword (a leading "type" included) is read
as a relation condition, and the conditions are AND-ed.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from kgmem.models import Entity, KnowledgeGraph

if TYPE_CHECKING:
    from kgmem.index import GraphIndex

_TOKEN_RE = re.compile(r"\b(relations|from|to|type)\s+(\S+)", re.IGNORECASE)


@dataclass
class SearchQuery:
    terms: list[str] = field(default_factory=list)
    entity_type: str | None = None
    # Relation-first conditions
    related: str | None = None         # relations X: X at either end
    source: str | None = None          # from X
    target: str | None = None          # to X
    relation_type: str | None = None   # type R: substring, case-insensitive

    @property
    def relation_first(self) -> bool:
        return any(v is not None for v in (self.related, self.source, self.target, self.relation_type))


def parse_query(query: str) -> SearchQuery:
    text = query.strip()
    tokens = list(_TOKEN_RE.finditer(text))

    if len(tokens) == 1 and tokens[0].start() == 0 and tokens[0].group(1).lower() == "type":
        return SearchQuery(entity_type=text[tokens[0].start(2):].strip())

    if tokens:
        conditions: dict[str, str] = {}
        for m in tokens:
            conditions.setdefault(m.group(1).lower(), m.group(2))
        return SearchQuery(
            related=conditions.get("relations"),
            source=conditions.get("from"),
            target=conditions.get("to"),
            relation_type=conditions.get("type"),
        )

    return SearchQuery(terms=text.split())


def entity_matches(entity: Entity, term: str) -> bool:
    t = term.lower()
    return (
        t in entity.name.lower()
        or t in entity.entity_type.lower()
        or any(t in o.lower() for o in entity.observations)
    )


def search(graph: KnowledgeGraph, index: GraphIndex, query: str | SearchQuery) -> KnowledgeGraph:
    """Run query against graph; index serves the entity-type mode."""
    q = parse_query(query) if isinstance(query, str) else query

    if q.entity_type is not None:
        return graph.subgraph(index.names_of_type(q.entity_type))

    if q.relation_first:
        return _relation_first(graph, q)

    if not q.terms:
        return KnowledgeGraph()
    matched = [e.name for e in graph.entities.values() if any(entity_matches(e, t) for t in q.terms)]
    return graph.subgraph(matched)


def _relation_first(graph: KnowledgeGraph, q: SearchQuery) -> KnowledgeGraph:
    relations = graph.relations
    if q.related is not None:
        relations = [r for r in relations if r.touches(q.related)]
    if q.source is not None:
        relations = [r for r in relations if r.source == q.source]
    if q.target is not None:
        relations = [r for r in relations if r.target == q.target]
    if q.relation_type is not None:
        rt = q.relation_type.lower()
        relations = [r for r in relations if rt in r.relation_type.lower()]

    names = {r.source for r in relations} | {r.target for r in relations}
    entities = {n: e for n, e in graph.entities.items() if n in names}
    return KnowledgeGraph(entities=entities, relations=list(relations))
