"""Summary index: a derived, cacheable projection of a KnowledgeGraph.

The index is never authoritative. build_index() is the only way one is
derived; parse_index() merely reads back what an earlier build_index() wrote
and rejects anything that does not look like it.

Payload layout (maps as [key, value] pair arrays, sets as sorted arrays):

    {
      "metadata": {"version", "entityCount", "relationCount",
                   "lastUpdated", "compressionEnabled"},
      "entityIndices": [[name, {"name", "entityType", "observationCount",
                                "relationsFrom": [{"relationType", "to"}],
                                "relationsTo": [{"relationType", "from"}],
                                "filePosition"}], ...],
      "typeIndices": [[entityType, [name, ...]], ...],
      "relationIndices": [[relationType, [{"from", "to"}, ...]], ...]
    }
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from kgmem.errors import IndexFormatError

if TYPE_CHECKING:
    from kgmem.models import KnowledgeGraph

INDEX_VERSION = "2.0.0"


@dataclass
class IndexMetadata:
    version: str = INDEX_VERSION
    entity_count: int = 0
    relation_count: int = 0
    # When the derivation ran, not what it derived: excluded from equality.
    last_updated: str = field(default="", compare=False)
    compression_enabled: bool = False


@dataclass
class EntityIndex:
    """Per-entity summary. Adjacency lists mirror the relation set."""

    name: str
    entity_type: str
    observation_count: int = 0
    relations_from: list[tuple[str, str]] = field(default_factory=list)  # (relationType, to)
    relations_to: list[tuple[str, str]] = field(default_factory=list)    # (relationType, from)
    file_position: int = 0


@dataclass
class GraphIndex:
    metadata: IndexMetadata = field(default_factory=IndexMetadata)
    entities: dict[str, EntityIndex] = field(default_factory=dict)
    types: dict[str, set[str]] = field(default_factory=dict)
    relation_types: dict[str, set[tuple[str, str]]] = field(default_factory=dict)

    # ------------------------------------------------------------------
    # Candidate-key lookups
    # ------------------------------------------------------------------

    def names_of_type(self, entity_type: str) -> set[str]:
        return set(self.types.get(entity_type, ()))

    def pairs_of_type(self, relation_type: str) -> set[tuple[str, str]]:
        return set(self.relation_types.get(relation_type, ()))

    def names_matching(self, query: str) -> list[str]:
        """Entity names containing query, case-insensitively."""
        q = query.lower()
        return [name for name in self.entities if q in name.lower()]

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_payload(self) -> dict[str, Any]:
        m = self.metadata
        return {
            "metadata": {
                "version": m.version,
                "entityCount": m.entity_count,
                "relationCount": m.relation_count,
                "lastUpdated": m.last_updated,
                "compressionEnabled": m.compression_enabled,
            },
            "entityIndices": [[name, _entity_to_dict(e)] for name, e in self.entities.items()],
            "typeIndices": [[t, sorted(names)] for t, names in self.types.items()],
            "relationIndices": [
                [rt, [{"from": f, "to": t} for f, t in sorted(pairs)]]
                for rt, pairs in self.relation_types.items()
            ],
        }

    def to_json(self) -> str:
        return json.dumps(self.to_payload(), indent=2, ensure_ascii=False)

    def to_public_dict(self) -> dict[str, Any]:
        """Same content as the payload, with maps rendered as JSON objects."""
        payload = self.to_payload()
        return {
            "metadata": payload["metadata"],
            "entityIndices": dict(payload["entityIndices"]),
            "typeIndices": dict(payload["typeIndices"]),
            "relationIndices": dict(payload["relationIndices"]),
        }


def _entity_to_dict(e: EntityIndex) -> dict[str, Any]:
    return {
        "name": e.name,
        "entityType": e.entity_type,
        "observationCount": e.observation_count,
        "relationsFrom": [{"relationType": rt, "to": to} for rt, to in e.relations_from],
        "relationsTo": [{"relationType": rt, "from": src} for rt, src in e.relations_to],
        "filePosition": e.file_position,
    }


def empty_index() -> GraphIndex:
    return GraphIndex(metadata=IndexMetadata(last_updated=datetime.now(UTC).isoformat()))


def build_index(graph: KnowledgeGraph) -> GraphIndex:
    """Derive the index for graph. The single source of every GraphIndex."""
    index = empty_index()
    index.metadata.entity_count = len(graph.entities)
    index.metadata.relation_count = len(graph.relations)

    for position, entity in enumerate(graph.entities.values()):
        index.entities[entity.name] = EntityIndex(
            name=entity.name,
            entity_type=entity.entity_type,
            observation_count=len(entity.observations),
            file_position=position,
        )
        index.types.setdefault(entity.entity_type, set()).add(entity.name)

    for rel in graph.relations:
        src = index.entities.get(rel.source)
        if src is not None:
            src.relations_from.append((rel.relation_type, rel.target))
        dst = index.entities.get(rel.target)
        if dst is not None:
            dst.relations_to.append((rel.relation_type, rel.source))
        index.relation_types.setdefault(rel.relation_type, set()).add((rel.source, rel.target))

    return index


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def parse_index(text: str) -> GraphIndex:
    """Parse an index payload. Raises IndexFormatError on anything unusable.

    Besides shape checks, the metadata counts must agree with the entries
    themselves (entity entries, and relation pairs summed over types), so a
    hand-edited or half-updated payload is rejected instead of served.
    """
    try:
        raw = json.loads(text)
    except json.JSONDecodeError as exc:
        msg = f"index payload is not valid JSON: {exc}"
        raise IndexFormatError(msg) from exc
    if not isinstance(raw, dict):
        msg = "index payload is not a JSON object"
        raise IndexFormatError(msg)

    try:
        index = GraphIndex(
            metadata=_parse_metadata(raw["metadata"]),
            entities={name: _parse_entity(name, e) for name, e in raw["entityIndices"]},
            types={t: set(_strings(names)) for t, names in raw["typeIndices"]},
            relation_types={
                rt: {(_string(p["from"]), _string(p["to"])) for p in pairs}
                for rt, pairs in raw["relationIndices"]
            },
        )
    except (AttributeError, KeyError, TypeError, ValueError) as exc:
        msg = f"index payload is malformed: {exc!r}"
        raise IndexFormatError(msg) from exc

    m = index.metadata
    if m.entity_count != len(index.entities):
        msg = f"entityCount {m.entity_count} != {len(index.entities)} entity entries"
        raise IndexFormatError(msg)
    n_pairs = sum(len(p) for p in index.relation_types.values())
    if m.relation_count != n_pairs:
        msg = f"relationCount {m.relation_count} != {n_pairs} relation pairs"
        raise IndexFormatError(msg)
    return index


def _string(v: Any) -> str:
    if not isinstance(v, str):
        msg = f"expected string, got {type(v).__name__}"
        raise TypeError(msg)
    return v


def _strings(v: Any) -> list[str]:
    if not isinstance(v, list):
        msg = f"expected list, got {type(v).__name__}"
        raise TypeError(msg)
    return [_string(x) for x in v]


def _count(v: Any) -> int:
    if isinstance(v, bool) or not isinstance(v, int) or v < 0:
        msg = f"expected non-negative integer, got {v!r}"
        raise ValueError(msg)
    return v


def _parse_metadata(d: dict[str, Any]) -> IndexMetadata:
    return IndexMetadata(
        version=_string(d["version"]),
        entity_count=_count(d["entityCount"]),
        relation_count=_count(d["relationCount"]),
        last_updated=_string(d.get("lastUpdated", "")),
        compression_enabled=bool(d.get("compressionEnabled", False)),
    )


def _parse_entity(key: Any, d: dict[str, Any]) -> EntityIndex:
    name = _string(d["name"])
    if name != key:
        msg = f"entity entry {key!r} describes {name!r}"
        raise ValueError(msg)
    # Files written before 2.0.0 used toEntity / fromEntity.
    return EntityIndex(
        name=name,
        entity_type=_string(d["entityType"]),
        observation_count=_count(d["observationCount"]),
        relations_from=[
            (_string(r["relationType"]), _string(r["to"] if "to" in r else r["toEntity"]))
            for r in d.get("relationsFrom", [])
        ],
        relations_to=[
            (_string(r["relationType"]), _string(r["from"] if "from" in r else r["fromEntity"]))
            for r in d.get("relationsTo", [])
        ],
        file_position=_count(d.get("filePosition", 0)),
    )


def diff_indexes(stored: GraphIndex, derived: GraphIndex) -> list[str]:
    """Human-readable differences between a stored index and a derived one."""
    problems: list[str] = []
    if stored.metadata != derived.metadata:
        problems.append(f"metadata differs: stored={stored.metadata} derived={derived.metadata}")
    for name in stored.entities.keys() - derived.entities.keys():
        problems.append(f"index entry without entity: {name}")
    for name in derived.entities.keys() - stored.entities.keys():
        problems.append(f"entity missing from index: {name}")
    for name in stored.entities.keys() & derived.entities.keys():
        if stored.entities[name] != derived.entities[name]:
            problems.append(f"entity entry differs: {name}")
    if stored.types != derived.types:
        problems.append("type index differs")
    if stored.relation_types != derived.relation_types:
        problems.append("relation index differs")
    return sorted(problems)
