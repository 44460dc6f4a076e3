"""On-disk layout of a memory file.

    ===INDEX_START===
    <index payload, see kgmem.index>
    ===INDEX_END===
    ===DATA_START===
    {"type":"entity", "name":..., "entityType":..., "observations":[...]}
    {"type":"relation", "from":..., "to":..., "relationType":...}

A file without INDEX_MARKER_START is the legacy format: only the record
lines, no markers. Pure text in, text out: no file access here.
"""

from __future__ import annotations

import json
import logging
import re
from typing import TYPE_CHECKING

from kgmem.errors import IndexFormatError, RecordFormatError
from kgmem.models import Entity, KnowledgeGraph, Relation

if TYPE_CHECKING:
    from kgmem.index import GraphIndex

logger = logging.getLogger("kgmem.layout")

INDEX_MARKER_START = "===INDEX_START==="
INDEX_MARKER_END = "===INDEX_END==="
DATA_MARKER_START = "===DATA_START==="


def _marker_re(marker: str) -> re.Pattern[str]:
    # A marker only counts on a line of its own; record lines start with "{".
    return re.compile(r"^" + re.escape(marker) + r"[ \t]*\r?$", re.MULTILINE)


_INDEX_START_RE = _marker_re(INDEX_MARKER_START)
_INDEX_END_RE = _marker_re(INDEX_MARKER_END)
_DATA_START_RE = _marker_re(DATA_MARKER_START)


def has_index_section(text: str) -> bool:
    return _INDEX_START_RE.search(text) is not None


def index_payload(text: str) -> str:
    """Text between the index markers. Raises IndexFormatError on bad bounds."""
    start = _INDEX_START_RE.search(text)
    if start is None:
        msg = "index start marker missing"
        raise IndexFormatError(msg)
    end = _INDEX_END_RE.search(text, start.end())
    if end is None:
        msg = "index end marker missing or before the start marker"
        raise IndexFormatError(msg)
    return text[start.end():end.start()].strip()


def data_section(text: str) -> str | None:
    """Everything after the data marker, or None when there is no marker."""
    m = _DATA_START_RE.search(text)
    if m is None:
        return None
    return text[m.end():]


def records_text(text: str) -> str:
    """Record lines of a file: the data section, or the whole legacy file."""
    data = data_section(text)
    return text if data is None else data


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


def parse_record(line: str) -> Entity | Relation | None:
    """Parse one data line. Unknown discriminators yield None."""
    try:
        obj = json.loads(line)
    except json.JSONDecodeError as exc:
        msg = f"not JSON: {exc}"
        raise RecordFormatError(msg) from exc
    if not isinstance(obj, dict):
        msg = "record is not a JSON object"
        raise RecordFormatError(msg)

    kind = obj.get("type")
    fields = {k: v for k, v in obj.items() if k != "type"}
    if kind == "entity":
        return Entity.from_dict(fields)
    if kind == "relation":
        return Relation.from_dict(fields)
    return None


def parse_records(text: str) -> KnowledgeGraph:
    """Parse record lines into a graph, skipping (and logging) bad lines."""
    entities: list[Entity] = []
    relations: list[Relation] = []
    # "\n" only: U+2028 and friends may appear unescaped inside a record
    for lineno, line in enumerate(text.split("\n"), start=1):
        line = line.strip()
        if not line:
            continue
        try:
            record = parse_record(line)
        except RecordFormatError as exc:
            logger.warning("skipping record on line %d: %s", lineno, exc)
            continue
        if isinstance(record, Entity):
            entities.append(record)
        elif isinstance(record, Relation):
            relations.append(record)
    return KnowledgeGraph.build(entities, relations)


def record_lines(graph: KnowledgeGraph) -> list[str]:
    lines = [json.dumps({"type": "entity", **e.to_dict()}, ensure_ascii=False) for e in graph.entities.values()]
    lines += [json.dumps({"type": "relation", **r.to_dict()}, ensure_ascii=False) for r in graph.relations]
    return lines


def render(graph: KnowledgeGraph, index: GraphIndex) -> str:
    """Full file content: index section, then data section."""
    parts = [
        INDEX_MARKER_START,
        index.to_json(),
        INDEX_MARKER_END,
        DATA_MARKER_START,
        *record_lines(graph),
    ]
    return "\n".join(parts) + "\n"
