"""Knowledge graph memory persisted to one flat file with an embedded index.

File layout:
    ===INDEX_START===
    {...}                   # derived summary index (fully reconstructable)
    ===INDEX_END===
    ===DATA_START===
    {"type":"entity", ...}  # one record per line: the source of truth
    {"type":"relation", ...}

Files without the index section (plain record lines) are the legacy format
and are migrated on first load. A missing or unparseable index is rebuilt
from the data section; a bad record line is skipped with a warning.

Every mutation rewrites the whole file (tmp file + rename) with an index
derived from the graph being written, so index and data never diverge.
"""

from kgmem.config import KGMemConfig, init_config, load_config
from kgmem.errors import EntityNotFoundError, KGMemError, StorageIOError
from kgmem.index import GraphIndex
from kgmem.manager import KnowledgeGraphManager
from kgmem.models import Entity, KnowledgeGraph, Relation
from kgmem.storage import StorageManager

__all__ = [
    "Entity",
    "EntityNotFoundError",
    "GraphIndex",
    "KGMemConfig",
    "KGMemError",
    "KnowledgeGraph",
    "KnowledgeGraphManager",
    "Relation",
    "StorageIOError",
    "StorageManager",
    "init_config",
    "load_config",
]
