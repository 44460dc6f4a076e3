"""Offline conversion of a legacy memory file into the indexed layout.

The source file is never modified; the indexed copy goes to a separate
target (default: <source>.indexed). Loading a legacy file through
StorageManager migrates it in place instead.
"""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass
from pathlib import Path

from kgmem.layout import has_index_section, parse_records
from kgmem.storage import StorageManager

logger = logging.getLogger("kgmem.migrate")


@dataclass
class MigrationResult:
    source: Path
    target: Path
    entities: int = 0
    relations: int = 0
    already_indexed: bool = False


def default_target(source: Path) -> Path:
    return source.with_name(source.name + ".indexed")


def migrate_file(source: Path | str, target: Path | str | None = None, *, overwrite: bool = False) -> MigrationResult:
    """Write an indexed copy of source to target.

    Already-indexed sources are copied unchanged. Raises FileNotFoundError
    for a missing source and FileExistsError for an existing target unless
    overwrite is set.
    """
    src = Path(source)
    dst = Path(target) if target else default_target(src)
    if not src.exists():
        msg = f"Source file does not exist: {src}"
        raise FileNotFoundError(msg)
    if dst.exists() and not overwrite and dst.resolve() != src.resolve():
        msg = f"Target already exists: {dst}"
        raise FileExistsError(msg)

    text = src.read_text(encoding="utf-8", errors="replace")
    result = MigrationResult(source=src, target=dst)

    if has_index_section(text):
        logger.info("%s is already in indexed format", src)
        result.already_indexed = True
        if dst.resolve() != src.resolve():
            shutil.copyfile(src, dst)
        return result

    graph = parse_records(text)
    result.entities = len(graph.entities)
    result.relations = len(graph.relations)
    StorageManager(dst).save_graph(graph)
    logger.info("migrated %s -> %s (%d entities, %d relations)", src, dst, result.entities, result.relations)
    return result
