"""Shared fixtures for kgmem tests."""

import pytest

from kgmem.manager import KnowledgeGraphManager
from kgmem.models import Entity, KnowledgeGraph, Relation
from kgmem.storage import StorageManager


@pytest.fixture(autouse=True)
def _no_env_overrides(monkeypatch):
    """Keep the caller's environment from redirecting the memory file."""
    monkeypatch.delenv("MEMORY_FILE_PATH", raising=False)
    monkeypatch.delenv("KGMEM_LOG_LEVEL", raising=False)


@pytest.fixture
def memory_path(tmp_path):
    return tmp_path / "memory.json"


@pytest.fixture
def storage(memory_path):
    return StorageManager(memory_path)


@pytest.fixture
def manager(memory_path):
    return KnowledgeGraphManager(memory_path)


@pytest.fixture
def sample_graph():
    """Three people, one project, and a dangling relation."""
    return KnowledgeGraph.build(
        [
            Entity("Alice", "person", ["likes tea", "works remotely"]),
            Entity("Bob", "person", ["plays chess"]),
            Entity("Carol", "person", []),
            Entity("Apollo", "project", ["launched in 2024"]),
        ],
        [
            Relation("Alice", "Bob", "knows"),
            Relation("Bob", "Alice", "knows"),
            Relation("Alice", "Apollo", "works_on"),
            Relation("Carol", "Apollo", "works_on"),
            Relation("Ghost", "Alice", "haunts"),
        ],
    )


@pytest.fixture
def legacy_text():
    """Render a graph as bare legacy record lines (no index section)."""
    from kgmem.layout import record_lines

    def render(graph: KnowledgeGraph) -> str:
        return "\n".join(record_lines(graph)) + "\n"

    return render
