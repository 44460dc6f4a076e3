"""kgmem CLI: knowledge graph in a single indexed memory file.

Commands:
    kgmem init                  create kgmem.toml and an empty memory file
    kgmem serve                 start stdio MCP server
    kgmem status                index metadata and per-type counts
    kgmem show NAME             dump one entity and its relations
    kgmem search QUERY          search entities / relations
    kgmem reindex               rebuild the index from the data section
    kgmem check                 compare stored index with data (exit 1 on mismatch)
    kgmem migrate SRC [DST]     write an indexed copy of a legacy file
"""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path

import click

from kgmem.config import KGMemConfig, init_config, load_config
from kgmem.errors import KGMemError
from kgmem.manager import KnowledgeGraphManager
from kgmem.migrate import migrate_file

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _load_cfg() -> KGMemConfig:
    try:
        cfg = load_config()
    except Exception as exc:
        raise click.ClickException(str(exc)) from exc
    _setup_logging(cfg.logging.level)
    return cfg


def _setup_logging(level: str) -> None:
    # stderr only: stdout carries MCP responses under `kgmem serve`
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
        stream=sys.stderr,
    )


def _manager(cfg: KGMemConfig) -> KnowledgeGraphManager:
    return KnowledgeGraphManager(cfg.memory_file)


# ---------------------------------------------------------------------------
# Root group
# ---------------------------------------------------------------------------


@click.group()
@click.version_option(package_name="kgmem")
def cli() -> None:
    """kgmem: knowledge graph memory in one indexed file."""


# ---------------------------------------------------------------------------
# kgmem init / serve
# ---------------------------------------------------------------------------


@cli.command()
@click.option("--dir", "root", default=".", show_default=True, help="Project root")
@click.option("--file", "memory_file", default=None, help="Memory file, relative to the project root")
def init(root: str, memory_file: str | None) -> None:
    """Create kgmem.toml and the memory file in the current project."""
    root_path = Path(root).resolve()
    try:
        config_path = init_config(root_path, memory_file=memory_file)
        click.echo(f"Created {config_path}")
    except FileExistsError:
        click.echo("kgmem.toml already exists, skipping init")

    cfg = load_config(root_path)
    cfg.ensure_dirs()
    try:
        index = KnowledgeGraphManager(cfg.memory_file).read_index()
    except KGMemError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Memory file: {cfg.memory_file}")
    click.echo(f"Indexed {index.metadata.entity_count} entities, {index.metadata.relation_count} relations")


@cli.command()
def serve() -> None:
    """Start the stdio MCP server."""
    from kgmem.mcp import run_server

    cfg = _load_cfg()
    cfg.ensure_dirs()
    run_server(cfg.root)


# ---------------------------------------------------------------------------
# kgmem status
# ---------------------------------------------------------------------------


@cli.command()
def status() -> None:
    """Show index metadata and entity counts per type."""
    from rich.console import Console
    from rich.table import Table

    cfg = _load_cfg()
    try:
        index = _manager(cfg).read_index()
    except KGMemError as exc:
        raise click.ClickException(str(exc)) from exc

    console = Console()
    m = index.metadata
    table = Table(title=f"kgmem: {cfg.memory_file.name}", show_header=True, header_style="bold")
    table.add_column("Metric", style="dim", no_wrap=True)
    table.add_column("Value", justify="right")
    table.add_row("Memory file", str(cfg.memory_file))
    table.add_row("Format version", m.version)
    table.add_row("Entities", str(m.entity_count))
    table.add_row("Relations", str(m.relation_count))
    table.add_row("Last updated", m.last_updated or "-")
    console.print(table)

    if index.types:
        types = Table(title="Entity types", show_header=True, header_style="bold")
        types.add_column("Type")
        types.add_column("Entities", justify="right")
        for t, names in sorted(index.types.items(), key=lambda kv: (-len(kv[1]), kv[0])):
            types.add_row(t, str(len(names)))
        console.print(types)

    if index.relation_types:
        rels = Table(title="Relation types", show_header=True, header_style="bold")
        rels.add_column("Type")
        rels.add_column("Relations", justify="right")
        for rt, pairs in sorted(index.relation_types.items(), key=lambda kv: (-len(kv[1]), kv[0])):
            rels.add_row(rt, str(len(pairs)))
        console.print(rels)


# ---------------------------------------------------------------------------
# kgmem show / search
# ---------------------------------------------------------------------------


@cli.command()
@click.argument("name")
@click.option("--json", "as_json", is_flag=True, help="Print the entity as JSON")
def show(name: str, as_json: bool) -> None:
    """Show one entity with its observations and relations."""
    cfg = _load_cfg()
    mgr = _manager(cfg)
    try:
        entity = mgr.expand_entity(name)
        index = mgr.read_index()
    except KGMemError as exc:
        raise click.ClickException(str(exc)) from exc
    if entity is None:
        raise click.ClickException(f'Entity with name "{name}" not found')

    if as_json:
        click.echo(json.dumps(entity.to_dict(), indent=2, ensure_ascii=False))
        return

    click.echo(f"# {entity.name}  type={entity.entity_type}  ●{len(entity.observations)} observations")
    for o in entity.observations:
        click.echo(f"- {o}")
    entry = index.entities.get(name)
    if entry is not None:
        for rt, to in entry.relations_from:
            click.echo(f"  → {rt} {to}")
        for rt, src in entry.relations_to:
            click.echo(f"  ← {rt} {src}")


@cli.command()
@click.argument("query")
def search(query: str) -> None:
    """Search the graph. Prints the matching subgraph as JSON."""
    cfg = _load_cfg()
    try:
        result = _manager(cfg).search_nodes(query)
    except KGMemError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(json.dumps(result.to_dict(), indent=2, ensure_ascii=False))


# ---------------------------------------------------------------------------
# kgmem reindex / check / migrate
# ---------------------------------------------------------------------------


@cli.command()
def reindex() -> None:
    """Rebuild the index from the data section and rewrite the file."""
    cfg = _load_cfg()
    try:
        index = _manager(cfg).storage.rebuild_index()
    except KGMemError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Indexed {index.metadata.entity_count} entities, {index.metadata.relation_count} relations")


@cli.command()
def check() -> None:
    """Verify that the stored index matches the data section."""
    cfg = _load_cfg()
    try:
        problems = _manager(cfg).storage.verify_index()
    except KGMemError as exc:
        raise click.ClickException(str(exc)) from exc
    if not problems:
        click.echo("Index is coherent with data.")
        return
    for p in problems:
        click.echo(f"  {p}", err=True)
    click.echo("Run `kgmem reindex` to rebuild the index.", err=True)
    raise SystemExit(1)


@cli.command()
@click.argument("source", type=click.Path(path_type=Path))
@click.argument("target", required=False, type=click.Path(path_type=Path))
@click.option("--force", is_flag=True, help="Overwrite TARGET if it exists")
def migrate(source: Path, target: Path | None, force: bool) -> None:
    """Write an indexed copy of a legacy memory file (default: SOURCE.indexed)."""
    _setup_logging("WARNING")
    try:
        result = migrate_file(source, target, overwrite=force)
    except FileNotFoundError as exc:
        raise click.ClickException(str(exc)) from exc
    except FileExistsError as exc:
        raise click.ClickException(f"{exc} (use --force to overwrite)") from exc
    except (OSError, KGMemError) as exc:
        raise click.ClickException(str(exc)) from exc

    if result.already_indexed:
        click.echo("File is already in indexed format, no migration needed.")
        if result.target.resolve() != result.source.resolve():
            click.echo(f"Copied file to {result.target}")
        return
    click.echo(f"Found {result.entities} entities and {result.relations} relations")
    click.echo(f"Converted file saved to {result.target}")
