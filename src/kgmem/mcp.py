"""Stdio MCP server for kgmem.

Tools:
    create_entities, create_relations, add_observations
    delete_entities, delete_observations, delete_relations
    read_index                 lightweight: the summary index only
    read_graph                 the whole graph (high context)
    search_nodes(query), open_nodes(names), expand_entity(name)
    get_entities_by_type(entityType), get_relations_by_type(relationType)
    health_check, set_memory_file(path), get_memory_file

Results are JSON text. Requests are handled one at a time, so every tool
call is a complete load -> mutate -> save before the next one is read.

Protocol: JSON-RPC 2.0 over stdin/stdout (Model Context Protocol). Logging goes to stderr.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Any

from kgmem.models import Entity, Relation

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

logger = logging.getLogger("kgmem.mcp")

_VERSION = "2.0.0"

# One JSON-RPC message per line; large create_entities batches exceed the 64 KiB default.
_LINE_LIMIT = 16 * 1024 * 1024

# Tools that may be called without an "arguments" object.
_NO_ARGS_TOOLS = {"health_check", "get_memory_file", "read_graph", "read_index"}


def _string_list(description: str) -> dict[str, Any]:
    return {"type": "array", "items": {"type": "string"}, "description": description}


def _relation_schema() -> dict[str, Any]:
    return {
        "type": "object",
        "properties": {
            "from": {"type": "string", "description": "The name of the entity where the relation starts"},
            "to": {"type": "string", "description": "The name of the entity where the relation ends"},
            "relationType": {"type": "string", "description": "The type of the relation"},
        },
        "required": ["from", "to", "relationType"],
    }


def _object(properties: dict[str, Any], required: list[str] | None = None) -> dict[str, Any]:
    schema: dict[str, Any] = {"type": "object", "properties": properties}
    if required:
        schema["required"] = required
    return schema


def _tool_defs() -> list[dict[str, Any]]:
    return [
        {
            "name": "create_entities",
            "description": "Create multiple new entities in the knowledge graph. Existing names are skipped.",
            "inputSchema": _object({
                "entities": {
                    "type": "array",
                    "items": _object({
                        "name": {"type": "string", "description": "The name of the entity"},
                        "entityType": {"type": "string", "description": "The type of the entity"},
                        "observations": _string_list("Observation contents associated with the entity"),
                    }, ["name", "entityType", "observations"]),
                },
            }, ["entities"]),
        },
        {
            "name": "create_relations",
            "description": (
                "Create multiple new relations between entities in the knowledge graph. "
                "Relations should be in active voice."
            ),
            "inputSchema": _object({
                "relations": {"type": "array", "items": _relation_schema()},
            }, ["relations"]),
        },
        {
            "name": "add_observations",
            "description": "Add new observations to existing entities. Fails if an entity does not exist.",
            "inputSchema": _object({
                "observations": {
                    "type": "array",
                    "items": _object({
                        "entityName": {"type": "string", "description": "The entity to add the observations to"},
                        "contents": _string_list("Observation contents to add"),
                    }, ["entityName", "contents"]),
                },
            }, ["observations"]),
        },
        {
            "name": "delete_entities",
            "description": "Delete multiple entities and their associated relations from the knowledge graph",
            "inputSchema": _object({
                "entityNames": _string_list("Entity names to delete"),
            }, ["entityNames"]),
        },
        {
            "name": "delete_observations",
            "description": "Delete specific observations from entities in the knowledge graph",
            "inputSchema": _object({
                "deletions": {
                    "type": "array",
                    "items": _object({
                        "entityName": {"type": "string", "description": "The entity containing the observations"},
                        "observations": _string_list("Observations to delete"),
                    }, ["entityName", "observations"]),
                },
            }, ["deletions"]),
        },
        {
            "name": "delete_relations",
            "description": "Delete multiple relations from the knowledge graph",
            "inputSchema": _object({
                "relations": {"type": "array", "items": _relation_schema(), "description": "Relations to delete"},
            }, ["relations"]),
        },
        {
            "name": "read_index",
            "description": "Read only the index structure of the knowledge graph (lightweight operation)",
            "inputSchema": _object({}),
        },
        {
            "name": "read_graph",
            "description": "Read the entire knowledge graph (HIGH-CONTEXT OPERATION, use read_index when possible)",
            "inputSchema": _object({}),
        },
        {
            "name": "search_nodes",
            "description": (
                "Search entities by name, type and observation content. Terms are OR-ed. "
                "'type <T>' lists entities of a type; 'relations <X>', 'from <X>', 'to <X>', "
                "'type <R>' filter relations instead."
            ),
            "inputSchema": _object({
                "query": {"type": "string", "description": "The search query"},
            }, ["query"]),
        },
        {
            "name": "expand_entity",
            "description": "Get detailed information about a specific entity by name",
            "inputSchema": _object({
                "name": {"type": "string", "description": "The name of the entity to expand"},
            }, ["name"]),
        },
        {
            "name": "open_nodes",
            "description": "Open specific nodes in the knowledge graph by their names",
            "inputSchema": _object({
                "names": _string_list("Entity names to retrieve"),
            }, ["names"]),
        },
        {
            "name": "get_entities_by_type",
            "description": "Get all entities of a specific type",
            "inputSchema": _object({
                "entityType": {"type": "string", "description": "The type of entities to retrieve"},
            }, ["entityType"]),
        },
        {
            "name": "get_relations_by_type",
            "description": "Get all relations of a specific type",
            "inputSchema": _object({
                "relationType": {"type": "string", "description": "The type of relations to retrieve"},
            }, ["relationType"]),
        },
        {
            "name": "health_check",
            "description": "Check if the server is running and can access its resources",
            "inputSchema": _object({}),
        },
        {
            "name": "set_memory_file",
            "description": "Change the memory file path used for storing the knowledge graph",
            "inputSchema": _object({
                "path": {
                    "type": "string",
                    "description": "New memory file path, absolute or relative to the project root",
                },
            }, ["path"]),
        },
        {
            "name": "get_memory_file",
            "description": "Get the current memory file path used for storing the knowledge graph",
            "inputSchema": _object({}),
        },
    ]


def _dumps(obj: Any) -> str:
    return json.dumps(obj, indent=2, ensure_ascii=False)


class KGMemServer:
    def __init__(self, config_root: Path | None = None) -> None:
        from kgmem.config import load_config
        from kgmem.manager import KnowledgeGraphManager
        self._cfg = load_config(config_root)
        self._cfg.ensure_dirs()
        self.manager = KnowledgeGraphManager(self._cfg.memory_file)

    def _call_create_entities(self, args: dict[str, Any]) -> str:
        entities = [Entity.from_dict(e) for e in args.get("entities", [])]
        created = self.manager.create_entities(entities)
        return _dumps([e.to_dict() for e in created])

    def _call_create_relations(self, args: dict[str, Any]) -> str:
        relations = [Relation.from_dict(r) for r in args.get("relations", [])]
        created = self.manager.create_relations(relations)
        return _dumps([r.to_dict() for r in created])

    def _call_add_observations(self, args: dict[str, Any]) -> str:
        additions = [(o["entityName"], o.get("contents", [])) for o in args.get("observations", [])]
        return _dumps(self.manager.add_observations(additions))

    def _call_delete_entities(self, args: dict[str, Any]) -> str:
        self.manager.delete_entities(args.get("entityNames", []))
        return "Entities deleted successfully"

    def _call_delete_observations(self, args: dict[str, Any]) -> str:
        deletions = [(d["entityName"], d.get("observations", [])) for d in args.get("deletions", [])]
        self.manager.delete_observations(deletions)
        return "Observations deleted successfully"

    def _call_delete_relations(self, args: dict[str, Any]) -> str:
        self.manager.delete_relations(Relation.from_dict(r) for r in args.get("relations", []))
        return "Relations deleted successfully"

    def _call_read_index(self, args: dict[str, Any]) -> str:
        return _dumps(self.manager.read_index().to_public_dict())

    def _call_read_graph(self, args: dict[str, Any]) -> str:
        return _dumps(self.manager.read_graph().to_dict())

    def _call_search_nodes(self, args: dict[str, Any]) -> str:
        return _dumps(self.manager.search_nodes(args.get("query", "")).to_dict())

    def _call_open_nodes(self, args: dict[str, Any]) -> str:
        return _dumps(self.manager.open_nodes(args.get("names", [])).to_dict())

    def _call_expand_entity(self, args: dict[str, Any]) -> str:
        name = args.get("name", "")
        entity = self.manager.expand_entity(name)
        if entity is None:
            return f'Entity with name "{name}" not found'
        return _dumps(entity.to_dict())

    def _call_get_entities_by_type(self, args: dict[str, Any]) -> str:
        entities = self.manager.get_entities_by_type(args.get("entityType", ""))
        return _dumps([e.to_dict() for e in entities])

    def _call_get_relations_by_type(self, args: dict[str, Any]) -> str:
        relations = self.manager.get_relations_by_type(args.get("relationType", ""))
        return _dumps([r.to_dict() for r in relations])

    def _call_health_check(self, args: dict[str, Any]) -> str:
        return _dumps(self.manager.health())

    def _call_set_memory_file(self, args: dict[str, Any]) -> str:
        path = self._cfg.resolve_path(args.get("path", ""))
        path.parent.mkdir(parents=True, exist_ok=True)
        path.touch(exist_ok=True)
        self.manager.set_file_path(path)
        return f"Memory file path changed to: {path}"

    def _call_get_memory_file(self, args: dict[str, Any]) -> str:
        return str(self.manager.file_path)

    def call_tool(self, name: str, arguments: dict[str, Any] | None) -> str:
        dispatch = {
            "create_entities": self._call_create_entities,
            "create_relations": self._call_create_relations,
            "add_observations": self._call_add_observations,
            "delete_entities": self._call_delete_entities,
            "delete_observations": self._call_delete_observations,
            "delete_relations": self._call_delete_relations,
            "read_index": self._call_read_index,
            "read_graph": self._call_read_graph,
            "search_nodes": self._call_search_nodes,
            "open_nodes": self._call_open_nodes,
            "expand_entity": self._call_expand_entity,
            "get_entities_by_type": self._call_get_entities_by_type,
            "get_relations_by_type": self._call_get_relations_by_type,
            "health_check": self._call_health_check,
            "set_memory_file": self._call_set_memory_file,
            "get_memory_file": self._call_get_memory_file,
        }
        if name not in dispatch:
            msg = f"Unknown tool: {name}"
            raise ValueError(msg)
        if arguments is None and name not in _NO_ARGS_TOOLS:
            msg = f"No arguments provided for tool: {name}"
            raise ValueError(msg)
        return dispatch[name](arguments or {})


async def _read_messages(reader: asyncio.StreamReader) -> AsyncIterator[dict[str, Any]]:
    """JSON-RPC messages from reader, one per line, until EOF.

    Lines over the reader's limit, non-JSON lines and non-object payloads
    are logged and skipped.
    """
    while True:
        try:
            line = await reader.readline()
        except (asyncio.IncompleteReadError, EOFError):
            return
        except ValueError:
            # readline drops the oversized line (or what it buffered of it)
            logger.warning("ignoring input line over the size limit")
            continue
        if not line:
            return
        try:
            msg = json.loads(line)
        except json.JSONDecodeError:
            logger.warning("ignoring non-JSON input line")
            continue
        if not isinstance(msg, dict):
            logger.warning("ignoring non-object JSON-RPC message")
            continue
        yield msg


async def _run_server(config_root: Path | None = None) -> None:
    server = KGMemServer(config_root)
    logger.info("kgmem MCP server on stdio, memory file: %s", server.manager.file_path)
    reader = asyncio.StreamReader(limit=_LINE_LIMIT)
    loop = asyncio.get_event_loop()
    await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), sys.stdin)

    writer_transport, writer_protocol = await loop.connect_write_pipe(
        asyncio.BaseProtocol, sys.stdout.buffer
    )

    def write_json(obj: Any) -> None:
        line = json.dumps(obj) + "\n"
        writer_transport.write(line.encode())

    async for msg in _read_messages(reader):
        method = msg.get("method", "")
        msg_id = msg.get("id")

        if method == "initialize":
            write_json({
                "jsonrpc": "2.0",
                "id": msg_id,
                "result": {
                    "protocolVersion": "2024-11-05",
                    "capabilities": {"tools": {}},
                    "serverInfo": {"name": "memory-server", "version": _VERSION},
                },
            })

        elif method == "notifications/initialized":
            pass  # no response for notifications

        elif method == "tools/list":
            write_json({
                "jsonrpc": "2.0",
                "id": msg_id,
                "result": {"tools": _tool_defs()},
            })

        elif method == "tools/call":
            params = msg.get("params", {})
            tool_name = params.get("name", "")
            arguments = params.get("arguments")
            try:
                result_text = server.call_tool(tool_name, arguments)
                write_json({
                    "jsonrpc": "2.0",
                    "id": msg_id,
                    "result": {
                        "content": [{"type": "text", "text": result_text}],
                        "isError": False,
                    },
                })
            except Exception as exc:
                logger.exception("tool %s failed", tool_name)
                write_json({
                    "jsonrpc": "2.0",
                    "id": msg_id,
                    "result": {
                        "content": [{"type": "text", "text": f"Error: {exc}"}],
                        "isError": True,
                    },
                })

        elif msg_id is not None:
            write_json({
                "jsonrpc": "2.0",
                "id": msg_id,
                "error": {"code": -32601, "message": f"Method not found: {method}"},
            })


def run_server(config_root: Path | None = None) -> None:
    """Entry point for `kgmem serve`."""
    asyncio.run(_run_server(config_root))
