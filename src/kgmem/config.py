"""KGMemConfig: project-local config for the memory file.

Default layout (relative to the project root):

    kgmem.toml            # project config
    .env                  # optional: MEMORY_FILE_PATH, KGMEM_LOG_LEVEL
    memory.json           # the memory file (index + data sections)

kgmem.toml example:

    [memory]
    file = "memory.json"   # relative paths resolve against the project root

    [logging]
    level = "WARNING"      # logs go to stderr; stdout belongs to the MCP protocol

Precedence for the memory file: $MEMORY_FILE_PATH, then .env, then
[memory].file, then the default.
"""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

_CONFIG_FILENAME = "kgmem.toml"
_DEFAULT_MEMORY_FILE = "memory.json"
_DEFAULT_LOG_LEVEL = "WARNING"
_MEMORY_FILE_ENV = "MEMORY_FILE_PATH"
_LOG_LEVEL_ENV = "KGMEM_LOG_LEVEL"


@dataclass
class LoggingConfig:
    level: str = _DEFAULT_LOG_LEVEL


@dataclass
class KGMemConfig:
    """Resolved configuration for a memory project."""

    root: Path                      # directory that contains kgmem.toml
    memory_file: Path = field(default_factory=Path)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @property
    def config_path(self) -> Path:
        return self.root / _CONFIG_FILENAME

    def resolve_path(self, path: Path | str) -> Path:
        """Absolute paths pass through; relative ones hang off the project root."""
        p = Path(path).expanduser()
        return p if p.is_absolute() else self.root / p

    def ensure_dirs(self) -> None:
        self.memory_file.parent.mkdir(parents=True, exist_ok=True)


def _load_env(root: Path) -> dict[str, str]:
    """Parse a simple KEY=VALUE .env file (no external dependency)."""
    env_file = root / ".env"
    if not env_file.exists():
        return {}
    env: dict[str, str] = {}
    for line in env_file.read_text().splitlines():
        line = line.strip()
        if line and not line.startswith("#") and "=" in line:
            k, _, v = line.partition("=")
            env[k.strip()] = v.strip().strip('"').strip("'")
    return env


def load_config(root: Path | str | None = None) -> KGMemConfig:
    """Load kgmem.toml from root (or search upward from cwd if root is None)."""
    root_path = _find_root(Path(root) if root else Path.cwd())
    config_path = root_path / _CONFIG_FILENAME

    raw: dict[str, Any] = {}
    if config_path.exists():
        with config_path.open("rb") as f:
            raw = tomllib.load(f)

    env = _load_env(root_path)
    mem_section = raw.get("memory", {})
    log_section = raw.get("logging", {})

    memory_file = (
        os.environ.get(_MEMORY_FILE_ENV)
        or env.get(_MEMORY_FILE_ENV)
        or str(mem_section.get("file", _DEFAULT_MEMORY_FILE))
    )
    level = (
        os.environ.get(_LOG_LEVEL_ENV)
        or env.get(_LOG_LEVEL_ENV)
        or str(log_section.get("level", _DEFAULT_LOG_LEVEL))
    )

    cfg = KGMemConfig(root=root_path, logging=LoggingConfig(level=level.upper()))
    cfg.memory_file = cfg.resolve_path(memory_file)
    return cfg


def _find_root(start: Path) -> Path:
    """Walk upward from start looking for kgmem.toml."""
    for directory in (start, *start.parents):
        if (directory / _CONFIG_FILENAME).exists():
            return directory
    return start


def init_config(root: Path, memory_file: str | None = None) -> Path:
    """Write a default kgmem.toml at root. Raises if already exists."""
    config_path = root / _CONFIG_FILENAME
    if config_path.exists():
        msg = f"kgmem.toml already exists at {config_path}"
        raise FileExistsError(msg)

    content = f"""\
[memory]
file = "{memory_file or _DEFAULT_MEMORY_FILE}"   # relative to this directory; $MEMORY_FILE_PATH overrides

# [logging]
# level = "WARNING"   # DEBUG | INFO | WARNING | ERROR; $KGMEM_LOG_LEVEL overrides
"""
    config_path.write_text(content)
    return config_path
