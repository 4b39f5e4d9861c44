"""File node execution.

A file node is in *read mode* when no non-file node feeds it: it loads the
file when it executes and yields ``{"path", "content"}``, which downstream
nodes receive as an attachment. Otherwise it is in *write mode*: the
executor writes upstream outputs into it and the node itself does nothing.
"""

import asyncio
import json
import logging
from pathlib import Path
from typing import Any

from nodeflow.core.graph_schema import FileNode
from nodeflow.core.utils import resolve_vault_path

logger = logging.getLogger(__name__)


class FileNodeError(Exception):
    """File node could not read its file."""

    pass


def serialize_for_file(value: Any) -> str:
    """Text written to a file target for an upstream node's output."""
    if isinstance(value, str):
        return value
    if isinstance(value, dict) and isinstance(value.get("content"), str):
        return value["content"]
    if isinstance(value, (dict, list)):
        return json.dumps(value, indent=2, default=str, ensure_ascii=False)
    return str(value)


class FileNodeRunner:
    """Reads and writes file node paths inside one vault."""

    def __init__(self, vault_root: Path):
        self.vault_root = Path(vault_root)

    def _resolve(self, node: FileNode) -> Path:
        return resolve_vault_path(node.data.path, self.vault_root)

    async def read(self, node: FileNode) -> dict[str, str]:
        path = self._resolve(node)
        if not path.is_file():
            raise FileNodeError(f"File not found: {node.data.path}")
        content = await asyncio.to_thread(path.read_text, encoding="utf-8")
        return {"path": node.data.path, "content": content}

    async def write_output(self, node: FileNode, value: Any) -> Path:
        """Serialize ``value`` into the node's file, creating parent directories."""
        path = self._resolve(node)
        text = serialize_for_file(value)

        def write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(text, encoding="utf-8")

        await asyncio.to_thread(write)
        logger.info(f"Wrote output to {node.data.path} ({len(text)} chars)")
        return path
