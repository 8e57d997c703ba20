"""
Per-tenant sandboxed file store backing the model's ``memory`` tool.

Every path is validated against the tenant root before anything touches the
filesystem, and size ceilings are checked before a write is committed.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import shutil
from pathlib import Path
from typing import List, Optional, Sequence

from .registry import ToolContext, ToolDefinition, ToolError

logger = logging.getLogger(__name__)

MAX_FILE_BYTES = 1024 * 1024
MAX_TENANT_BYTES = 10 * 1024 * 1024

_TENANT_ID = re.compile(r"^[A-Za-z0-9_.@-]+$")


class MemoryStore:
    """Hierarchical text store rooted at ``base_dir/<tenant_id>``."""

    def __init__(
        self,
        base_dir: str | Path,
        max_file_bytes: int = MAX_FILE_BYTES,
        max_tenant_bytes: int = MAX_TENANT_BYTES,
    ):
        self.base_dir = Path(base_dir).resolve()
        self.max_file_bytes = max_file_bytes
        self.max_tenant_bytes = max_tenant_bytes

    def tenant_root(self, tenant_id: str) -> Path:
        if not tenant_id or ".." in tenant_id or not _TENANT_ID.match(tenant_id):
            raise ToolError(f"Invalid tenant id for memory store: {tenant_id!r}")
        return self.base_dir / tenant_id

    def resolve(self, tenant_id: str, memory_path: Optional[str]) -> Path:
        """Map a tool path onto the tenant root, rejecting anything that escapes it."""
        raw = memory_path if memory_path else "/"
        if ".." in raw or "%2e%2e" in raw.lower():
            raise ToolError(f"Invalid path: {raw} - contains traversal patterns")
        root = self.tenant_root(tenant_id).resolve()
        relative = raw[1:] if raw.startswith("/") else raw
        full = (root / relative).resolve()
        if full != root and root not in full.parents:
            raise ToolError(f"Invalid path: {raw} - path traversal detected")
        return full

    # --- sync helpers, run in a worker thread ---

    def _tenant_size(self, root: Path) -> int:
        if not root.exists():
            return 0
        return sum(p.stat().st_size for p in root.rglob("*") if p.is_file())

    def _check_sizes(self, root: Path, target: Path, new_bytes: int) -> None:
        if new_bytes > self.max_file_bytes:
            raise ToolError(f"File too large. Maximum size is {self.max_file_bytes} bytes")
        existing = target.stat().st_size if target.is_file() else 0
        if self._tenant_size(root) - existing + new_bytes > self.max_tenant_bytes:
            raise ToolError(f"Tenant memory limit exceeded. Maximum total size is {self.max_tenant_bytes} bytes")

    def _read_file(self, full: Path, shown: str) -> str:
        if not full.is_file():
            raise ToolError(f"Not found: {shown}")
        return full.read_text(encoding="utf-8")

    def _view(self, root: Path, full: Path, view_range: Optional[Sequence[int]]) -> str:
        if not full.exists():
            return "[Empty directory]" if full == root else "[Not found]"
        if full.is_dir():
            entries = sorted(full.iterdir(), key=lambda p: p.name)
            listing = "\n".join(f"{'d' if e.is_dir() else 'f'} {e.name}" for e in entries)
            return listing or "[Empty directory]"
        content = full.read_text(encoding="utf-8")
        if view_range:
            lines = content.split("\n")
            start = max(0, int(view_range[0]) - 1)
            end = len(lines) if len(view_range) < 2 or int(view_range[1]) < 0 else min(len(lines), int(view_range[1]))
            return "\n".join(lines[start:end])
        return content

    def _write(self, root: Path, full: Path, text: str) -> None:
        self._check_sizes(root, full, len(text.encode("utf-8")))
        full.parent.mkdir(parents=True, exist_ok=True)
        full.write_text(text, encoding="utf-8")

    # --- commands ---

    async def view(self, tenant_id: str, path: Optional[str] = None, view_range: Optional[Sequence[int]] = None) -> str:
        full = self.resolve(tenant_id, path)
        root = self.tenant_root(tenant_id).resolve()
        logger.info("Memory view: tenant=%s path=%s", tenant_id, path)
        return await asyncio.to_thread(self._view, root, full, view_range)

    async def create(self, tenant_id: str, path: str, file_text: str) -> str:
        full = self.resolve(tenant_id, path)
        root = self.tenant_root(tenant_id).resolve()
        if full == root:
            raise ToolError("Cannot write to the memory root")

        def _create() -> None:
            if full.is_dir():
                raise ToolError(f"Path is a directory: {path}")
            self._write(root, full, file_text)

        await asyncio.to_thread(_create)
        logger.info("Memory create: tenant=%s path=%s bytes=%s", tenant_id, path, len(file_text))
        return f"Created: {path}"

    async def str_replace(self, tenant_id: str, path: str, old_str: str, new_str: str) -> str:
        full = self.resolve(tenant_id, path)
        root = self.tenant_root(tenant_id).resolve()

        def _replace() -> None:
            content = self._read_file(full, path)
            if old_str not in content:
                raise ToolError(f"String not found in file: {old_str}")
            self._write(root, full, content.replace(old_str, new_str, 1))

        await asyncio.to_thread(_replace)
        logger.info("Memory str_replace: tenant=%s path=%s", tenant_id, path)
        return f"Updated: {path}"

    async def insert(self, tenant_id: str, path: str, insert_line: int, insert_text: str) -> str:
        full = self.resolve(tenant_id, path)
        root = self.tenant_root(tenant_id).resolve()

        def _insert() -> None:
            lines = self._read_file(full, path).split("\n")
            if insert_line < 1 or insert_line > len(lines) + 1:
                raise ToolError(f"Invalid line number: {insert_line}. File has {len(lines)} lines")
            lines.insert(insert_line - 1, insert_text)
            self._write(root, full, "\n".join(lines))

        await asyncio.to_thread(_insert)
        logger.info("Memory insert: tenant=%s path=%s line=%s", tenant_id, path, insert_line)
        return f"Inserted at line {insert_line}: {path}"

    async def delete(self, tenant_id: str, path: str) -> str:
        full = self.resolve(tenant_id, path)
        root = self.tenant_root(tenant_id).resolve()
        if full == root:
            raise ToolError("Cannot delete the memory root")

        def _delete() -> None:
            if not full.exists():
                raise ToolError(f"Not found: {path}")
            if full.is_dir():
                shutil.rmtree(full)
            else:
                full.unlink()

        await asyncio.to_thread(_delete)
        logger.info("Memory delete: tenant=%s path=%s", tenant_id, path)
        return f"Deleted: {path}"

    async def rename(self, tenant_id: str, old_path: str, new_path: str) -> str:
        source = self.resolve(tenant_id, old_path)
        target = self.resolve(tenant_id, new_path)
        root = self.tenant_root(tenant_id).resolve()
        if root in (source, target):
            raise ToolError("Cannot rename the memory root")

        def _rename() -> None:
            if not source.exists():
                raise ToolError(f"Not found: {old_path}")
            if target.exists():
                raise ToolError(f"Destination already exists: {new_path}")
            target.parent.mkdir(parents=True, exist_ok=True)
            os.rename(source, target)

        await asyncio.to_thread(_rename)
        logger.info("Memory rename: tenant=%s %s -> %s", tenant_id, old_path, new_path)
        return f"Renamed: {old_path} -> {new_path}"


MEMORY_COMMANDS: List[str] = ["view", "create", "str_replace", "insert", "delete", "rename"]

MEMORY_INPUT_SCHEMA = {
    "type": "object",
    "properties": {
        "command": {"type": "string", "enum": MEMORY_COMMANDS},
        "path": {"type": "string", "description": "Path inside the memory directory, e.g. /memories/notes.md"},
        "view_range": {"type": "array", "items": {"type": "integer"}, "description": "[start_line, end_line], 1-based"},
        "file_text": {"type": "string"},
        "old_str": {"type": "string"},
        "new_str": {"type": "string"},
        "insert_line": {"type": "integer", "description": "1-based line number to insert before"},
        "insert_text": {"type": "string"},
        "old_path": {"type": "string"},
        "new_path": {"type": "string"},
    },
    "required": ["command"],
}


def _require(tool_input: dict, *keys: str) -> None:
    missing = [k for k in keys if tool_input.get(k) is None]
    if missing:
        raise ToolError(f"Missing required parameter(s) for {tool_input.get('command')}: {', '.join(missing)}")


def memory_tool(store: MemoryStore) -> ToolDefinition:
    """The provider-native memory tool bound to ``store``."""

    async def execute(tool_input: dict, context: ToolContext) -> str:
        command = tool_input["command"]
        tenant = context.tenant_id
        if command == "view":
            return await store.view(tenant, tool_input.get("path"), tool_input.get("view_range"))
        if command == "create":
            _require(tool_input, "path", "file_text")
            return await store.create(tenant, tool_input["path"], tool_input["file_text"])
        if command == "str_replace":
            _require(tool_input, "path", "old_str")
            return await store.str_replace(
                tenant, tool_input["path"], tool_input["old_str"], tool_input.get("new_str") or ""
            )
        if command == "insert":
            _require(tool_input, "path", "insert_line", "insert_text")
            return await store.insert(tenant, tool_input["path"], tool_input["insert_line"], tool_input["insert_text"])
        if command == "delete":
            _require(tool_input, "path")
            return await store.delete(tenant, tool_input["path"])
        if command == "rename":
            _require(tool_input, "old_path", "new_path")
            return await store.rename(tenant, tool_input["old_path"], tool_input["new_path"])
        raise ToolError(f"Unknown memory command: {command}")

    return ToolDefinition(
        name="memory",
        description=(
            "Long-term memory shared across this tenant's conversations. Store findings, "
            "user preferences and reusable cohort definitions as text files. Commands: "
            "view, create, str_replace, insert, delete, rename."
        ),
        input_schema=MEMORY_INPUT_SCHEMA,
        executor=execute,
        provider_spec={"type": "memory_20250818", "name": "memory"},
        summarize=lambda tool_input, result: f"Memory {tool_input.get('command', 'command')} completed",
    )
