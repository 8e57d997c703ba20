"""
Tests for the per-tenant sandboxed memory store and its tool wrapper.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from src.auth.context import SessionContext
from src.tools import MemoryStore, ToolContext, ToolError, memory_tool


@pytest.fixture
def store(tmp_path: Path) -> MemoryStore:
    return MemoryStore(tmp_path, max_file_bytes=64, max_tenant_bytes=100)


def _snapshot(root: Path) -> list:
    return sorted(str(p.relative_to(root)) for p in root.rglob("*"))


@pytest.mark.anyio
async def test_create_view_and_list(store, tmp_path):
    assert await store.create("acme", "/memories/notes.md", "line one\nline two") == "Created: /memories/notes.md"
    assert (tmp_path / "acme" / "memories" / "notes.md").read_text() == "line one\nline two"
    assert await store.view("acme", "/memories/notes.md") == "line one\nline two"
    assert await store.view("acme", "/memories/notes.md", [2, 2]) == "line two"
    assert await store.view("acme", "/memories") == "f notes.md"
    assert await store.view("acme", "/") == "d memories"


@pytest.mark.anyio
async def test_view_missing(store):
    assert await store.view("acme") == "[Empty directory]"
    assert await store.view("acme", "/nothing.md") == "[Not found]"


@pytest.mark.anyio
async def test_str_replace_first_occurrence(store):
    await store.create("acme", "/a.txt", "x x x")
    await store.str_replace("acme", "/a.txt", "x", "y")
    assert await store.view("acme", "/a.txt") == "y x x"
    with pytest.raises(ToolError):
        await store.str_replace("acme", "/a.txt", "zzz", "y")


@pytest.mark.anyio
async def test_insert_lines(store):
    await store.create("acme", "/a.txt", "one\nthree")
    assert await store.insert("acme", "/a.txt", 2, "two") == "Inserted at line 2: /a.txt"
    assert await store.view("acme", "/a.txt") == "one\ntwo\nthree"
    with pytest.raises(ToolError):
        await store.insert("acme", "/a.txt", 10, "nope")


@pytest.mark.anyio
async def test_delete_and_rename(store):
    await store.create("acme", "/a.txt", "hello")
    assert await store.rename("acme", "/a.txt", "/dir/b.txt") == "Renamed: /a.txt -> /dir/b.txt"
    assert await store.view("acme", "/dir/b.txt") == "hello"
    with pytest.raises(ToolError):
        await store.rename("acme", "/a.txt", "/c.txt")
    assert await store.delete("acme", "/dir/b.txt") == "Deleted: /dir/b.txt"
    with pytest.raises(ToolError):
        await store.delete("acme", "/dir/b.txt")


@pytest.mark.anyio
@pytest.mark.parametrize(
    "call",
    [
        lambda s: s.view("acme", "/../other/secret.md"),
        lambda s: s.create("acme", "/../other/x.md", "data"),
        lambda s: s.str_replace("acme", "/memories/../../x.md", "a", "b"),
        lambda s: s.insert("acme", "%2E%2E/x.md", 1, "data"),
        lambda s: s.delete("acme", "/../acme"),
        lambda s: s.rename("acme", "/a.txt", "/../../escaped.txt"),
    ],
)
async def test_traversal_rejected_before_any_mutation(store, tmp_path, call):
    await store.create("acme", "/a.txt", "keep")
    before = _snapshot(tmp_path)
    with pytest.raises(ToolError):
        await call(store)
    assert _snapshot(tmp_path) == before


@pytest.mark.anyio
async def test_tenants_are_isolated(store):
    await store.create("acme", "/shared.md", "acme data")
    assert await store.view("globex", "/shared.md") == "[Not found]"


@pytest.mark.anyio
async def test_invalid_tenant_id(store):
    with pytest.raises(ToolError):
        await store.view("../acme")


@pytest.mark.anyio
async def test_size_ceilings(store, tmp_path):
    with pytest.raises(ToolError, match="too large"):
        await store.create("acme", "/big.txt", "x" * 65)
    assert not (tmp_path / "acme" / "big.txt").exists()

    await store.create("acme", "/one.txt", "x" * 60)
    with pytest.raises(ToolError, match="limit exceeded"):
        await store.create("acme", "/two.txt", "x" * 60)
    assert not (tmp_path / "acme" / "two.txt").exists()
    # Overwriting an existing file only counts the difference.
    await store.create("acme", "/one.txt", "y" * 60)


@pytest.mark.anyio
async def test_root_is_protected(store):
    with pytest.raises(ToolError):
        await store.delete("acme", "/")
    with pytest.raises(ToolError):
        await store.create("acme", "/", "data")


@pytest.mark.anyio
async def test_memory_tool_dispatch(store):
    tool = memory_tool(store)
    ctx = ToolContext(session=SessionContext(tenant_id="acme"))
    assert tool.to_anthropic() == {"type": "memory_20250818", "name": "memory"}

    result = await tool.execute({"command": "create", "path": "/p.md", "file_text": "hi"}, ctx)
    assert result == "Created: /p.md"
    assert tool.summary({"command": "create"}, result) == "Memory create completed"
    assert await tool.execute({"command": "view", "path": "/p.md"}, ctx) == "hi"

    with pytest.raises(ToolError):
        await tool.execute({"command": "create", "path": "/q.md"}, ctx)
    with pytest.raises(ToolError):
        await tool.execute({"command": "explode"}, ctx)
