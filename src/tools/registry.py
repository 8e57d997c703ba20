"""
Tool capability registry: named tools with input contracts and bound executors.

Tools are registered once at startup and the registry is sealed before the
first conversation runs; after that it is read-only and shared by all sessions.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterator, List, Optional, Tuple

from src.auth.context import SessionContext
from src.evaluation.cohort_evaluator import CohortRequirements

logger = logging.getLogger(__name__)


class ToolError(Exception):
    """Expected tool failure; the message is shown to the model."""


@dataclass
class ToolContext:
    """What a tool may know about the conversation that invoked it."""

    session: SessionContext
    requirements: CohortRequirements = field(default_factory=CohortRequirements)

    @property
    def tenant_id(self) -> str:
        return self.session.tenant_id


Executor = Callable[[dict, ToolContext], Awaitable[Any]]
Summarizer = Callable[[dict, Any], str]

_JSON_TYPES = {
    "string": str,
    "integer": int,
    "number": (int, float),
    "boolean": bool,
    "object": dict,
    "array": list,
}


def check_input(schema: dict, payload: Any) -> None:
    """Shallow structural check of ``payload`` against a JSON-schema object."""
    if not isinstance(payload, dict):
        raise ToolError("Tool input must be a JSON object")
    for key in schema.get("required", ()):
        if payload.get(key) is None:
            raise ToolError(f"Missing required parameter: {key}")
    for key, spec in (schema.get("properties") or {}).items():
        if key not in payload or payload[key] is None:
            continue
        expected = _JSON_TYPES.get(spec.get("type"))
        value = payload[key]
        if expected is None:
            continue
        if isinstance(value, bool) and spec.get("type") in ("integer", "number"):
            raise ToolError(f"Parameter '{key}' must be of type {spec['type']}")
        if not isinstance(value, expected):
            raise ToolError(f"Parameter '{key}' must be of type {spec['type']}")
        if "enum" in spec and value not in spec["enum"]:
            raise ToolError(f"Parameter '{key}' must be one of: {', '.join(map(str, spec['enum']))}")


@dataclass(frozen=True)
class ToolDefinition:
    """
    One tool the model can call.

    ``executor`` is None for externally-fulfilled tools, which the model
    provider runs itself. ``provider_spec`` overrides the Anthropic
    declaration for provider-native tool types.
    """

    name: str
    description: str
    input_schema: dict
    executor: Optional[Executor] = None
    provider_spec: Optional[dict] = None
    summarize: Optional[Summarizer] = None
    input_aliases: Tuple[Tuple[str, str], ...] = ()

    @property
    def external(self) -> bool:
        return self.executor is None

    def to_anthropic(self) -> dict:
        if self.provider_spec is not None:
            return dict(self.provider_spec)
        return {"name": self.name, "description": self.description, "input_schema": self.input_schema}

    def to_openai(self) -> Optional[dict]:
        if self.external:
            return None
        return {
            "type": "function",
            "function": {"name": self.name, "description": self.description, "parameters": self.input_schema},
        }

    def summary(self, tool_input: dict, result: Any) -> str:
        if self.summarize is not None:
            return self.summarize(tool_input, result)
        return f"Retrieved {self.name} data"

    async def execute(self, tool_input: dict, context: ToolContext) -> Any:
        if self.executor is None:
            raise ToolError(f"Tool '{self.name}' is fulfilled by the model provider")
        if isinstance(tool_input, dict) and self.input_aliases:
            tool_input = dict(tool_input)
            for alias, canonical in self.input_aliases:
                if tool_input.get(canonical) is None and tool_input.get(alias) is not None:
                    tool_input[canonical] = tool_input[alias]
        check_input(self.input_schema, tool_input)
        return await self.executor(tool_input, context)


class ToolRegistry:
    """Ordered, name-keyed set of tool definitions."""

    def __init__(self, tools: Optional[List[ToolDefinition]] = None):
        self._tools: Dict[str, ToolDefinition] = {}
        self._sealed = False
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: ToolDefinition) -> None:
        if self._sealed:
            raise RuntimeError("Tool registry is sealed")
        if tool.name in self._tools:
            raise ValueError(f"Tool already registered: {tool.name}")
        self._tools[tool.name] = tool
        logger.debug("Registered tool %s (external=%s)", tool.name, tool.external)

    def seal(self) -> "ToolRegistry":
        self._sealed = True
        return self

    @property
    def sealed(self) -> bool:
        return self._sealed

    def get(self, name: str) -> Optional[ToolDefinition]:
        return self._tools.get(name)

    def definitions(self) -> List[ToolDefinition]:
        return list(self._tools.values())

    def names(self) -> List[str]:
        return list(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __iter__(self) -> Iterator[ToolDefinition]:
        return iter(self._tools.values())

    def __len__(self) -> int:
        return len(self._tools)
