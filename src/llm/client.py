"""
Tool-calling client for OpenAI-compatible APIs (Z.AI/GLM, ModelScope, DeepSeek, etc.).

These providers have no server-side tools and no context editing, so
external tools are left out of the declarations and pruning runs locally.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import random
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

from openai import AsyncOpenAI, RateLimitError, OpenAIError

from .pruning import apply_pruning
from .types import (
    BlockStop,
    ContentBlock,
    Message,
    ModelInvocationError,
    ModelStreamEvent,
    ModelTurn,
    PruningInstruction,
    TextBlock,
    TextDelta,
    ToolOutcome,
    ToolRequest,
    TurnComplete,
)

# Z.AI / GLM (optional): set LLM_BASE_URL + LLM_API_KEY to use GLM-4.7-flash etc.
LLM_BASE_URL = os.getenv("LLM_BASE_URL")
LLM_API_KEY = os.getenv("LLM_API_KEY")
LLM_MODEL = os.getenv("LLM_MODEL", "glm-4.7-flash")

# ModelScope fallback
DEFAULT_MODELSCOPE_MODEL = os.getenv("MODELSCOPE_MODEL", "deepseek-ai/DeepSeek-R1-0528")
DEFAULT_MODELSCOPE_BASE_URL = "https://api-inference.modelscope.ai/v1"

logger = logging.getLogger(__name__)


def _resolve_client_params(
    model_name: Optional[str] = None,
    api_token: Optional[str] = None,
    base_url: Optional[str] = None,
) -> tuple[str, str, str]:
    """Resolve model, api_key, base_url from args or env (Z.AI when set, else ModelScope)."""
    use_zai = (LLM_BASE_URL and LLM_API_KEY) or (base_url and api_token)
    if use_zai:
        base = base_url or LLM_BASE_URL or ""
        key = api_token or LLM_API_KEY or ""
        model = model_name or LLM_MODEL
        if base and key:
            return model, key, base
    key = api_token or os.getenv("MODELSCOPE_API_TOKEN")
    base = base_url or os.getenv("MODELSCOPE_API_URL", DEFAULT_MODELSCOPE_BASE_URL)
    model = model_name or DEFAULT_MODELSCOPE_MODEL
    return model, key or "", base


def _outcome_text(outcome: ToolOutcome) -> str:
    if isinstance(outcome.content, str):
        return outcome.content
    return json.dumps(outcome.content, default=str)


def to_openai_messages(system: str, messages: Sequence[Message]) -> List[dict]:
    """
    Flatten neutral messages into chat-completions messages.

    Tool outcomes become ``role=tool`` messages; external request/outcome
    pairs are dropped since these providers cannot replay them.
    """
    out: List[dict] = [{"role": "system", "content": system}]
    for message in messages:
        texts = [b.text for b in message.text_blocks() if b.text]
        if message.role == "assistant":
            calls = [
                {
                    "id": r.id,
                    "type": "function",
                    "function": {"name": r.name, "arguments": json.dumps(r.input)},
                }
                for r in message.tool_requests()
                if not r.external
            ]
            entry: dict = {"role": "assistant", "content": "\n".join(texts) or None}
            if calls:
                entry["tool_calls"] = calls
            if entry["content"] is not None or calls:
                out.append(entry)
            continue
        for outcome in message.tool_outcomes():
            if outcome.external:
                continue
            out.append({"role": "tool", "tool_call_id": outcome.request_id, "content": _outcome_text(outcome)})
        if texts:
            out.append({"role": "user", "content": "\n".join(texts)})
    return out


class _ToolCallBuffer:
    """Accumulates streamed tool-call fragments for one index."""

    def __init__(self):
        self.id = ""
        self.name = ""
        self.arguments = ""

    def to_request(self) -> ToolRequest:
        try:
            args = json.loads(self.arguments) if self.arguments else {}
        except json.JSONDecodeError:
            logger.warning("Tool %s sent malformed arguments; passing raw text", self.name)
            args = {"_raw": self.arguments}
        if not isinstance(args, dict):
            args = {"value": args}
        return ToolRequest(id=self.id, name=self.name, input=args)


class OpenAICompatibleClient:
    """Streaming tool-calling chat client for OpenAI-compatible endpoints."""

    def __init__(
        self,
        model_name: Optional[str] = None,
        api_token: Optional[str] = None,
        base_url: Optional[str] = None,
        client: Optional[AsyncOpenAI] = None,
        max_retries: int = 3,
    ):
        self.model_name, api_key, self.base_url = _resolve_client_params(
            model_name=model_name, api_token=api_token, base_url=base_url
        )
        if client is None:
            if not api_key:
                raise ValueError(
                    "API key required. Set LLM_API_KEY (for Z.AI) or MODELSCOPE_API_TOKEN (for ModelScope)."
                )
            client = AsyncOpenAI(base_url=self.base_url, api_key=api_key)
        self.client = client
        self.max_retries = max_retries

    async def _open_stream(self, create_kw: dict):
        retry_count = 0
        while True:
            try:
                return await self.client.chat.completions.create(**create_kw)
            except RateLimitError:
                retry_count += 1
                if retry_count >= self.max_retries:
                    raise
                # Exponential backoff with jitter for concurrency limits
                backoff = (2 ** retry_count) * 3 + random.uniform(0, 3)
                logger.warning(
                    "Rate limit hit (429/concurrency). Retrying in %s s (attempt %s/%s)",
                    round(backoff, 1),
                    retry_count,
                    self.max_retries,
                )
                await asyncio.sleep(backoff)

    async def stream_turn(
        self,
        *,
        system: str,
        messages: Sequence[Message],
        tools: Sequence[Any],
        max_tokens: int,
        temperature: float,
        pruning: Optional[PruningInstruction] = None,
    ) -> AsyncIterator[ModelStreamEvent]:
        if pruning is not None:
            messages = apply_pruning(messages, pruning)
        declarations = [d for d in (t.to_openai() for t in tools) if d is not None]
        create_kw: dict = {
            "model": self.model_name,
            "messages": to_openai_messages(system, messages),
            "max_tokens": max_tokens,
            "temperature": temperature,
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        if declarations:
            create_kw["tools"] = declarations
        # Z.AI: disable thinking so the model returns directly in content
        if "z.ai" in self.base_url.lower():
            create_kw["extra_body"] = {"thinking": {"type": "disabled"}}

        text_parts: List[str] = []
        calls: Dict[int, _ToolCallBuffer] = {}
        finish_reason: Optional[str] = None
        input_tokens = output_tokens = 0
        try:
            response = await self._open_stream(create_kw)
            async for chunk in response:
                usage = getattr(chunk, "usage", None)
                if usage is not None:
                    input_tokens = usage.prompt_tokens or 0
                    output_tokens = usage.completion_tokens or 0
                if not chunk.choices:
                    continue
                choice = chunk.choices[0]
                delta = choice.delta
                if delta is not None and delta.content:
                    text_parts.append(delta.content)
                    yield TextDelta(delta.content)
                for fragment in (getattr(delta, "tool_calls", None) or []):
                    buf = calls.setdefault(fragment.index, _ToolCallBuffer())
                    if fragment.id:
                        buf.id = fragment.id
                    if fragment.function is not None:
                        if fragment.function.name:
                            buf.name = fragment.function.name
                        if fragment.function.arguments:
                            buf.arguments += fragment.function.arguments
                if choice.finish_reason:
                    finish_reason = choice.finish_reason
        except OpenAIError as exc:
            raise ModelInvocationError(f"Chat completion failed: {exc}") from exc

        blocks: List[ContentBlock] = []
        if text_parts:
            blocks.append(TextBlock("".join(text_parts)))
            yield BlockStop()
        for index in sorted(calls):
            blocks.append(calls[index].to_request())
            yield BlockStop()

        yield TurnComplete(
            ModelTurn(
                blocks=blocks,
                stop_reason="tool_use" if calls else (finish_reason or "end_turn"),
                input_tokens=input_tokens,
                output_tokens=output_tokens,
            )
        )
