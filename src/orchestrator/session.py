"""
In-memory state of one conversation, owned by the task running it.
"""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field
from typing import List, Literal, Optional, Sequence, Set, Tuple

from src.llm.types import ContentBlock, Message, ToolRequest

SessionStatus = Literal["active", "completed", "incomplete"]


@dataclass
class ConversationSession:
    session_id: str
    tenant_id: str
    user_id: str
    model: str
    temperature: float
    max_tokens: int
    max_iterations: int
    app_tag: str = "cohort_builder"
    workflow_tag: Optional[str] = None
    input_tokens: int = 0
    output_tokens: int = 0
    iteration: int = 0
    status: SessionStatus = "active"
    termination_reason: Optional[str] = None
    created_at: dt.datetime = field(default_factory=lambda: dt.datetime.now(dt.timezone.utc))
    updated_at: dt.datetime = field(default_factory=lambda: dt.datetime.now(dt.timezone.utc))
    _messages: List[Message] = field(default_factory=list, repr=False)
    _request_ids: Set[str] = field(default_factory=set, repr=False)

    @property
    def messages(self) -> Tuple[Message, ...]:
        return tuple(self._messages)

    def check_request_ids(self, blocks: Sequence[ContentBlock]) -> List[str]:
        """Raise ValueError if any tool request id in ``blocks`` is already used or repeated."""
        new_ids = [b.id for b in blocks if isinstance(b, ToolRequest)]
        duplicate = [i for i in new_ids if i in self._request_ids]
        if duplicate or len(set(new_ids)) != len(new_ids):
            raise ValueError(f"Duplicate tool request id in session {self.session_id}: {duplicate or new_ids}")
        return new_ids

    def append(self, message: Message) -> None:
        """Append a message. Tool request ids must be unique within the session."""
        new_ids = self.check_request_ids(message.content)
        self._request_ids.update(new_ids)
        self._messages.append(message)
        self.updated_at = dt.datetime.now(dt.timezone.utc)

    def extend(self, messages: Sequence[Message]) -> None:
        for message in messages:
            self.append(message)

    def add_usage(self, input_tokens: int, output_tokens: int) -> None:
        self.input_tokens += max(0, input_tokens or 0)
        self.output_tokens += max(0, output_tokens or 0)

    @property
    def exhausted(self) -> bool:
        return self.iteration >= self.max_iterations

    def next_iteration(self) -> int:
        if self.exhausted:
            raise RuntimeError(f"Iteration ceiling {self.max_iterations} reached")
        self.iteration += 1
        return self.iteration

    def finish(self, status: SessionStatus, reason: str) -> None:
        self.status = status
        self.termination_reason = reason
        self.updated_at = dt.datetime.now(dt.timezone.utc)

    def recent_user_texts(self, limit: int = 3) -> List[str]:
        """Texts of the last ``limit`` user messages that carry text, oldest first."""
        texts: List[str] = []
        for message in reversed(self._messages):
            if message.role != "user":
                continue
            text = message.joined_text()
            if text:
                texts.append(text)
            if len(texts) >= limit:
                break
        return list(reversed(texts))
