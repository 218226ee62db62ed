"""Ordered, per-analysis conversation log.

Every write stores a deep copy and every read returns one, so callers can
never mutate history through a reference they were handed.
"""

from __future__ import annotations

import copy
import logging
from typing import Iterable, Sequence

from .types import Message, MessageRole, ToolCallRef

__all__ = ["MessageStore"]

LOGGER = logging.getLogger(__name__)


class MessageStore:
    """Append-only message log owned by exactly one in-flight analysis."""

    def __init__(self, messages: Iterable[Message] = ()) -> None:
        self._messages: list[Message] = [copy.deepcopy(message) for message in messages]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def add(self, message: Message) -> None:
        self._messages.append(copy.deepcopy(message))

    def add_user(self, text: str) -> None:
        self.add(Message.user(text))

    def add_assistant(self, text: str | None, tool_calls: Sequence[ToolCallRef] | None = None) -> None:
        self.add(Message.assistant(text, tool_calls))

    def add_tool(self, tool_call_id: str, text: str) -> None:
        self.add(Message.tool(tool_call_id, text))

    def prepend(self, messages: Sequence[Message]) -> None:
        """Insert *messages* ahead of the current history, keeping their order."""
        if not messages:
            return
        self._messages[:0] = [copy.deepcopy(message) for message in messages]
        LOGGER.debug("Prepended %d context message(s)", len(messages))

    def replace(self, messages: Sequence[Message]) -> None:
        """Swap the whole history, e.g. after context eviction."""
        self._messages = [copy.deepcopy(message) for message in messages]

    def clear(self) -> None:
        self._messages.clear()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def history(self) -> list[Message]:
        return copy.deepcopy(self._messages)

    def slice(self, start: int, end: int | None = None) -> list[Message]:
        """Return ``history()[start:end]``; negative indices count from the tail."""
        return copy.deepcopy(self._messages[start:end])

    def by_role(self, role: MessageRole) -> list[Message]:
        return [copy.deepcopy(message) for message in self._messages if message.role == role]

    def last(self) -> Message | None:
        if not self._messages:
            return None
        return copy.deepcopy(self._messages[-1])

    def count(self) -> int:
        return len(self._messages)

    def __len__(self) -> int:
        return len(self._messages)
