"""Shared typing contracts for AI infrastructure."""

from __future__ import annotations

import inspect
from dataclasses import dataclass
from typing import Any, Callable, Protocol


class TokenCounterProtocol(Protocol):
    """Protocol describing tokenizer implementations."""

    model_name: str | None

    def count(self, text: str) -> int:
        """Return the precise token count for *text*."""
        ...

    def estimate(self, text: str) -> int:
        """Return a deterministic fallback estimate when precise counts fail."""
        ...


@dataclass(slots=True, frozen=True)
class ModelDescriptor:
    """What the orchestration core needs to know about the active model.

    ``counter`` may be a :class:`TokenCounterProtocol` or a bare callable
    (sync or async) returning a token count for a string.
    """

    name: str
    max_input_tokens: int | None
    counter: TokenCounterProtocol | Callable[[str], Any]

    async def count_tokens(self, text: str) -> int:
        if not text:
            return 0
        count = getattr(self.counter, "count", None)
        if count is None:
            count = self.counter
        result = count(text)
        if inspect.isawaitable(result):
            result = await result
        return int(result)
