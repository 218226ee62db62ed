"""Context budget management for the conversation loop.

The :class:`ContextBudgetManager` prices a prospective request in tokens,
classifies how full the model's context window is, and evicts the oldest
tool interactions when the conversation grows past the warning threshold.
Token counting is advisory: a counter failure degrades to ``continue``
rather than failing the analysis.
"""

from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass
from typing import Any, Literal, Protocol, Sequence

from ..types import Message

__all__ = [
    "BudgetConfig",
    "ContextBudgetManager",
    "ContextCleanupResult",
    "InitialInputFit",
    "TokenValidation",
    "SuggestedAction",
    "CONTEXT_FULL_NOTICE",
    "TOOLS_DISABLED_NOTICE",
    "TRUNCATION_MARKER",
]

LOGGER = logging.getLogger(__name__)

CONTEXT_FULL_NOTICE = (
    "Previous tool results removed due to context limits. "
    "Provide final analysis with available information."
)
TOOLS_DISABLED_NOTICE = "Tools disabled due to large diff. Analysis based on truncated diff content."
TRUNCATION_MARKER = "\n\n[... diff truncated due to size ...]"

# Rough characters per token, used only when sizing a truncated input.
_CHARS_PER_TOKEN = 4.0

SuggestedAction = Literal["continue", "remove_old_context", "request_final_answer"]


class ModelBudgetInfo(Protocol):
    """The slice of the model descriptor the budget manager relies on."""

    max_input_tokens: int | None

    async def count_tokens(self, text: str) -> int:
        ...


# -----------------------------------------------------------------------------
# Configuration and Results
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class BudgetConfig:
    """Configuration for the budget manager.

    Attributes:
        warning_ratio: Utilization at which old context should be evicted.
        cleanup_target_ratio: Utilization eviction aims for.
        per_message_overhead: Fixed token cost added for every message.
        default_max_input_tokens: Window assumed when the model reports none.
        max_input_tokens: Explicit window override.
        max_tool_response_chars: Largest tool response accepted (inclusive).
        min_tool_space_ratio: Share of the window the seed turn must leave free
            for tool interactions before tools are disabled.
        truncated_input_ratio: Share of the window a truncated seed turn may use.
    """

    warning_ratio: float = 0.9
    cleanup_target_ratio: float = 0.8
    per_message_overhead: int = 5
    default_max_input_tokens: int = 8_000
    max_input_tokens: int | None = None
    max_tool_response_chars: int = 8_000
    min_tool_space_ratio: float = 0.3
    truncated_input_ratio: float = 0.8


@dataclass(slots=True, frozen=True)
class TokenValidation:
    """Token accounting for one prospective request."""

    total_tokens: int
    max_tokens: int
    suggested_action: SuggestedAction

    @property
    def utilization(self) -> float:
        if self.max_tokens <= 0:
            return 0.0
        return self.total_tokens / self.max_tokens

    @property
    def remaining_tokens(self) -> int:
        return self.max_tokens - self.total_tokens

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_tokens": self.total_tokens,
            "max_tokens": self.max_tokens,
            "suggested_action": self.suggested_action,
            "utilization": round(self.utilization, 4),
        }


@dataclass(slots=True, frozen=True)
class ContextCleanupResult:
    """Outcome of :meth:`ContextBudgetManager.cleanup`."""

    messages: tuple[Message, ...]
    tool_results_removed: int = 0
    assistant_messages_removed: int = 0
    context_full_message_added: bool = False

    @property
    def changed(self) -> bool:
        return self.tool_results_removed > 0 or self.assistant_messages_removed > 0


@dataclass(slots=True, frozen=True)
class InitialInputFit:
    """Outcome of :meth:`ContextBudgetManager.fit_initial_input`."""

    text: str
    tools_available: bool = True
    notice: str | None = None


# -----------------------------------------------------------------------------
# Budget Manager
# -----------------------------------------------------------------------------


class ContextBudgetManager:
    """Counts request tokens and keeps the conversation inside the model window."""

    def __init__(self, model: ModelBudgetInfo, config: BudgetConfig | None = None) -> None:
        self._model = model
        self._config = config or BudgetConfig()

    @property
    def config(self) -> BudgetConfig:
        return self._config

    @property
    def max_tokens(self) -> int:
        if self._config.max_input_tokens:
            return int(self._config.max_input_tokens)
        reported = getattr(self._model, "max_input_tokens", None)
        return int(reported) if reported else self._config.default_max_input_tokens

    async def validate(self, messages: Sequence[Message], system_prompt: str) -> TokenValidation:
        """Price a request and classify utilization.

        Returns ``continue`` with zero tokens when counting fails.
        """
        max_tokens = self.max_tokens
        try:
            total = await self._count_request(messages, system_prompt)
        except Exception:
            LOGGER.error("Token counting failed; continuing without budget enforcement", exc_info=True)
            return TokenValidation(total_tokens=0, max_tokens=max_tokens, suggested_action="continue")
        return self._classify(total, max_tokens)

    async def cleanup(
        self,
        messages: Sequence[Message],
        system_prompt: str,
        target_utilization: float | None = None,
    ) -> ContextCleanupResult:
        """Evict the oldest tool interactions until utilization drops to the target.

        Each step removes the earliest assistant turn that issued tool calls
        together with every tool result answering any of those calls. A
        single notice message is appended when anything was removed. On any
        internal error the original messages are returned untouched.
        """
        original = tuple(messages)
        ratio = self._config.cleanup_target_ratio if target_utilization is None else target_utilization
        target_tokens = math.floor(self.max_tokens * ratio)

        working = list(original)
        tool_results_removed = 0
        assistant_removed = 0
        try:
            while working:
                total = await self._count_request(working, system_prompt)
                if total <= target_tokens:
                    break
                removal = _remove_oldest_tool_interaction(working)
                if removal is None:
                    break
                working, removed_tools, removed_assistants = removal
                tool_results_removed += removed_tools
                assistant_removed += removed_assistants
        except Exception:
            LOGGER.error("Context cleanup failed; keeping the conversation unchanged", exc_info=True)
            return ContextCleanupResult(messages=original)

        notice_added = False
        if tool_results_removed or assistant_removed:
            working.append(Message.user(CONTEXT_FULL_NOTICE))
            notice_added = True
            LOGGER.info(
                "Context cleanup removed %d tool result(s) and %d assistant message(s)",
                tool_results_removed,
                assistant_removed,
            )

        return ContextCleanupResult(
            messages=tuple(working),
            tool_results_removed=tool_results_removed,
            assistant_messages_removed=assistant_removed,
            context_full_message_added=notice_added,
        )

    def is_response_size_acceptable(self, text: str) -> bool:
        return len(text or "") <= self._config.max_tool_response_chars

    async def context_status_suffix(self, messages: Sequence[Message], system_prompt: str) -> str:
        """Short usage note appended to tool results so the model can pace itself."""
        try:
            validation = await self.validate(messages, system_prompt)
            if validation.max_tokens <= 0 or validation.total_tokens <= 0:
                return ""
            percent = round(validation.utilization * 100)
            remaining = validation.remaining_tokens
            if percent >= 80:
                return (
                    f"\n\n[Context: {percent}% used ({validation.total_tokens}/{validation.max_tokens} tokens). "
                    f"{remaining} remaining - consider wrapping up soon]"
                )
            if percent >= 50:
                return f"\n\n[Context: {percent}% used. {remaining} tokens remaining]"
            return ""
        except Exception:
            LOGGER.error("Unable to compute context status", exc_info=True)
            return ""

    async def fit_initial_input(self, system_prompt: str, user_text: str) -> InitialInputFit:
        """Truncate an oversized seed turn and report whether tools remain usable.

        Tools stay enabled when the seed turn leaves at least
        ``min_tool_space_ratio`` of the window free. Otherwise the text is
        cut (at a nearby line break when possible) to fit in
        ``truncated_input_ratio`` of the window and tools are disabled.
        """
        max_tokens = self.max_tokens
        try:
            system_tokens = await self._model.count_tokens(system_prompt)
            user_tokens = await self._model.count_tokens(user_text)
        except Exception:
            LOGGER.error("Unable to size the initial input; keeping it as is", exc_info=True)
            return InitialInputFit(text=user_text)

        available = max_tokens - system_tokens - user_tokens
        if available >= math.floor(max_tokens * self._config.min_tool_space_ratio):
            return InitialInputFit(text=user_text)

        LOGGER.warning(
            "Input uses too much context (%d/%d tokens, only %d remaining). Truncating and disabling tools.",
            system_tokens + user_tokens,
            max_tokens,
            available,
        )
        target_tokens = math.floor(max_tokens * self._config.truncated_input_ratio) - system_tokens
        target_chars = max(0, math.floor(target_tokens * _CHARS_PER_TOKEN))
        truncated = user_text[:target_chars]
        last_break = truncated.rfind("\n")
        if last_break > target_chars * 0.8:
            truncated = truncated[:last_break]
        return InitialInputFit(
            text=truncated + TRUNCATION_MARKER,
            tools_available=False,
            notice=TOOLS_DISABLED_NOTICE,
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _classify(self, total: int, max_tokens: int) -> TokenValidation:
        warning_threshold = math.floor(max_tokens * self._config.warning_ratio)
        action: SuggestedAction = "continue"
        if total >= max_tokens:
            action = "request_final_answer"
        elif total >= warning_threshold:
            action = "remove_old_context"
        if action != "continue":
            LOGGER.info("Context budget %d/%d tokens -> %s", total, max_tokens, action)
        return TokenValidation(total_tokens=total, max_tokens=max_tokens, suggested_action=action)

    async def _count_request(self, messages: Sequence[Message], system_prompt: str) -> int:
        total = await self._model.count_tokens(system_prompt) if system_prompt else 0
        for message in messages:
            total += await self._count_message(message)
        return total

    async def _count_message(self, message: Message) -> int:
        tokens = self._config.per_message_overhead
        if message.content:
            tokens += await self._model.count_tokens(message.content)
        for call in message.tool_calls or ():
            tokens += await self._model.count_tokens(json.dumps(call.to_chat_param(), ensure_ascii=False))
        return tokens


def _remove_oldest_tool_interaction(
    messages: list[Message],
) -> tuple[list[Message], int, int] | None:
    """Drop the earliest tool interaction; ``None`` when none remain."""

    first_tool_index = next((index for index, message in enumerate(messages) if message.role == "tool"), None)
    if first_tool_index is None:
        return None

    orphan_id = messages[first_tool_index].tool_call_id
    owner_index: int | None = None
    for index in range(first_tool_index - 1, -1, -1):
        candidate = messages[index]
        if candidate.role == "assistant" and candidate.tool_calls:
            if any(call.id == orphan_id for call in candidate.tool_calls):
                owner_index = index
                break

    if owner_index is None:
        # A tool result with no surviving owner is removed on its own.
        pruned = messages[:first_tool_index] + messages[first_tool_index + 1:]
        return pruned, 1, 0

    call_ids = {call.id for call in messages[owner_index].tool_calls or ()}
    remaining: list[Message] = []
    removed_tools = 0
    for index, message in enumerate(messages):
        if index == owner_index:
            continue
        if message.role == "tool" and message.tool_call_id in call_ids:
            removed_tools += 1
            continue
        remaining.append(message)
    return remaining, removed_tools, 1
