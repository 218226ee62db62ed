"""Services used by the conversation runner."""

from .budget import (
    CONTEXT_FULL_NOTICE,
    TOOLS_DISABLED_NOTICE,
    BudgetConfig,
    ContextBudgetManager,
    ContextCleanupResult,
    InitialInputFit,
    TokenValidation,
)

__all__ = [
    "CONTEXT_FULL_NOTICE",
    "TOOLS_DISABLED_NOTICE",
    "BudgetConfig",
    "ContextBudgetManager",
    "ContextCleanupResult",
    "InitialInputFit",
    "TokenValidation",
]
