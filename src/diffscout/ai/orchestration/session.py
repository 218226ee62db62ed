"""Keyed session state and per-analysis subagent quotas.

Sessions are isolated by key, not by lock. Each logically independent
analysis must use its own key; nested subagent runs get fresh keys from
:meth:`SessionRegistry.new_key`. Tools never consult the active pointer:
they receive a :class:`SessionHandle` bound to one key.
"""

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass, field
from typing import Any

__all__ = [
    "DEFAULT_SESSION_KEY",
    "SessionEntry",
    "SessionHandle",
    "SessionRegistry",
    "SubagentSessionTracker",
]

LOGGER = logging.getLogger(__name__)

DEFAULT_SESSION_KEY = "default"


@dataclass(slots=True)
class SessionEntry:
    """Mutable per-session slot."""

    plan: str | None = None
    scratch: dict[str, Any] = field(default_factory=dict)

    def reset(self) -> None:
        self.plan = None
        self.scratch.clear()


class SessionRegistry:
    """Lazily created session slots plus an "active" pointer.

    The active pointer lets one process interleave several analyses (say a
    foreground and a background one) through a single registry.
    """

    def __init__(self) -> None:
        self._entries: dict[str, SessionEntry] = {}
        self._active = DEFAULT_SESSION_KEY
        self._counter = itertools.count(1)
        # Keys bound to a handle, written to or not; new_key never hands these out.
        self._bound: set[str] = set()

    # ------------------------------------------------------------------
    # Active pointer
    # ------------------------------------------------------------------

    def set_active(self, key: str) -> None:
        if not key:
            raise ValueError("session key must be a non-empty string")
        self._active = key
        LOGGER.debug("Active session set to %s", key)

    def get_active(self) -> str:
        return self._active

    # ------------------------------------------------------------------
    # Plan operations on the active session
    # ------------------------------------------------------------------

    def update_plan(self, text: str) -> None:
        self.update_plan_for(self._active, text)

    def get_plan(self) -> str | None:
        return self.get_plan_for(self._active)

    def has_plan(self) -> bool:
        return self.has_plan_for(self._active)

    def reset(self) -> None:
        """Clear the active session's slot only."""
        self.reset_key(self._active)

    def reset_all(self) -> None:
        """Clear every slot and point back at the default session.

        Meant for process-wide boundaries, never mid-analysis.
        """
        self._entries.clear()
        self._bound.clear()
        self._active = DEFAULT_SESSION_KEY
        LOGGER.debug("All sessions reset")

    # ------------------------------------------------------------------
    # Keyed operations
    # ------------------------------------------------------------------

    def entry(self, key: str) -> SessionEntry:
        existing = self._entries.get(key)
        if existing is None:
            existing = SessionEntry()
            self._entries[key] = existing
        return existing

    def update_plan_for(self, key: str, text: str) -> None:
        self.entry(key).plan = text

    def get_plan_for(self, key: str) -> str | None:
        entry = self._entries.get(key)
        return entry.plan if entry is not None else None

    def has_plan_for(self, key: str) -> bool:
        return bool(self.get_plan_for(key))

    def reset_key(self, key: str) -> None:
        entry = self._entries.get(key)
        if entry is not None:
            entry.reset()

    def new_key(self, prefix: str = "session") -> str:
        """Return a key no other caller has been given."""
        while True:
            key = f"{prefix}-{next(self._counter)}"
            if key not in self._entries and key not in self._bound:
                self._entries[key] = SessionEntry()
                return key

    def discard(self, key: str) -> None:
        """Drop a slot entirely, e.g. when a subagent finishes."""
        self._entries.pop(key, None)
        self._bound.discard(key)

    def handle(self, key: str | None = None) -> SessionHandle:
        """Bind a handle to *key* (the active session when omitted)."""
        bound_key = key or self._active
        self._bound.add(bound_key)
        return SessionHandle(self, bound_key)

    def keys(self) -> list[str]:
        return list(self._entries)


class SessionHandle:
    """Plan operations bound to a single session key."""

    __slots__ = ("_registry", "_key")

    def __init__(self, registry: SessionRegistry, key: str) -> None:
        self._registry = registry
        self._key = key

    @property
    def key(self) -> str:
        return self._key

    def update_plan(self, text: str) -> None:
        self._registry.update_plan_for(self._key, text)

    def get_plan(self) -> str | None:
        return self._registry.get_plan_for(self._key)

    def has_plan(self) -> bool:
        return self._registry.has_plan_for(self._key)

    def reset(self) -> None:
        self._registry.reset_key(self._key)


class SubagentSessionTracker:
    """Counts subagent spawns for one top-level analysis."""

    def __init__(self, max_per_session: int = 10) -> None:
        self._max = max(0, int(max_per_session))
        self._count = 0

    @property
    def max_per_session(self) -> int:
        return self._max

    @property
    def count(self) -> int:
        return self._count

    @property
    def remaining(self) -> int:
        return max(0, self._max - self._count)

    def can_spawn(self) -> bool:
        return self._count < self._max

    def record_spawn(self) -> int:
        """Record a spawn and return its 1-based subagent id."""
        self._count += 1
        return self._count

    def reset(self) -> None:
        self._count = 0
