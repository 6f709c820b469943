"""Per-analysis bookkeeping for subagent spawns."""

from __future__ import annotations

import logging
from typing import Callable

from ...orchestration.cancellation import CancellationToken

__all__ = ["SubagentSessionManager", "DEFAULT_MAX_SUBAGENTS_PER_SESSION"]

LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_SUBAGENTS_PER_SESSION = 5


class SubagentSessionManager:
    """Caps subagent spawns for one analysis session and tracks live subagents.

    The counter is monotonic for the session: a failed or cancelled subagent
    still consumes its slot. :meth:`cancel_all` fires every registered child
    token, which is how a user abort reaches subagents that are mid-flight.
    """

    def __init__(self, *, max_per_session: int = DEFAULT_MAX_SUBAGENTS_PER_SESSION) -> None:
        self._max_per_session = max(0, int(max_per_session))
        self._count = 0
        self._active: list[CancellationToken] = []

    @property
    def max_per_session(self) -> int:
        return self._max_per_session

    @property
    def count(self) -> int:
        return self._count

    @property
    def remaining_budget(self) -> int:
        return max(0, self._max_per_session - self._count)

    @property
    def active_count(self) -> int:
        return len(self._active)

    def can_spawn(self) -> bool:
        return self._count < self._max_per_session

    def record_spawn(self) -> int:
        """Record a spawn and return its 1-based subagent id."""
        self._count += 1
        return self._count

    def register_subagent_cancellation(self, token: CancellationToken) -> Callable[[], None]:
        """Track ``token`` until the returned disposer is called."""
        self._active.append(token)

        def _dispose() -> None:
            if token in self._active:
                self._active.remove(token)

        return _dispose

    def cancel_all(self) -> None:
        if self._active:
            LOGGER.info("Cancelling %d active subagent(s)", len(self._active))
        for token in list(self._active):
            token.cancel()
        self._active.clear()

    def reset(self) -> None:
        """Start a new session: zero the counter and cancel leftovers."""
        self.cancel_all()
        self._count = 0
