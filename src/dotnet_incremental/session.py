# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Per-run session context.

Holds state that must live for exactly one top-level run: which one-off
diagnostics (stale coverage warnings, heuristic notices) were already
shown. A fresh SessionContext is created by each Engine.run call and passed
down; nothing here is module-global.
"""

import logging
from typing import Set

logger = logging.getLogger(__name__)


class SessionContext:
    """Diagnostics de-duplication for one run.

    Not thread-safe: only the engine and the scheduler's control loop touch it.
    """

    def __init__(self) -> None:
        self._shown: Set[str] = set()

    def should_show(self, key: str) -> bool:
        """Return True the first time ``key`` is seen in this session."""
        if key in self._shown:
            return False
        self._shown.add(key)
        return True

    def warn_once(self, key: str, message: str) -> bool:
        """Log ``message`` as a warning unless ``key`` was already shown."""
        if not self.should_show(key):
            return False
        logger.warning(message)
        return True

    def reset(self) -> None:
        self._shown.clear()

    def __len__(self) -> int:
        return len(self._shown)
