"""
Lazy one-time position backfill for legacy rows.

The memo of initialized scopes lives in this process only. Running several
cooperating processes against one database needs a durable migration flag
instead.
"""

import logging
import threading
from typing import Callable, Dict, Hashable, Set

logger = logging.getLogger(__name__)


class PositionBackfill:
    """
    Remembers which scopes have already been checked for missing positions.

    The memo lock only guards the check-then-act on the memo itself. The
    backfill work runs under a per-scope lock so unrelated scopes never wait
    on each other and concurrent callers for the same scope wait for the one
    doing the work.
    """

    def __init__(self):
        self._initialized: Set[Hashable] = set()
        self._scope_locks: Dict[Hashable, threading.Lock] = {}
        self._memo_lock = threading.Lock()

    def is_initialized(self, key: Hashable) -> bool:
        return key in self._initialized

    def ensure(self, key: Hashable, run: Callable[[], bool]) -> bool:
        """
        Run the backfill for key once per process.

        Args:
            key: Scope key, e.g. ("board", owner_uid)
            run: Callable performing the backfill; returns True if it wrote rows

        Returns:
            True only for the call that actually wrote positions
        """
        if key in self._initialized:
            return False

        with self._memo_lock:
            if key in self._initialized:
                return False
            scope_lock = self._scope_locks.setdefault(key, threading.Lock())

        with scope_lock:
            if key in self._initialized:
                return False
            wrote = run()
            with self._memo_lock:
                self._initialized.add(key)
                self._scope_locks.pop(key, None)

        if wrote:
            logger.info(f"Backfilled missing positions for scope {key}")
        return wrote

    def forget(self, key: Hashable) -> None:
        """Drop a scope from the memo, e.g. after the scope was deleted."""
        with self._memo_lock:
            self._initialized.discard(key)
