"""
Settle Waits

The remote document service applies structural mutations asynchronously and
exposes no completion signal. Every pause the pipeline takes to let a
mutation settle goes through :class:`SettleClock`, keyed by a named delay,
so the waits can be replaced by polling (or disabled in tests) in one place.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Awaitable, Callable, Deque, Dict, List, Optional

logger = logging.getLogger("sync.settle")

Sleeper = Callable[[float], Awaitable[None]]


# ---------------------------------------------------------------------
# Named delays (seconds)
# ---------------------------------------------------------------------

# Between bulk-create batches of non-table blocks
BATCH_INTERVAL = "batch_interval"
# Between cell fills in stepwise table mode
TABLE_CELL_INTERVAL = "table_cell_interval"
# Between successive tables
TABLE_INTERVAL = "table_interval"
# After a quote block delete, before the callout insert
AFTER_DELETE = "after_delete"
# Between successive callout conversions
CALLOUT_INTERVAL = "callout_interval"
# Before the first callout conversion of a document
BEFORE_CALLOUTS = "before_callouts"
# Before the info block is inserted at index 0
BEFORE_INFO_BLOCK = "before_info_block"
# After an import job is created, before the first poll
IMPORT_START = "import_start"
# Poll spacing for import jobs (early and late attempts)
IMPORT_POLL_EARLY = "import_poll_early"
IMPORT_POLL_LATE = "import_poll_late"
# Backoff between 5xx retries
SERVER_ERROR_BACKOFF = "server_error_backoff"
# After an ownership transfer
AFTER_TRANSFER = "after_transfer"

DEFAULT_DELAYS: Dict[str, float] = {
    BATCH_INTERVAL: 0.5,
    TABLE_CELL_INTERVAL: 0.3,
    TABLE_INTERVAL: 1.0,
    AFTER_DELETE: 0.5,
    CALLOUT_INTERVAL: 0.8,
    BEFORE_CALLOUTS: 1.0,
    BEFORE_INFO_BLOCK: 2.0,
    IMPORT_START: 3.0,
    IMPORT_POLL_EARLY: 3.0,
    IMPORT_POLL_LATE: 6.0,
    SERVER_ERROR_BACKOFF: 10.0,
    AFTER_TRANSFER: 1.0,
}


# Waits remembered by a clock; older entries are discarded
HISTORY_LIMIT = 256


class SettleClock:
    """
    Waits out the remote service's consistency window.

    Parameters
    ----------
    delays : Optional[Dict[str, float]]
        Overrides merged on top of :data:`DEFAULT_DELAYS`.

    sleeper : Optional[Sleeper]
        Coroutine used to wait. Defaults to ``asyncio.sleep``.
    """

    def __init__(
        self,
        delays: Optional[Dict[str, float]] = None,
        sleeper: Optional[Sleeper] = None,
    ) -> None:
        self.delays: Dict[str, float] = {**DEFAULT_DELAYS, **(delays or {})}
        self._sleeper: Sleeper = sleeper or asyncio.sleep
        self._history: Deque[str] = deque(maxlen=HISTORY_LIMIT)

    @property
    def history(self) -> List[str]:
        """Names of the most recent waits, oldest first."""
        return list(self._history)

    def delay_for(self, name: str) -> float:
        if name not in self.delays:
            raise KeyError(f"Unknown settle delay: {name}")
        return self.delays[name]

    async def wait(self, name: str) -> None:
        """Wait for the named settle window to pass."""
        seconds = self.delay_for(name)
        self._history.append(name)
        logger.debug("Settling for %s (%.1fs)", name, seconds)
        if seconds > 0:
            await self._sleeper(seconds)

