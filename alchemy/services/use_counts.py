import logging
from asyncio import Lock

from sqlalchemy.exc import SQLAlchemyError

from alchemy.clock import SystemClock


class UseCountBuffer:
    """Batches use-count increments in memory until the next flush.

    Counts are best-effort: a failed flush drops its batch, and counts still
    buffered when the process dies are lost.
    """

    def __init__(self, store, clock: SystemClock, max_pending_keys: int = 10000):
        self.store = store
        self.clock = clock
        self.max_pending_keys = max_pending_keys
        self.pending: dict[str, int] = {}
        self.lock = Lock()

    async def bump(self, combination_key: str) -> None:
        async with self.lock:
            if combination_key not in self.pending and len(self.pending) >= self.max_pending_keys:
                logging.warning(f"Use-count buffer full, dropping bump for {combination_key}")
                return
            self.pending[combination_key] = self.pending.get(combination_key, 0) + 1

    async def flush(self) -> int:
        """Write buffered counts to the store. Returns the number of rows updated."""
        async with self.lock:
            batch, self.pending = self.pending, {}
        if not batch:
            return 0
        try:
            updated = await self.store.add_use_counts(batch, self.clock.now())
        except SQLAlchemyError as e:
            logging.error(f"Failed to flush {len(batch)} use counts: {e}")
            return 0
        logging.debug(f"Flushed use counts for {updated} combinations")
        return updated
