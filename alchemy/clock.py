import asyncio
import time
from datetime import datetime


class SystemClock:
    """Wall clock, monotonic clock and sleep behind one handle so tests can replace them."""

    def now(self) -> datetime:
        return datetime.now()

    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)
