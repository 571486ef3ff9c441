import asyncio
import logging
from asyncio import Lock
from typing import Awaitable, Callable, TypeVar

T = TypeVar("T")


class LeaderCancelled(Exception):
    """The caller computing a key was cancelled; followers should try again."""


class SingleFlight:
    """Coalesces concurrent calls for the same key onto one computation.

    The first caller for a key becomes the leader and runs the factory;
    callers arriving while it runs await the leader's outcome, result or
    exception. When the leader is cancelled its followers retry, and one of
    them takes over.
    """

    def __init__(self):
        self.in_flight: dict[str, asyncio.Future] = {}  # key -> leader's pending outcome
        self.lock = Lock()

    async def run(self, key: str, factory: Callable[[], Awaitable[T]]) -> tuple[T, bool]:
        """Run ``factory`` for ``key`` unless it is already running

        Args:
            key (str): Coalescing key
            factory (Callable[[], Awaitable[T]]): Computation to run as leader

        Returns:
            tuple[T, bool]: The outcome and whether it came from another caller's computation
        """
        while True:
            async with self.lock:
                future = self.in_flight.get(key)
                leader = future is None
                if leader:
                    future = asyncio.get_running_loop().create_future()
                    self.in_flight[key] = future

            if not leader:
                try:
                    return await asyncio.shield(future), True
                except LeaderCancelled:
                    logging.info(f"Leader for {key} was cancelled, retrying")
                    continue

            try:
                result = await factory()
            except asyncio.CancelledError:
                self._settle(key, future, LeaderCancelled(key))
                raise
            except Exception as e:
                self._settle(key, future, e)
                raise
            self.in_flight.pop(key, None)
            future.set_result(result)
            return result, False

    def _settle(self, key: str, future: asyncio.Future, error: Exception) -> None:
        self.in_flight.pop(key, None)
        future.set_exception(error)
        # Mark retrieved so an outcome nobody awaited is not reported as lost.
        future.exception()

    def is_running(self, key: str) -> bool:
        return key in self.in_flight
