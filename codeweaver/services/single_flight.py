"""
Single-flight request coalescing

At most one generation runs per cache key. Callers arriving while a key is
in flight subscribe to the leader's result instead of issuing their own
request.

If the leader is cancelled (e.g. by a caller timeout) its subscribers
receive GenerationTimeoutError instead of waiting forever.
"""

import asyncio
import logging
from typing import Dict, Callable, Awaitable, TypeVar

from codeweaver.services.errors import GenerationTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _mark_retrieved(future: asyncio.Future) -> None:
    # Avoid "exception was never retrieved" when nobody subscribed
    if not future.cancelled():
        future.exception()


class SingleFlight:
    """Per-key in-flight call registry"""

    def __init__(self):
        self._inflight: Dict[str, asyncio.Future] = {}
        self.coalesced = 0

    def in_flight(self, key: str) -> bool:
        return key in self._inflight

    async def run(self, key: str, factory: Callable[[], Awaitable[T]]) -> T:
        """
        Run factory() for key, or join the call already running for key.

        Raises:
            Whatever the leader raised; GenerationTimeoutError for
            subscribers of a cancelled leader
        """
        existing = self._inflight.get(key)
        if existing is not None:
            self.coalesced += 1
            logger.debug(f"Joining in-flight generation for {key}")
            # shield: a subscriber's own cancellation must not cancel the shared result
            return await asyncio.shield(existing)

        future = asyncio.get_running_loop().create_future()
        future.add_done_callback(_mark_retrieved)
        self._inflight[key] = future

        try:
            result = await factory()
        except asyncio.CancelledError:
            if not future.done():
                future.set_exception(GenerationTimeoutError(f"Generation for {key} was cancelled"))
            raise
        except Exception as e:
            if not future.done():
                future.set_exception(e)
            raise
        else:
            future.set_result(result)
            return result
        finally:
            if self._inflight.get(key) is future:
                del self._inflight[key]
