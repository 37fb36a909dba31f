"""Bookkeeping of live subscriptions for coordinated shutdown."""

import asyncio
from dataclasses import dataclass, field
from typing import Protocol

from .log import Logger, get_logger

__all__ = ['Drainable', 'SubscriptionRegistry']


class Drainable(Protocol):
    """A handle to a live subscription (or a runner wrapping one)."""

    async def drain(self, /) -> None:
        """Stop intake gracefully and let in-flight work finish."""

    async def unsubscribe(self, /) -> None:
        """Stop intake immediately."""


@dataclass
class SubscriptionRegistry:
    """A set of live subscription handles.

    Handles register themselves when created and unregister themselves when their
    message loops end, which may happen while :meth:`drain_all` is running.

    Parameters:
        logger: A logger instance.
    """

    logger: Logger = field(default_factory=get_logger)
    handles: set[Drainable] = field(default_factory=set, init=False, repr=False)

    def __len__(self, /) -> int:
        return len(self.handles)

    def __contains__(self, handle: object, /) -> bool:
        return handle in self.handles

    def register(self, handle: Drainable, /) -> None:
        self.handles.add(handle)

    def unregister(self, handle: Drainable, /) -> None:
        self.handles.discard(handle)

    async def _drain_one(self, handle: Drainable, /) -> None:
        try:
            await handle.drain()
        except Exception as exc:
            await self.logger.awarning(
                'Drain failed, unsubscribing instead',
                handle=repr(handle),
                exc_info=exc,
            )
            try:
                await handle.unsubscribe()
            except Exception as unsub_exc:
                await self.logger.aerror(
                    'Unsubscribe failed',
                    handle=repr(handle),
                    exc_info=unsub_exc,
                )
        finally:
            self.unregister(handle)

    async def drain_all(self, /) -> None:
        """Drain every registered handle concurrently until the registry is empty.

        A handle whose drain fails is forcibly unsubscribed instead. Handles registered
        while a drain is in progress are drained in a later pass.
        """
        while self.handles:
            handles = list(self.handles)
            await self.logger.ainfo('Draining subscriptions', count=len(handles))
            await asyncio.gather(*(self._drain_one(handle) for handle in handles))
