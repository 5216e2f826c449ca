import asyncio
from typing import Awaitable, List, Optional, TypeVar
from errors import OperationCancelled

T = TypeVar("T")


class CancellationToken:
    """
    Cooperative cancellation shared by every stage of one run.
    Loops call raise_if_cancelled() at their boundaries; in-flight calls that
    should stop early are wrapped in guard().
    """

    def __init__(self):
        self._event = asyncio.Event()
        self._reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> None:
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelled(self._reason)

    async def wait(self) -> None:
        await self._event.wait()

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """Await `awaitable`, abandoning it if the token fires first."""
        self.raise_if_cancelled()
        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
        if work in done:
            return work.result()
        work.cancel()
        raise OperationCancelled(self._reason)


def ensure_token(token: Optional[CancellationToken]) -> CancellationToken:
    """Callers without a token get a fresh one that never fires."""
    return token if token is not None else CancellationToken()


async def gather_or_cancel(*awaitables: Awaitable[T]) -> List[T]:
    """
    Like asyncio.gather, but the first failure cancels the remaining
    siblings and waits for them to unwind before it is re-raised.
    Results come back in argument order.
    """
    tasks = [asyncio.ensure_future(a) for a in awaitables]
    if not tasks:
        return []
    try:
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
    except asyncio.CancelledError:
        pending = {t for t in tasks if not t.done()}
        for t in pending:
            t.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        raise
    failed = next((t for t in tasks if t in done and not t.cancelled() and t.exception() is not None), None)
    if failed is not None:
        for t in pending:
            t.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        raise failed.exception()
    return [t.result() for t in tasks]
