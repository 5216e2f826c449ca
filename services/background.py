import asyncio
import logging
from typing import Awaitable, Callable, Set

logger = logging.getLogger(__name__)


class BackgroundWriter:
    """
    Fire-and-forget jobs (cache writes, domain recomputes, access bumps).
    The pipeline never awaits a job; failures go to the log and nowhere else.
    """

    def __init__(self):
        self._tasks: Set[asyncio.Task] = set()
        self.failures = 0

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def submit(self, job: Callable[[], Awaitable[None]], label: str) -> None:
        async def _run():
            try:
                await job()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.failures += 1
                logger.error(f"Background job '{label}' failed: {e}", exc_info=True)

        task = asyncio.create_task(_run())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def drain(self) -> None:
        """Wait until every submitted job (including jobs they submit) has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
