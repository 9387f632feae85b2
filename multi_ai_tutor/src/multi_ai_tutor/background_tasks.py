"""
Background Task Supervisor

Fire-and-forget work (persistence, evidence extraction, enrichment, audit
logging) runs through one supervisor so every task gets the same error
boundary: failures are logged and dropped, never surfaced to the learner.
"""

import asyncio
import logging
import time
from typing import Awaitable, Dict, Set

logger = logging.getLogger(__name__)


class BackgroundTaskSupervisor:
    def __init__(self):
        self._tasks: Set[asyncio.Task] = set()
        self.stats: Dict[str, int] = {"submitted": 0, "succeeded": 0, "failed": 0}

    def submit(self, name: str, coro: Awaitable) -> asyncio.Task:
        """
        Schedule a coroutine in the background.

        Args:
            name: Label used in logs
            coro: Coroutine to run

        Returns:
            The scheduled task
        """
        task = asyncio.create_task(self._run(name, coro), name=f"bg:{name}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        self.stats["submitted"] += 1
        return task

    async def _run(self, name: str, coro: Awaitable):
        start = time.time()
        try:
            result = await coro
        except asyncio.CancelledError:
            logger.info(f"🛑 [Background] Task '{name}' cancelled")
            raise
        except Exception as e:
            self.stats["failed"] += 1
            logger.error(f"❌ [Background] Task '{name}' failed: {e}", exc_info=True)
            return None

        self.stats["succeeded"] += 1
        elapsed = (time.time() - start) * 1000
        logger.debug(f"[Background] Task '{name}' finished in {elapsed:.0f}ms")
        return result

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self, timeout: float = None):
        """Wait for all pending tasks (shutdown and tests)."""
        while self._tasks:
            tasks = list(self._tasks)
            done, pending = await asyncio.wait(tasks, timeout=timeout)
            if pending:
                logger.warning(f"⚠️ [Background] {len(pending)} task(s) still running after drain timeout")
                return
