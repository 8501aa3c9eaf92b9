"""A single-worker job queue that runs submitted coroutines one at a time."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

Job = Callable[[], Awaitable[None]]


class SerialQueue:
    """Run submitted jobs in order on one worker task.

    Callers never wait for a job; failures are logged and do not stop the
    worker.
    """

    def __init__(self, name: str) -> None:
        """Initialise an idle queue.

        Args:
            name: Name used for the worker task and log messages.
        """
        self._name = name
        self._jobs: asyncio.Queue[Job] = asyncio.Queue()
        self._worker: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        """Whether the worker task is running."""
        return self._worker is not None and not self._worker.done()

    def start(self) -> None:
        """Start the worker task on the running loop."""
        if self.running:
            return
        self._worker = asyncio.get_running_loop().create_task(
            self._work(), name=f"{self._name}-worker"
        )

    def submit(self, job: Job) -> None:
        """Queue a job to run after the ones already queued."""
        self._jobs.put_nowait(job)

    async def join(self) -> None:
        """Wait until every queued job has run."""
        await self._jobs.join()

    async def stop(self) -> None:
        """Stop the worker; jobs still queued are dropped."""
        if self._worker is None:
            return
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None

    async def _work(self) -> None:
        while True:
            job = await self._jobs.get()
            try:
                await job()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Job failed on {self._name}: {e}", exc_info=True)
            finally:
                self._jobs.task_done()
