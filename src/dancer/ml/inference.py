"""Inference concurrency layer.

Architecture:
    FastAPI (async) -> asyncio.Semaphore(N) -> ThreadPoolExecutor(N) -> classify()
    FastAPI (async) -> ThreadPoolExecutor(1) -> start() / stop()

Classification is CPU-bound and runs on its own pool; model load/unload may
block and runs on a separate single-thread I/O pool so it never competes with
frames for a worker. Requests beyond the semaphore limit queue with a 5s
timeout, then get 503.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import Callable

    from dancer.config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

SEMAPHORE_TIMEOUT_SECONDS: float = 5.0


class InferencePool:
    """Manages the semaphore and thread pools for classification and lifecycle work."""

    def __init__(self, settings: Settings) -> None:
        self._semaphore = asyncio.Semaphore(settings.max_concurrent)
        self._executor = ThreadPoolExecutor(
            max_workers=settings.max_concurrent,
            thread_name_prefix="dancer-classify",
        )
        self._io_executor = ThreadPoolExecutor(
            max_workers=1,
            thread_name_prefix="dancer-lifecycle",
        )
        self._active_count: int = 0
        self._queue_depth: int = 0
        self._counter_lock = threading.Lock()

    async def run(self, func: Callable[..., T], *args: object) -> T:
        """Submit a CPU-bound function to the classification thread pool.

        Acquires the semaphore (with timeout), runs the function in the
        executor, then releases.

        Raises:
            TimeoutError: If the semaphore cannot be acquired within the timeout.
        """
        with self._counter_lock:
            self._queue_depth += 1
        try:
            await asyncio.wait_for(
                self._semaphore.acquire(),
                timeout=SEMAPHORE_TIMEOUT_SECONDS,
            )
        finally:
            with self._counter_lock:
                self._queue_depth -= 1

        with self._counter_lock:
            self._active_count += 1
        try:
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(self._executor, func, *args)
        finally:
            self._semaphore.release()
            with self._counter_lock:
                self._active_count -= 1

    async def run_io(self, func: Callable[..., T], *args: object) -> T:
        """Run a blocking lifecycle operation (model load/unload) off the event loop."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._io_executor, func, *args)

    @property
    def active_count(self) -> int:
        """Number of currently running classification tasks."""
        with self._counter_lock:
            return self._active_count

    @property
    def queue_depth(self) -> int:
        """Number of requests waiting for a semaphore slot."""
        with self._counter_lock:
            return self._queue_depth

    def shutdown(self) -> None:
        """Shut down both thread pool executors."""
        self._executor.shutdown(wait=True)
        self._io_executor.shutdown(wait=True)
        logger.debug("Inference pools shut down")
