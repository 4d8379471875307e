"""Inference concurrency layer.

Architecture:
    FastAPI (async) -> per-client slot -> asyncio.Semaphore(N) -> ThreadPoolExecutor(N) -> ONNX inference

Each client holds at most one in-flight prediction. Submitting a new one
cancels the previous request, whose caller gets ``PredictionSupersededError``.
A worker thread already inside ONNX Runtime cannot be interrupted; it runs to
completion and its result is dropped, but it keeps its semaphore slot and
counts as active until it does.

Requests beyond the semaphore limit queue with a 5s timeout, then get 503.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import Callable

    from reefid.config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

SEMAPHORE_TIMEOUT_SECONDS: float = 5.0


class PredictionSupersededError(Exception):
    """A newer request from the same client replaced this one."""


class InferencePool:
    """Manages client slots, the semaphore, and the thread pool for ML inference."""

    def __init__(self, settings: Settings) -> None:
        self._semaphore = asyncio.Semaphore(settings.max_concurrent)
        self._executor = ThreadPoolExecutor(
            max_workers=settings.max_concurrent,
            thread_name_prefix="onnx-inference",
        )
        self._active_count: int = 0
        self._queue_depth: int = 0
        self._counter_lock = threading.Lock()
        self._slots: dict[str, asyncio.Future[object]] = {}

    async def run(self, func: Callable[..., T], *args: object, key: str | None = None) -> T:
        """Submit a synchronous function to the inference thread pool.

        With a ``key``, any earlier request still running under the same key
        is cancelled first.

        Raises:
            TimeoutError: If the semaphore cannot be acquired within the timeout.
            PredictionSupersededError: If a newer request with the same key
                replaced this one before it finished.
        """
        if key is None:
            return await self._run(func, *args)

        previous = self._slots.get(key)
        if previous is not None and not previous.done():
            logger.info("Superseding in-flight prediction for client %s", key)
            previous.cancel()

        task = asyncio.ensure_future(self._run(func, *args))
        self._slots[key] = task
        try:
            return await task
        except asyncio.CancelledError:
            if task.cancelled() and self._slots.get(key) is not task:
                raise PredictionSupersededError(f"Superseded by a newer request from {key}") from None
            raise
        finally:
            if self._slots.get(key) is task:
                del self._slots[key]

    async def _run(self, func: Callable[..., T], *args: object) -> T:
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
        loop = asyncio.get_running_loop()
        try:
            future = self._executor.submit(func, *args)
        except BaseException:
            self._release_worker(loop)
            raise
        # Released when the worker thread finishes, not when the awaiting
        # task is cancelled.
        future.add_done_callback(lambda _: self._release_worker(loop))
        return await asyncio.wrap_future(future)

    def _release_worker(self, loop: asyncio.AbstractEventLoop) -> None:
        with self._counter_lock:
            self._active_count -= 1
        if not loop.is_closed():
            loop.call_soon_threadsafe(self._semaphore.release)

    @property
    def active_count(self) -> int:
        """Number of currently running inference tasks."""
        with self._counter_lock:
            return self._active_count

    @property
    def queue_depth(self) -> int:
        """Number of requests waiting for a semaphore slot."""
        with self._counter_lock:
            return self._queue_depth

    @property
    def pending_clients(self) -> list[str]:
        """Client keys that currently hold a slot."""
        return [key for key, task in self._slots.items() if not task.done()]

    def shutdown(self) -> None:
        """Shut down the thread pool executor."""
        self._executor.shutdown(wait=True)
