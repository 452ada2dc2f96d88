"""
Shared lifecycle for the long-lived workers (scheduler, crons, gateway).

Each worker exposes a blocking ``run()`` coroutine and a cooperative
``stop()``. ``run_workers`` starts them all, waits for the first one to
finish, then stops the rest: the process is only healthy while every worker
is running.
"""
import asyncio
import logging
from typing import Dict, Optional

logger = logging.getLogger("Workers")


def _running_loop() -> Optional[asyncio.AbstractEventLoop]:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None


class WakeSignal:
    """
    Single-slot wake notification carrying no payload.

    Notifications are not queued: any number of ``notify()`` calls made while
    the owner is busy coalesce into one pending wake-up. The owner re-reads
    its state from the store after waking, so nothing is lost by coalescing.
    ``notify()`` may be called from any thread once the signal is bound to a
    loop: it is bound on construction when created inside a running loop, or
    by the first ``wait()`` otherwise.
    """

    def __init__(self):
        self._event = asyncio.Event()
        self._loop: Optional[asyncio.AbstractEventLoop] = _running_loop()

    def notify(self) -> None:
        loop = self._loop
        if loop is None or loop is _running_loop():
            self._event.set()
        elif not loop.is_closed():
            loop.call_soon_threadsafe(self._event.set)

    def is_set(self) -> bool:
        return self._event.is_set()

    async def wait(self, timeout: Optional[float] = None) -> bool:
        """
        Block until notified or until timeout seconds pass.

        Returns True when woken by a notification, False on timeout. Either
        way the pending notification is consumed.
        """
        self._loop = asyncio.get_running_loop()
        try:
            await asyncio.wait_for(self._event.wait(), timeout)
            notified = True
        except asyncio.TimeoutError:
            notified = False
        self._event.clear()
        return notified


class Worker:
    """Base class for a long-lived component supervised by run_workers."""

    name = "worker"

    def __init__(self):
        self.wake = WakeSignal()
        self._stopping = False

    @property
    def stopping(self) -> bool:
        return self._stopping

    async def run(self) -> None:
        raise NotImplementedError

    def stop(self) -> None:
        """Ask the worker to return from run(); safe to call more than once."""
        if not self._stopping:
            logger.info(f"Stopping {self.name}.")
        self._stopping = True
        self.wake.notify()


async def _shutdown(tasks: Dict[asyncio.Task, Worker], grace_period: float) -> None:
    for worker in tasks.values():
        worker.stop()

    pending = [task for task in tasks if not task.done()]
    if pending:
        _, stragglers = await asyncio.wait(pending, timeout=grace_period)
        for task in stragglers:
            logger.warning(
                f"{tasks[task].name} did not stop within {grace_period}s, cancelling."
            )
            task.cancel()
        if stragglers:
            await asyncio.gather(*stragglers, return_exceptions=True)


async def run_workers(*workers: Worker, grace_period: float = 10.0) -> None:
    """
    Run every worker until the first one finishes, then stop the others.

    If the first worker to finish raised, that exception is re-raised once
    all workers are down. A worker returning normally is a clean shutdown.
    Cancelling run_workers stops every worker the same way.
    """
    tasks = {
        asyncio.create_task(worker.run(), name=worker.name): worker
        for worker in workers
    }
    logger.info(f"Started workers: {', '.join(w.name for w in workers)}.")

    try:
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    finally:
        await _shutdown(tasks, grace_period)

    failure: Optional[BaseException] = None
    for task, worker in tasks.items():
        if task.cancelled():
            continue
        exc = task.exception()
        if exc is None:
            continue
        if failure is None and task in done:
            failure = exc
        else:
            logger.error(f"{worker.name} also failed during shutdown: {exc!r}")

    if failure is not None:
        failed = next(t for t in done if not t.cancelled() and t.exception() is failure)
        logger.error(f"{tasks[failed].name} failed, all workers stopped.")
        raise failure
    logger.info("All workers stopped.")
