"""
One-shot job scheduler.

The scheduler is asleep except when work is due:
1. Sweep: dispatch every job whose scheduled_for has passed, then delete it
2. Look up the earliest remaining job
3. Sleep until that job is due, or indefinitely when there is none

Creating or cancelling a job wakes the scheduler so it re-derives its sleep
target from the store instead of trusting a stale timer.
"""
import asyncio
import logging
from datetime import datetime
from typing import Optional

from dispatcher.callbacks import CallbackSender, DeliveryFailure
from dispatcher.store import Store
from dispatcher.utils import get_utc_now, seconds_until, to_utc
from dispatcher.workers import Worker

logger = logging.getLogger("Scheduler")


class OneShotScheduler(Worker):
    name = "scheduler"

    def __init__(self, store: Store, sender: CallbackSender):
        super().__init__()
        self.store = store
        self.sender = sender
        self._sweep_lock = asyncio.Lock()

    async def run(self) -> None:
        """
        Main scheduler loop.

        Store failures are not caught here: a scheduler that cannot read or
        delete jobs is stopped and the error propagates to the supervisor.
        """
        logger.info("Started scheduler.")
        while not self.stopping:
            logger.debug("Scheduler woke up.")
            await self.sweep()
            if self.stopping:
                break

            next_due = await asyncio.to_thread(self.store.next_due_time)
            if next_due is None:
                logger.info("Scheduler waiting for job.")
                await self.wake.wait()
            else:
                logger.info(f"Scheduler sleeping until {next_due.isoformat()}.")
                await self.wake.wait(timeout=seconds_until(next_due))
        logger.info("Closed scheduler.")

    async def sweep(self) -> int:
        """Dispatch and delete every job that is due now. Returns how many."""
        async with self._sweep_lock:
            now = get_utc_now()
            jobs = await asyncio.to_thread(self.store.list_due_jobs, now)
            for job in jobs:
                try:
                    await asyncio.to_thread(self.sender.send_job, job)
                    logger.info(f"Executed job {job.id}.")
                except DeliveryFailure as e:
                    logger.warning(f"Failed to execute job {job.id}: {e}")
                await asyncio.to_thread(self.store.delete_job, job.id)
            if jobs:
                logger.info(f"Executed {len(jobs)} jobs.")
            return len(jobs)

    async def create_job(self, due_time: datetime, body: Optional[bytes]) -> str:
        """Persist a new job and wake the scheduler. Returns the job id."""
        job = await asyncio.to_thread(self.store.insert_job, to_utc(due_time), body)
        logger.info(f"New job with id {job.id} scheduled for {job.scheduled_for.isoformat()}.")
        self.wake.notify()
        return job.id

    async def cancel_job(self, job_id: str) -> bool:
        """
        Delete a pending job.

        Cancelling an unknown (or already dispatched) id is not an error and
        leaves the scheduler asleep. Returns True when a job was deleted.
        """
        deleted = await asyncio.to_thread(self.store.delete_job, job_id)
        if not deleted:
            logger.debug(f"Job {job_id} not found, nothing to cancel.")
            return False
        self.wake.notify()
        logger.info(f"Deleted job {job_id}.")
        return True
