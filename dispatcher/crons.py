"""
Recurring cron engine.

The engine cycles through generations: BUILDING (load every descriptor from
the cron table and start one trigger per descriptor), RUNNING (wait for a
reconfigure signal) and TEARDOWN (cancel the triggers of the generation).
Reconfiguring replaces the cron table wholesale and signals the engine; the
last full push wins.
"""
import asyncio
import logging
from datetime import datetime
from typing import Dict, Iterable, List, Set

import pytz
from croniter import CroniterBadDateError, croniter

from dispatcher.callbacks import CallbackSender, DeliveryFailure
from dispatcher.models import CronDescriptor
from dispatcher.store import Store
from dispatcher.utils import get_utc_now, seconds_until, to_utc
from dispatcher.workers import Worker

logger = logging.getLogger("Crons")

CRON_FIELDS = 6  # second minute hour day-of-month month day-of-week


class InvalidCronExpression(ValueError):
    """The schedule expression is not a six-field cron expression or descriptor."""


def _schedule(expression: str, start: datetime) -> croniter:
    expression = expression.strip()
    try:
        if expression.startswith("@"):
            return croniter(expression.lower(), start)
        fields = expression.split()
        if len(fields) != CRON_FIELDS:
            raise InvalidCronExpression(
                f"expected {CRON_FIELDS} fields (seconds first), got {len(fields)}: {expression!r}"
            )
        return croniter(expression, start, second_at_beginning=True)
    except InvalidCronExpression:
        raise
    except (ValueError, KeyError, TypeError) as e:
        raise InvalidCronExpression(f"invalid cron expression {expression!r}: {e}") from e


def validate_expression(expression: str) -> None:
    """Raise InvalidCronExpression unless the expression parses and ever fires."""
    if not isinstance(expression, str) or not expression.strip():
        raise InvalidCronExpression("cron expression must be a non-empty string")
    next_fire_time(expression, get_utc_now())


def next_fire_time(expression: str, after: datetime, tz=pytz.utc) -> datetime:
    """First instant strictly after `after` matching the expression in tz, as UTC."""
    start = to_utc(after).astimezone(tz)
    schedule = _schedule(expression, start)
    try:
        fire_at = schedule.get_next(datetime)
    except CroniterBadDateError as e:
        raise InvalidCronExpression(f"cron expression {expression!r} never fires: {e}") from e
    return to_utc(fire_at)


class CronEngine(Worker):
    name = "crons"

    def __init__(self, store: Store, sender: CallbackSender, timezone: str = "UTC"):
        super().__init__()
        self.store = store
        self.sender = sender
        self.tz = pytz.timezone(timezone)
        self.generation = 0
        self._triggers: Dict[str, asyncio.Task] = {}
        self._firings: Set[asyncio.Task] = set()

    @property
    def active_triggers(self) -> int:
        return sum(1 for trigger in self._triggers.values() if not trigger.done())

    async def run(self) -> None:
        logger.info("Started crons.")
        try:
            while not self.stopping:
                descriptors = await asyncio.to_thread(self.store.list_crons)
                self._build(descriptors)
                logger.info(
                    f"Started crons w/ {self.active_triggers} jobs "
                    f"(generation {self.generation})."
                )
                await self.wake.wait()
                if self.stopping:
                    break
                logger.info("Got crons recompute request, tearing down.")
                await self._teardown()
        finally:
            await self._teardown()
            if self._firings:
                await asyncio.gather(*self._firings, return_exceptions=True)
            logger.info("Closed crons.")

    async def reconfigure(self, descriptors: Iterable[CronDescriptor]) -> int:
        """
        Replace the whole recurring set and signal the engine to rebuild.

        Every expression is validated before the cron table is touched, and
        the table is replaced in one transaction, so a failed call leaves
        the previous set in place. Returns the number of descriptors stored.
        """
        descriptors = list(descriptors)
        for descriptor in descriptors:
            validate_expression(descriptor.schedule_expression)
        count = await asyncio.to_thread(self.store.replace_crons, descriptors)
        self.wake.notify()
        return count

    def _build(self, descriptors: List[CronDescriptor]) -> None:
        generation = self.generation
        for descriptor in descriptors:
            try:
                validate_expression(descriptor.schedule_expression)
            except InvalidCronExpression as e:
                logger.error(f"Skipping cron job {descriptor.id}: {e}")
                continue
            self._triggers[descriptor.id] = asyncio.create_task(
                self._run_trigger(descriptor, generation), name=f"cron:{descriptor.id}"
            )

    async def _teardown(self) -> None:
        """Stop the current generation; deliveries already under way finish on their own."""
        self.generation += 1
        triggers = list(self._triggers.values())
        self._triggers.clear()
        for trigger in triggers:
            trigger.cancel()
        if triggers:
            await asyncio.gather(*triggers, return_exceptions=True)

    async def _run_trigger(self, descriptor: CronDescriptor, generation: int) -> None:
        fire_at = get_utc_now()
        while True:
            try:
                fire_at = next_fire_time(
                    descriptor.schedule_expression, max(get_utc_now(), fire_at), self.tz
                )
            except InvalidCronExpression as e:
                logger.error(f"Cron job {descriptor.id} stopped: {e}")
                return
            while seconds_until(fire_at) > 0:
                await asyncio.sleep(seconds_until(fire_at))
            if generation != self.generation or self.stopping:
                return
            self._fire(descriptor)

    def _fire(self, descriptor: CronDescriptor) -> None:
        firing = asyncio.create_task(self._deliver(descriptor))
        self._firings.add(firing)
        firing.add_done_callback(self._firings.discard)

    async def _deliver(self, descriptor: CronDescriptor) -> None:
        try:
            await asyncio.to_thread(self.sender.send_cron, descriptor.id)
        except DeliveryFailure as e:
            logger.warning(
                f"Failed to execute cron job {descriptor.id} "
                f"({descriptor.schedule_expression}): {e}"
            )
            return
        logger.info(
            f"Executed cron job {descriptor.id} ({descriptor.schedule_expression})."
        )
