"""
Tests for the recurring cron engine.

Covers expression validation, next-fire computation and the generation
lifecycle: build from the cron table, fire, tear down on reconfigure.
"""

import asyncio
import shutil
import tempfile
import threading
import unittest
from datetime import datetime, timezone
import sys
import os

import pytz

# Add parent directory to path to import dispatcher modules
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from dispatcher.callbacks import CronFailed
from dispatcher.crons import (
    CronEngine,
    InvalidCronExpression,
    next_fire_time,
    validate_expression,
)
from dispatcher.models import CronDescriptor
from dispatcher.store import Store, StoreError

EVERY_SECOND = "* * * * * *"
ONCE_A_YEAR = "0 0 0 1 1 *"
NEVER = "0 0 0 30 2 *"


class RecordingSender:
    """Stands in for CallbackSender and remembers every cron firing."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.fired = []
        self._lock = threading.Lock()

    def send_job(self, job):
        raise AssertionError("the cron engine never sends job callbacks")

    def send_cron(self, cron_id):
        with self._lock:
            self.fired.append(cron_id)
        if self.fail:
            raise CronFailed("non-ok status code 503: Service Unavailable")

    def count(self, cron_id):
        with self._lock:
            return self.fired.count(cron_id)


class UnreadableStore(Store):
    def list_crons(self):
        raise StoreError("connection refused")


async def wait_until(predicate, timeout: float = 5.0) -> bool:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            return False
        await asyncio.sleep(0.02)
    return True


class TestValidateExpression(unittest.TestCase):

    def test_valid_expressions(self):
        for expression in (
            "*/30 * * * * *",
            "0 * * * * *",
            "0 0 9 * * MON-FRI",
            "15,45 */5 * * * *",
            "@hourly",
            "@daily",
        ):
            with self.subTest(expression=expression):
                validate_expression(expression)

    def test_invalid_expressions(self):
        for expression in (
            "",
            "   ",
            "* * * * *",  # five fields: seconds are required
            "* * * * * * *",
            "61 * * * * *",
            "0 99 * * * *",
            "not a cron",
            "0 0 0 30 2 *",  # 30 February never comes
            None,
        ):
            with self.subTest(expression=expression):
                with self.assertRaises(InvalidCronExpression):
                    validate_expression(expression)

    def test_invalid_is_a_value_error(self):
        with self.assertRaises(ValueError):
            validate_expression("* * * * *")


class TestNextFireTime(unittest.TestCase):

    def test_seconds_field_comes_first(self):
        after = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
        self.assertEqual(
            next_fire_time("*/30 * * * * *", after),
            datetime(2024, 1, 1, 12, 0, 30, tzinfo=timezone.utc),
        )

    def test_top_of_minute(self):
        after = datetime(2024, 1, 1, 12, 0, 30, tzinfo=timezone.utc)
        self.assertEqual(
            next_fire_time("0 * * * * *", after),
            datetime(2024, 1, 1, 12, 1, 0, tzinfo=timezone.utc),
        )

    def test_strictly_after(self):
        """A trigger fires at most once per matching instant."""
        at_match = datetime(2024, 1, 1, 12, 1, 0, tzinfo=timezone.utc)
        self.assertEqual(
            next_fire_time("0 * * * * *", at_match),
            datetime(2024, 1, 1, 12, 2, 0, tzinfo=timezone.utc),
        )

    def test_timezone(self):
        """09:00 in Hong Kong is 01:00 UTC."""
        after = datetime(2024, 1, 1, 0, 0, 0, tzinfo=timezone.utc)
        fire_at = next_fire_time("0 0 9 * * *", after, pytz.timezone("Asia/Hong_Kong"))
        self.assertEqual(fire_at, datetime(2024, 1, 1, 1, 0, 0, tzinfo=timezone.utc))
        self.assertEqual(fire_at.tzinfo, timezone.utc)

    def test_descriptor(self):
        after = datetime(2024, 1, 1, 12, 30, 0, tzinfo=timezone.utc)
        self.assertEqual(
            next_fire_time("@hourly", after),
            datetime(2024, 1, 1, 13, 0, 0, tzinfo=timezone.utc),
        )


class CronEngineTestCase(unittest.IsolatedAsyncioTestCase):
    store_class = Store

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp(prefix="dispatcher_crons_test_")
        self.store = self.store_class.from_url(
            f"sqlite:///{os.path.join(self.tmpdir, 'dispatcher.db')}"
        )
        self.store.init_schema()
        self.sender = RecordingSender()
        self.engine = CronEngine(self.store, self.sender)
        self.task = None

    async def asyncTearDown(self):
        if self.task is not None:
            self.engine.stop()
            try:
                await asyncio.wait_for(self.task, timeout=5)
            except StoreError:
                pass

    def tearDown(self):
        self.store.close()
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def start(self):
        self.task = asyncio.create_task(self.engine.run())


class TestReconfigure(CronEngineTestCase):

    async def test_reconfigure_replaces_table_and_signals(self):
        self.store.insert_cron(CronDescriptor(id="old", schedule_expression=EVERY_SECOND))

        count = await self.engine.reconfigure([
            CronDescriptor(id="a", schedule_expression="*/30 * * * * *"),
            CronDescriptor(id="b", schedule_expression="0 * * * * *"),
        ])

        self.assertEqual(count, 2)
        self.assertEqual([c.id for c in self.store.list_crons()], ["a", "b"])
        self.assertTrue(self.engine.wake.is_set())

    async def test_invalid_expression_leaves_table_untouched(self):
        self.store.insert_cron(CronDescriptor(id="old", schedule_expression=EVERY_SECOND))

        with self.assertRaises(InvalidCronExpression):
            await self.engine.reconfigure([
                CronDescriptor(id="a", schedule_expression="*/30 * * * * *"),
                CronDescriptor(id="b", schedule_expression="* * * * *"),
            ])

        self.assertEqual([c.id for c in self.store.list_crons()], ["old"])
        self.assertFalse(self.engine.wake.is_set())


class TestGenerations(CronEngineTestCase):

    async def test_builds_one_trigger_per_descriptor(self):
        self.store.replace_crons([
            CronDescriptor(id=f"job-{n}", schedule_expression=ONCE_A_YEAR) for n in range(3)
        ])

        self.start()

        self.assertTrue(await wait_until(lambda: self.engine.active_triggers == 3))

    async def test_trigger_fires_callback_with_its_id(self):
        self.store.replace_crons([CronDescriptor(id="a", schedule_expression=EVERY_SECOND)])

        self.start()

        self.assertTrue(await wait_until(lambda: self.sender.count("a") >= 2, timeout=4))

    async def test_reconfigure_rebuilds_with_exactly_the_new_set(self):
        self.store.replace_crons([CronDescriptor(id="a", schedule_expression=ONCE_A_YEAR)])
        self.start()
        self.assertTrue(await wait_until(lambda: self.engine.active_triggers == 1))
        generation = self.engine.generation

        await self.engine.reconfigure([
            CronDescriptor(id=f"job-{n}", schedule_expression=ONCE_A_YEAR) for n in range(4)
        ])

        self.assertTrue(await wait_until(
            lambda: self.engine.generation > generation and self.engine.active_triggers == 4
        ))

    async def test_replaced_generation_never_fires_again(self):
        self.store.replace_crons([CronDescriptor(id="old", schedule_expression=EVERY_SECOND)])
        self.start()
        self.assertTrue(await wait_until(lambda: self.sender.count("old") >= 1, timeout=3))
        generation = self.engine.generation

        await self.engine.reconfigure([CronDescriptor(id="new", schedule_expression=ONCE_A_YEAR)])
        self.assertTrue(await wait_until(lambda: self.engine.generation > generation))
        await asyncio.sleep(0.2)
        fired_before = self.sender.count("old")

        await asyncio.sleep(1.5)

        self.assertEqual(self.sender.count("old"), fired_before)
        self.assertEqual(self.engine.active_triggers, 1)

    async def test_empty_reconfigure_stops_all_triggers(self):
        self.store.replace_crons([CronDescriptor(id="a", schedule_expression=EVERY_SECOND)])
        self.start()
        self.assertTrue(await wait_until(lambda: self.engine.active_triggers == 1))

        await self.engine.reconfigure([])

        self.assertTrue(await wait_until(lambda: self.engine.active_triggers == 0))

    async def test_delivery_failure_keeps_trigger_active(self):
        self.sender.fail = True
        self.store.replace_crons([CronDescriptor(id="a", schedule_expression=EVERY_SECOND)])

        self.start()

        self.assertTrue(await wait_until(lambda: self.sender.count("a") >= 2, timeout=4))
        self.assertFalse(self.task.done())
        self.assertEqual(self.engine.active_triggers, 1)

    async def test_invalid_stored_expression_is_skipped(self):
        self.store.insert_cron(CronDescriptor(id="broken", schedule_expression="* * * * *"))
        self.store.insert_cron(CronDescriptor(id="fine", schedule_expression=ONCE_A_YEAR))

        self.start()

        self.assertTrue(await wait_until(lambda: self.engine.active_triggers == 1))
        self.assertFalse(self.task.done())

    async def test_stored_expression_that_never_fires_is_skipped(self):
        self.store.insert_cron(CronDescriptor(id="feb30", schedule_expression=NEVER))
        self.store.insert_cron(CronDescriptor(id="fine", schedule_expression=ONCE_A_YEAR))

        with self.assertLogs("Crons", level="ERROR") as logs:
            self.start()
            self.assertTrue(await wait_until(lambda: self.engine.active_triggers == 1))

        self.assertTrue(any("feb30" in line for line in logs.output))
        self.assertFalse(self.task.done())

    async def test_trigger_that_cannot_schedule_logs_and_ends(self):
        descriptor = CronDescriptor(id="feb30", schedule_expression=NEVER)
        trigger = asyncio.create_task(
            self.engine._run_trigger(descriptor, self.engine.generation)
        )
        self.engine._triggers[descriptor.id] = trigger

        with self.assertLogs("Crons", level="ERROR") as logs:
            await asyncio.wait_for(trigger, timeout=5)

        self.assertIsNone(trigger.exception())
        self.assertIn("feb30", logs.output[0])
        self.assertEqual(self.engine.active_triggers, 0)
        self.assertEqual(self.sender.fired, [])

    async def test_stop_tears_down(self):
        self.store.replace_crons([CronDescriptor(id="a", schedule_expression=EVERY_SECOND)])
        self.start()
        self.assertTrue(await wait_until(lambda: self.engine.active_triggers == 1))

        self.engine.stop()
        await asyncio.wait_for(self.task, timeout=2)

        self.assertEqual(self.engine.active_triggers, 0)


class TestBuildFailure(CronEngineTestCase):
    store_class = UnreadableStore

    async def test_store_error_ends_run(self):
        with self.assertRaises(StoreError):
            await asyncio.wait_for(self.engine.run(), timeout=2)


if __name__ == '__main__':
    unittest.main()
