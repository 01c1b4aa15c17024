"""
Tests for the CronJob lifecycle running on the runtime.

Each test uses a fresh in-memory database, a fixed clock that only moves when the
test advances it and a transport that records outbound calls instead of sending them.
"""

import asyncio
import json
import unittest
from datetime import datetime, timezone, timedelta
import sys
import os

from sqlalchemy.exc import OperationalError
from sqlalchemy.pool import StaticPool
from sqlmodel import create_engine

# Add parent directory to path to import cronjob modules
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from cronjob.dispatch import DispatchResolver, ScriptEvaluator
from cronjob.errors import (
    AlreadyExists,
    DispatchError,
    InvalidArgument,
    InvalidSchedule,
    NoUpcomingOccurrence,
    NotFound,
)
from cronjob.job import CronJob, CronJobClient
from cronjob.models import (
    CANCELLED,
    COMPLETED,
    PENDING,
    Invocation,
    JobSpec,
    JsonPayload,
    ObjectTarget,
    ScriptPayload,
    ServiceTarget,
    init_db,
)
from cronjob.runtime import RetryPolicy, Runtime
from cronjob.store import DurableStore

T0 = datetime(2024, 3, 1, 12, 0, 30, tzinfo=timezone.utc)

GREETER = JobSpec(
    schedule="0 */1 * * * *",
    target=ServiceTarget(name="Greeter", handler="greet"),
    payload=JsonPayload(content="World"),
)
HOURLY_COUNTER = JobSpec(
    schedule="0 0 * * * *",
    target=ObjectTarget(name="Counter", key="user-1", handler="add"),
    payload=JsonPayload(content={"amount": 1}),
)


def make_engine():
    engine = create_engine(
        "sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool
    )
    return init_db(engine)


class FixedClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class RecordingTransport:
    """Records outbound requests; fails them while `fail` is set."""

    def __init__(self):
        self.requests = []
        self.fail = False

    async def call(self, request):
        self.requests.append(request)
        if self.fail:
            raise DispatchError(f"Call to {request.path} returned 503", status_code=503)
        return {"ok": True}

    async def aclose(self):
        pass


class FlakyCronJob(CronJob):
    """CronJob whose next-run calculation can be made to fail on demand."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.transient_failures = 0
        self.exhausted = False

    def next_run_times(self, schedule, now):
        if self.transient_failures:
            self.transient_failures -= 1
            raise RuntimeError("database briefly unavailable")
        if self.exhausted:
            raise NoUpcomingOccurrence("No upcoming schedule found")
        return super().next_run_times(schedule, now)


class CronJobTestCase(unittest.IsolatedAsyncioTestCase):
    key = "greeter"

    async def asyncSetUp(self):
        self.clock = FixedClock(T0)
        self.transport = RecordingTransport()
        self.store = DurableStore(make_engine())
        self.runtime = Runtime(
            self.store,
            self.transport,
            retry_policy=RetryPolicy(initial_interval=0, max_interval=0, max_attempts=3),
            poll_interval=0.01,
            clock=self.clock,
        )
        self.job = FlakyCronJob(DispatchResolver(ScriptEvaluator()))
        self.runtime.bind(self.job)
        self.client = CronJobClient(self.runtime, self.key)

    def pending_runs(self, key=None):
        return self.store.pending_invocations(CronJob.service_name, key or self.key)

    async def fire_next_run(self):
        """Move the clock to the next due invocation and run everything that is due."""
        self.clock.now = self.store.next_due_at()
        await self.runtime.tick(wait=True)


class TestCreate(CronJobTestCase):
    async def test_create_then_get(self):
        await self.client.create(GREETER)

        self.assertEqual(await self.client.get(), GREETER)
        next_run = await self.client.get_next_run()
        self.assertEqual(next_run.timestamp, datetime(2024, 3, 1, 12, 1, 0, tzinfo=timezone.utc))

    async def test_create_arms_single_pending_run(self):
        await self.client.create(GREETER)

        pending = self.pending_runs()
        next_run = await self.client.get_next_run()
        self.assertEqual(len(pending), 1)
        self.assertEqual(pending[0].id, next_run.invocation_id)
        self.assertEqual(pending[0].handler, "run")
        self.assertEqual(pending[0].execute_at, next_run.timestamp)
        self.assertGreater(pending[0].execute_at, T0)

    async def test_next_run_wire_format(self):
        await self.client.create(GREETER)

        raw = await self.runtime.invoke(CronJob.service_name, self.key, "getNextRun")
        self.assertEqual(set(raw), {"invocationId", "timestamp"})
        self.assertTrue(raw["invocationId"].startswith("inv_"))

    async def test_create_twice_conflicts(self):
        await self.client.create(GREETER)

        with self.assertRaises(AlreadyExists) as cm:
            await self.client.create(HOURLY_COUNTER)
        self.assertEqual(cm.exception.code, 409)
        self.assertEqual(await self.client.get(), GREETER)
        self.assertEqual(len(self.pending_runs()), 1)

    async def test_concurrent_creates_on_same_key(self):
        results = await asyncio.gather(
            self.client.create(GREETER),
            self.client.create(HOURLY_COUNTER),
            return_exceptions=True,
        )

        self.assertIsNone(results[0])
        self.assertIsInstance(results[1], AlreadyExists)
        self.assertEqual(await self.client.get(), GREETER)
        self.assertEqual(len(self.pending_runs()), 1)

    async def test_invalid_schedule_persists_nothing(self):
        job = GREETER.model_copy(update={"schedule": "* * * 32 * *"})

        with self.assertRaises(InvalidSchedule):
            await self.client.create(job)
        self.assertEqual(self.store.load_state(CronJob.service_name, self.key), {})
        self.assertEqual(self.pending_runs(), [])
        with self.assertRaises(NotFound):
            await self.client.get()

    async def test_keys_are_independent(self):
        await self.client.create(GREETER)
        other = CronJobClient(self.runtime, "counter")
        await other.create(HOURLY_COUNTER)

        self.assertEqual(await self.client.get(), GREETER)
        self.assertEqual(await other.get(), HOURLY_COUNTER)
        self.assertEqual(len(self.pending_runs("counter")), 1)

    async def test_idempotent_retry_attaches_to_first_request(self):
        await self.client.create(GREETER, idempotency_key="req-1")
        await self.client.create(GREETER, idempotency_key="req-1")

        self.assertEqual(len(self.pending_runs()), 1)

    async def test_invalid_argument(self):
        with self.assertRaises(InvalidArgument) as cm:
            await self.runtime.invoke(
                CronJob.service_name, self.key, "create", {"schedule": "0 * * * * *"}
            )
        self.assertEqual(cm.exception.code, 400)
        self.assertEqual(self.pending_runs(), [])

    async def test_unknown_handler(self):
        with self.assertRaises(NotFound):
            await self.runtime.invoke(CronJob.service_name, self.key, "pause")


class TestReplace(CronJobTestCase):
    async def test_replace_resets_job(self):
        await self.client.create(GREETER)
        first_run = (await self.client.get_next_run()).invocation_id

        await self.client.replace(HOURLY_COUNTER)

        self.assertEqual(await self.client.get(), HOURLY_COUNTER)
        next_run = await self.client.get_next_run()
        self.assertEqual(next_run.timestamp, datetime(2024, 3, 1, 13, 0, 0, tzinfo=timezone.utc))
        self.assertNotEqual(next_run.invocation_id, first_run)
        self.assertEqual(self.store.get_invocation(first_run).status, CANCELLED)
        self.assertEqual([i.id for i in self.pending_runs()], [next_run.invocation_id])

    async def test_replace_creates_missing_job(self):
        await self.client.replace(GREETER)

        self.assertEqual(await self.client.get(), GREETER)
        self.assertEqual(len(self.pending_runs()), 1)

    async def test_invalid_replace_keeps_existing_job(self):
        await self.client.create(GREETER)
        before = await self.client.get_next_run()

        with self.assertRaises(InvalidSchedule):
            await self.client.replace(HOURLY_COUNTER.model_copy(update={"schedule": "*/5 * * * *"}))

        self.assertEqual(await self.client.get(), GREETER)
        self.assertEqual(await self.client.get_next_run(), before)
        self.assertEqual([i.id for i in self.pending_runs()], [before.invocation_id])


class TestCancel(CronJobTestCase):
    async def test_cancel_missing_job_succeeds(self):
        await self.client.cancel()

        self.assertEqual(self.store.load_state(CronJob.service_name, self.key), {})

    async def test_cancel_stops_recurrence(self):
        await self.client.create(GREETER)
        run_id = (await self.client.get_next_run()).invocation_id

        await self.client.cancel()

        with self.assertRaises(NotFound):
            await self.client.get()
        with self.assertRaises(NotFound):
            await self.client.get_next_run()
        self.assertEqual(self.store.get_invocation(run_id).status, CANCELLED)
        self.assertEqual(self.pending_runs(), [])

        self.clock.advance(minutes=5)
        await self.runtime.tick(wait=True)
        self.assertEqual(self.transport.requests, [])

    async def test_cancel_twice(self):
        await self.client.create(GREETER)
        await self.client.cancel()
        await self.client.cancel()

        self.assertEqual(self.pending_runs(), [])

    async def test_create_after_cancel(self):
        await self.client.create(GREETER)
        await self.client.cancel()
        await self.client.create(HOURLY_COUNTER)

        self.assertEqual(await self.client.get(), HOURLY_COUNTER)
        self.assertEqual(len(self.pending_runs()), 1)


class TestRun(CronJobTestCase):
    async def test_run_dispatches_and_rearms(self):
        await self.client.create(GREETER)
        first_run = (await self.client.get_next_run()).invocation_id

        await self.fire_next_run()

        self.assertEqual(len(self.transport.requests), 1)
        request = self.transport.requests[0]
        self.assertEqual(request.path, "/Greeter/greet")
        self.assertEqual(json.loads(request.body), "World")
        self.assertEqual(request.idempotency_key, first_run)

        next_run = await self.client.get_next_run()
        self.assertEqual(next_run.timestamp, datetime(2024, 3, 1, 12, 2, 0, tzinfo=timezone.utc))
        self.assertNotEqual(next_run.invocation_id, first_run)
        self.assertEqual(self.store.get_invocation(first_run).status, COMPLETED)
        self.assertEqual([i.id for i in self.pending_runs()], [next_run.invocation_id])

    async def test_job_keeps_firing(self):
        await self.client.create(GREETER)

        for _ in range(3):
            await self.fire_next_run()

        self.assertEqual(len(self.transport.requests), 3)
        keys = {request.idempotency_key for request in self.transport.requests}
        self.assertEqual(len(keys), 3)
        next_run = await self.client.get_next_run()
        self.assertEqual(next_run.timestamp, datetime(2024, 3, 1, 12, 4, 0, tzinfo=timezone.utc))

    async def test_run_survives_dispatch_failure(self):
        await self.client.create(GREETER)
        before = await self.client.get_next_run()
        self.transport.fail = True

        await self.fire_next_run()

        after = await self.client.get_next_run()
        self.assertGreater(after.timestamp, before.timestamp)
        self.assertEqual(self.store.get_invocation(before.invocation_id).status, COMPLETED)
        self.assertEqual(len(self.pending_runs()), 1)

    async def test_run_without_payload_sends_no_body(self):
        await self.client.create(GREETER.model_copy(update={"payload": None}))

        await self.fire_next_run()

        self.assertIsNone(self.transport.requests[0].body)
        self.assertEqual(self.transport.requests[0].headers, {})

    async def test_script_payload(self):
        job = GREETER.model_copy(
            update={"payload": ScriptPayload(content='{"firedAt": now.isoformat(), "job": key}')}
        )
        await self.client.create(job)

        await self.fire_next_run()

        self.assertEqual(
            json.loads(self.transport.requests[0].body),
            {"firedAt": "2024-03-01T12:01:00+00:00", "job": self.key},
        )

    async def test_failing_script_skips_tick_after_last_attempt(self):
        job = GREETER.model_copy(update={"payload": ScriptPayload(content="missing_name")})
        await self.client.create(job)
        run_id = (await self.client.get_next_run()).invocation_id

        await self.fire_next_run()

        invocation = self.store.get_invocation(run_id)
        self.assertEqual(invocation.status, COMPLETED)
        self.assertEqual(invocation.attempts, 3)
        self.assertEqual(self.transport.requests, [])
        steps = [(entry.kind, entry.name) for entry in self.store.load_journal(run_id)]
        self.assertEqual(steps, [("run", "payload"), ("run", "next_run"), ("send", "run")])

        # The job stays armed for the following tick
        next_run = await self.client.get_next_run()
        self.assertNotEqual(next_run.invocation_id, run_id)
        self.assertEqual(next_run.timestamp, datetime(2024, 3, 1, 12, 2, 0, tzinfo=timezone.utc))
        self.assertEqual([i.id for i in self.pending_runs()], [next_run.invocation_id])
        self.assertEqual((await self.client.get()).payload, job.payload)

    async def test_failing_script_is_retried_before_last_attempt(self):
        self.runtime.retry_policy = RetryPolicy(initial_interval=60, max_interval=60, max_attempts=3)
        job = GREETER.model_copy(update={"payload": ScriptPayload(content="missing_name")})
        await self.client.create(job)
        run_id = (await self.client.get_next_run()).invocation_id
        self.clock.now = self.store.next_due_at()

        await self.runtime.tick()
        await asyncio.sleep(0.05)

        invocation = self.store.get_invocation(run_id)
        self.assertEqual(invocation.status, PENDING)
        self.assertEqual(invocation.attempts, 1)
        self.assertEqual(invocation.error_type, "ScriptError")
        for task in list(self.runtime._inflight.values()):
            task.cancel()

    async def test_retry_replays_journaled_steps(self):
        await self.client.create(GREETER)
        run_id = (await self.client.get_next_run()).invocation_id
        self.job.transient_failures = 1

        await self.fire_next_run()

        invocation = self.store.get_invocation(run_id)
        self.assertEqual(invocation.status, COMPLETED)
        self.assertEqual(invocation.attempts, 2)
        self.assertEqual(len(self.transport.requests), 1)
        steps = [(entry.kind, entry.name) for entry in self.store.load_journal(run_id)]
        self.assertEqual(
            steps,
            [("run", "payload"), ("call", "/Greeter/greet"), ("run", "next_run"), ("send", "run")],
        )
        self.assertEqual(len(self.pending_runs()), 1)

    async def test_exhausted_schedule_stops_job(self):
        await self.client.create(GREETER)
        self.job.exhausted = True

        await self.fire_next_run()

        self.assertEqual(len(self.transport.requests), 1)
        self.assertEqual(self.store.load_state(CronJob.service_name, self.key), {})
        self.assertEqual(self.pending_runs(), [])

    async def test_stale_run_is_ignored(self):
        await self.client.create(GREETER)
        armed = await self.client.get_next_run()
        self.store.enqueue(
            Invocation(
                id="inv_stale",
                service=CronJob.service_name,
                key=self.key,
                handler="run",
                execute_at=self.clock(),
            )
        )

        await self.runtime.tick(wait=True)

        self.assertEqual(self.store.get_invocation("inv_stale").status, COMPLETED)
        self.assertEqual(self.transport.requests, [])
        self.assertEqual(await self.client.get_next_run(), armed)

    async def test_run_after_cancel_is_noop(self):
        await self.client.create(GREETER)
        await self.client.cancel()
        self.store.enqueue(
            Invocation(
                id="inv_escaped",
                service=CronJob.service_name,
                key=self.key,
                handler="run",
                execute_at=self.clock(),
            )
        )

        await self.runtime.tick(wait=True)

        self.assertEqual(self.store.get_invocation("inv_escaped").status, COMPLETED)
        self.assertEqual(self.transport.requests, [])
        self.assertEqual(self.store.load_state(CronJob.service_name, self.key), {})
        self.assertEqual(self.pending_runs(), [])


class TestRuntimeLoop(CronJobTestCase):
    async def test_run_forever_fires_due_runs(self):
        await self.client.create(GREETER)
        self.clock.now = self.store.next_due_at()

        loop_task = asyncio.create_task(self.runtime.run_forever())
        for _ in range(100):
            if self.transport.requests:
                break
            await asyncio.sleep(0.01)
        self.runtime.stop()
        await loop_task

        self.assertEqual(len(self.transport.requests), 1)
        self.assertEqual(len(self.pending_runs()), 1)

    async def test_recover_running(self):
        await self.client.create(GREETER)
        run_id = (await self.client.get_next_run()).invocation_id
        self.store.claim(run_id, self.clock())

        self.assertEqual(self.store.recover_running(self.clock()), 1)
        invocation = self.store.get_invocation(run_id)
        self.assertEqual(invocation.status, PENDING)
        self.assertEqual(invocation.execute_at, self.clock())

    async def test_cleanup_finished(self):
        await self.client.create(GREETER)
        run_id = (await self.client.get_next_run()).invocation_id
        await self.fire_next_run()

        self.clock.advance(days=8)
        removed = self.store.cleanup_finished(timedelta(days=7), self.clock())

        self.assertEqual(removed, 2)
        self.assertIsNone(self.store.get_invocation(run_id))
        self.assertEqual(self.store.load_journal(run_id), [])
        self.assertEqual(len(self.pending_runs()), 1)

    async def test_status(self):
        await self.client.create(GREETER)

        status = self.runtime.status()
        self.assertFalse(status["running"])
        self.assertEqual(status["invocations"], {COMPLETED: 1, PENDING: 1})


class TestStoreErrors(CronJobTestCase):
    def fail_once(self, method_name):
        """Make one store method raise a database error on its first call."""
        method = getattr(self.store, method_name)
        failed = []

        def wrapper(*args, **kwargs):
            if not failed:
                failed.append(args[0])
                raise OperationalError("COMMIT", {}, Exception("database is locked"))
            return method(*args, **kwargs)

        setattr(self.store, method_name, wrapper)
        return failed

    async def test_failed_completion_is_requeued(self):
        await self.client.create(GREETER)
        run_id = (await self.client.get_next_run()).invocation_id
        failed = self.fail_once("complete")

        await self.fire_next_run()

        self.assertEqual(failed, [run_id])
        invocation = self.store.get_invocation(run_id)
        self.assertEqual(invocation.status, COMPLETED)
        self.assertEqual(invocation.attempts, 2)
        # The outbound call is replayed from the journal, not repeated
        self.assertEqual(len(self.transport.requests), 1)
        self.assertEqual(len(self.pending_runs()), 1)
        self.assertNotEqual((await self.client.get_next_run()).invocation_id, run_id)

    async def test_failed_reschedule_is_requeued(self):
        await self.client.create(GREETER)
        run_id = (await self.client.get_next_run()).invocation_id
        self.job.transient_failures = 1
        failed = self.fail_once("reschedule")

        await self.fire_next_run()

        self.assertEqual(failed, [run_id])
        invocation = self.store.get_invocation(run_id)
        self.assertEqual(invocation.status, COMPLETED)
        self.assertEqual(invocation.attempts, 2)
        self.assertEqual(len(self.pending_runs()), 1)

    def test_requeue_only_moves_running(self):
        self.assertFalse(self.store.requeue("inv_missing", self.clock()))


class TestKeyLocks(CronJobTestCase):
    async def test_locks_dropped_after_use(self):
        await self.client.create(GREETER)
        await self.fire_next_run()

        self.assertEqual(self.runtime._locks, {})

    async def test_locks_dropped_after_contention(self):
        other = CronJobClient(self.runtime, "other")
        results = await asyncio.gather(
            self.client.create(GREETER),
            self.client.create(GREETER),
            other.create(GREETER),
            return_exceptions=True,
        )

        self.assertEqual(sum(isinstance(r, AlreadyExists) for r in results), 1)
        self.assertEqual(self.runtime._locks, {})

    async def test_lock_dropped_after_failed_attempt(self):
        with self.assertRaises(InvalidSchedule):
            await self.client.create(GREETER.model_copy(update={"schedule": "nope"}))

        self.assertEqual(self.runtime._locks, {})


class TestRetryPolicy(unittest.TestCase):
    def test_backoff_doubles_up_to_max(self):
        policy = RetryPolicy(initial_interval=0.5, max_interval=3.0)
        delays = [policy.next_delay(n).total_seconds() for n in range(1, 6)]
        self.assertEqual(delays, [0.5, 1.0, 2.0, 3.0, 3.0])

    def test_unbounded_by_default(self):
        self.assertFalse(RetryPolicy().exhausted(1000))

    def test_bounded(self):
        policy = RetryPolicy(max_attempts=3)
        self.assertFalse(policy.exhausted(2))
        self.assertTrue(policy.exhausted(3))


if __name__ == '__main__':
    unittest.main()
