"""
Runtime executing the handlers of keyed objects.

1. Exclusive handlers are persisted as invocations and executed one at a time per
   object key, in arrival order. Shared handlers read committed state directly.
2. Failed attempts are retried with exponential backoff; terminal errors are not.
3. Delayed calls are invocations whose execute_at lies in the future; the timer loop
   fires them once due and wakes early whenever a handler schedules a new one.
4. Invocations interrupted by a restart are re-queued when the loop starts.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from pydantic import BaseModel, ValidationError
from pydantic_core import to_jsonable_python

from cronjob.context import ObjectContext, SharedObjectContext, new_invocation_id
from cronjob.errors import (
    TERMINAL_ERRORS,
    HandlerError,
    InvalidArgument,
    InvocationCancelled,
    NotFound,
    TerminalError,
    terminal_error_from,
)
from cronjob.models import CANCELLED, COMPLETED, PENDING, Invocation, get_utc_now
from cronjob.store import DurableStore
from cronjob.utils import dump_json, load_json

logger = logging.getLogger("Runtime")

CLEANUP_INTERVAL = timedelta(hours=1)


@dataclass(frozen=True)
class HandlerSpec:
    """
    How the runtime exposes one handler of a keyed object.

    Attributes:
        method: Name of the coroutine method implementing the handler.
        shared: Read-only handler; runs concurrently against committed state.
        internal: Only invoked by the object itself, never routed from ingress.
        input_model: Model the JSON argument is validated against, if the handler takes one.
    """

    method: str
    shared: bool = False
    internal: bool = False
    input_model: Optional[type[BaseModel]] = None


@dataclass
class RetryPolicy:
    initial_interval: float = 0.5
    max_interval: float = 60.0
    max_attempts: int = 0  # 0 retries without limit

    def next_delay(self, attempts: int) -> timedelta:
        exponent = min(max(attempts - 1, 0), 32)
        return timedelta(seconds=min(self.initial_interval * 2**exponent, self.max_interval))

    def exhausted(self, attempts: int) -> bool:
        return self.max_attempts > 0 and attempts >= self.max_attempts


class Runtime:
    def __init__(
        self,
        store: DurableStore,
        transport,
        retry_policy: Optional[RetryPolicy] = None,
        poll_interval: float = 1.0,
        retention: timedelta = timedelta(days=7),
        clock: Callable[[], datetime] = get_utc_now,
    ):
        """Initialize the runtime.

        Args:
            store: Durable store for state, invocations and journals
            transport: Outbound call transport with an async `call(request)`
            retry_policy: Backoff and attempt limit for retryable failures
            poll_interval: Longest sleep of the timer loop between checks (seconds)
            retention: How long finished invocations are kept
            clock: Source of the current UTC time
        """
        self.store = store
        self.transport = transport
        self.retry_policy = retry_policy or RetryPolicy()
        self.poll_interval = poll_interval
        self.retention = retention
        self.clock = clock
        self._objects: dict[str, Any] = {}
        # (service, key) -> [lock, number of holders and waiters]
        self._locks: dict[tuple[str, str], list] = {}
        self._inflight: dict[str, asyncio.Task] = {}
        self._wakeup = asyncio.Event()
        self._running = False
        self._stopped = False

    @property
    def is_running(self) -> bool:
        return self._running

    def bind(self, obj):
        """Register a keyed object under its `service_name`."""
        self._objects[obj.service_name] = obj
        logger.info(f"Bound {obj.service_name} with handlers: {', '.join(obj.handlers)}")
        return self

    def wake(self):
        self._wakeup.set()

    def _resolve(self, service: str, handler: str) -> tuple[Any, HandlerSpec]:
        obj = self._objects.get(service)
        if obj is None:
            raise NotFound(f"Service {service} not found")
        spec = obj.handlers.get(handler)
        if spec is None:
            raise NotFound(f"Handler {service}/{handler} not found")
        return obj, spec

    def handler_spec(self, service: str, handler: str) -> HandlerSpec:
        return self._resolve(service, handler)[1]

    @asynccontextmanager
    async def _key_lock(self, service: str, key: str):
        """Hold the lock of one object key; the lock is dropped once nobody uses it."""
        entry = self._locks.setdefault((service, key), [asyncio.Lock(), 0])
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[(service, key)]

    # === Invocation ===

    async def invoke(
        self,
        service: str,
        key: str,
        handler: str,
        argument: Any = None,
        idempotency_key: Optional[str] = None,
    ) -> Any:
        """
        Call a handler and wait for its outcome.

        Returns: the handler result as a JSON-compatible value.

        Raises:
            TerminalError: If the handler failed terminally or the invocation was cancelled.
            HandlerError: If the handler kept failing until the retry policy gave up.
        """
        obj, spec = self._resolve(service, handler)
        if spec.shared:
            ctx = SharedObjectContext(self, service, key, self.store.load_state(service, key))
            result = await getattr(obj, spec.method)(ctx)
            return to_jsonable_python(result, by_alias=True)

        invocation = None
        if idempotency_key:
            invocation = self.store.find_by_idempotency_key(
                service, key, handler, idempotency_key
            )
            if invocation is not None:
                logger.info(
                    f"Request with idempotency key {idempotency_key} attached to {invocation.id}"
                )
        if invocation is None:
            invocation = self.store.enqueue(
                Invocation(
                    id=new_invocation_id(),
                    service=service,
                    key=key,
                    handler=handler,
                    argument=None if argument is None else dump_json(argument),
                    execute_at=self.clock(),
                    idempotency_key=idempotency_key,
                )
            )
        finished = await asyncio.shield(self._start(invocation.id))
        return self._outcome(finished)

    def _outcome(self, invocation: Invocation) -> Any:
        if invocation.status == COMPLETED:
            return load_json(invocation.result)
        if invocation.status == CANCELLED:
            raise InvocationCancelled(f"Invocation {invocation.id} was cancelled")
        if invocation.error_type in TERMINAL_ERRORS:
            raise terminal_error_from(
                invocation.error_type, invocation.error_message, invocation.error_code
            )
        raise HandlerError(invocation.error_message or f"Invocation {invocation.id} failed")

    def _start(self, invocation_id: str) -> asyncio.Task:
        task = self._inflight.get(invocation_id)
        if task is None:
            task = asyncio.create_task(self._drive(invocation_id))
            self._inflight[invocation_id] = task
            task.add_done_callback(lambda _: self._inflight.pop(invocation_id, None))
        return task

    async def _drive(self, invocation_id: str) -> Invocation:
        """Attempt an invocation until it completes, fails, or is cancelled."""
        while True:
            try:
                invocation = await self._attempt(invocation_id)
            except Exception as e:
                logger.error(
                    f"Invocation {invocation_id}: storing the attempt failed, re-queueing: {e}",
                    exc_info=True,
                )
                await self._requeue(invocation_id)
                continue
            if invocation is None:
                raise NotFound(f"Invocation {invocation_id} not found")
            if invocation.status != PENDING:
                return invocation
            delay = (invocation.execute_at - self.clock()).total_seconds()
            await asyncio.sleep(max(delay, 0))

    async def _requeue(self, invocation_id: str):
        """Move an attempt left RUNNING back to PENDING, waiting out store errors."""
        while True:
            await asyncio.sleep(self.poll_interval)
            try:
                self.store.requeue(invocation_id, self.clock())
                return
            except Exception as e:
                logger.error(f"Failed to re-queue invocation {invocation_id}: {e}")

    async def _attempt(self, invocation_id: str) -> Optional[Invocation]:
        invocation = self.store.get_invocation(invocation_id)
        if invocation is None or invocation.status != PENDING:
            return invocation
        async with self._key_lock(invocation.service, invocation.key):
            claimed = self.store.claim(invocation_id, self.clock())
            if claimed is None:
                return self.store.get_invocation(invocation_id)
            return await self._execute(claimed)

    async def _execute(self, invocation: Invocation) -> Invocation:
        label = f"{invocation.id} ({invocation.service}/{invocation.key}/{invocation.handler})"
        logger.debug(f"Executing {label}, attempt {invocation.attempts}")
        try:
            obj, spec = self._resolve(invocation.service, invocation.handler)
            ctx = ObjectContext(
                self,
                invocation,
                self.store.load_state(invocation.service, invocation.key),
                self.store.load_journal(invocation.id),
            )
            method = getattr(obj, spec.method)
            if spec.input_model is not None:
                result = await method(ctx, self._parse_argument(spec, invocation))
            else:
                result = await method(ctx)
        except TerminalError as e:
            logger.warning(f"Invocation {label} failed with code {e.code}: {e}")
            return self.store.fail(invocation.id, e, self.clock())
        except Exception as e:
            return self._retry_or_fail(invocation, label, e)

        state = None
        if ctx.state_modified:
            state = (invocation.service, invocation.key, ctx.state)
        return self.store.complete(invocation.id, dump_json(result), state, self.clock())

    @staticmethod
    def _parse_argument(spec: HandlerSpec, invocation: Invocation) -> BaseModel:
        try:
            return spec.input_model.model_validate(load_json(invocation.argument))
        except ValidationError as e:
            raise InvalidArgument(f"Invalid input for {invocation.handler}: {e}") from e

    def _retry_or_fail(self, invocation: Invocation, label: str, error: Exception) -> Invocation:
        unexpected = not isinstance(error, HandlerError)
        if self.retry_policy.exhausted(invocation.attempts):
            logger.error(
                f"Invocation {label} failed after {invocation.attempts} attempts: {error}",
                exc_info=unexpected,
            )
            return self.store.fail(invocation.id, error, self.clock())
        delay = self.retry_policy.next_delay(invocation.attempts)
        logger.warning(
            f"Invocation {label} attempt {invocation.attempts} failed, "
            f"retrying in {delay.total_seconds():.1f}s: {error}",
            exc_info=unexpected,
        )
        return self.store.reschedule(invocation.id, self.clock() + delay, error)

    # === Timer loop ===

    async def tick(self, wait: bool = False) -> Optional[datetime]:
        """
        Start every due invocation that is not already in flight.

        Args:
            wait: Wait for the started invocations to finish before returning.

        Returns: when the next pending invocation is due, if any.
        """
        due = self.store.due_invocations(self.clock())
        if due:
            logger.debug(f"Found {len(due)} due invocations")
        tasks = [self._start(invocation.id) for invocation in due]
        if wait and tasks:
            await asyncio.gather(*tasks)
        return self.store.next_due_at()

    async def run_forever(self):
        """Fire delayed invocations until `stop()` is called."""
        if self._running or self._stopped:
            logger.warning("Runtime already running or stopped")
            return
        self._running = True
        recovered = self.store.recover_running(self.clock())
        logger.info(
            f"Runtime started (poll_interval={self.poll_interval}s, "
            f"recovered={recovered}, retention={self.retention.days} days)"
        )
        last_cleanup = self.clock()
        while not self._stopped:
            timeout = self.poll_interval
            try:
                next_due = await self.tick()
                now = self.clock()
                if next_due is not None and next_due > now:
                    timeout = min(timeout, (next_due - now).total_seconds())
                if now - last_cleanup >= CLEANUP_INTERVAL:
                    self.store.cleanup_finished(self.retention, now)
                    last_cleanup = now
            except Exception as e:
                logger.error(f"Error in runtime loop: {e}", exc_info=True)
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                pass
            self._wakeup.clear()
        self._running = False
        logger.info("Runtime stopped")

    def stop(self):
        """Stop the timer loop. A stopped runtime cannot be restarted."""
        self._stopped = True
        self._wakeup.set()

    def status(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "inflight": len(self._inflight),
            "invocations": self.store.status_counts(),
        }
