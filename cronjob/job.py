"""
The CronJob keyed object.

One object per job key holds two state entries:
- job_spec: the JobSpec given to create/replace
- next_run: the pending delayed call to `run` and when it is due

Every successful create, replace and run arms exactly one delayed call to `run`
and records it as next_run, so the job keeps firing until it is cancelled.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Optional, Union

from cronjob.context import ObjectContext, SharedObjectContext
from cronjob.dispatch import DispatchResolver
from cronjob.errors import (
    AlreadyExists,
    DispatchError,
    DurationOutOfRange,
    InvalidSchedule,
    NotFound,
    ScriptError,
)
from cronjob.models import JobSpec, NextRun
from cronjob.runtime import HandlerSpec, Runtime
from cronjob.schedule import next_occurrence

logger = logging.getLogger("CronJob")

JOB_SPEC = "job_spec"
NEXT_RUN = "next_run"


class CronJob:
    service_name = "CronJob"
    handlers = {
        "create": HandlerSpec("create", input_model=JobSpec),
        "replace": HandlerSpec("replace", input_model=JobSpec),
        "cancel": HandlerSpec("cancel"),
        "run": HandlerSpec("run", internal=True),
        "get": HandlerSpec("get", shared=True),
        "getNextRun": HandlerSpec("get_next_run", shared=True),
    }

    def __init__(self, resolver: DispatchResolver, schedule_timezone: Optional[str] = None):
        self.resolver = resolver
        self.schedule_timezone = schedule_timezone

    async def create(self, ctx: ObjectContext, job: JobSpec):
        """Create a new cron job."""
        if await ctx.get(JOB_SPEC, JobSpec) is not None:
            raise AlreadyExists("Cron job already exists")
        next_time, delay = await self._plan_next_run(ctx, job.schedule)
        await self._store_and_arm(ctx, job, next_time, delay)

    async def replace(self, ctx: ObjectContext, job: JobSpec):
        """Create a new cron job or replace an existing one."""
        # Validate the new schedule before touching the existing job
        next_time, delay = await self._plan_next_run(ctx, job.schedule)
        await self._cancel(ctx)
        await self._store_and_arm(ctx, job, next_time, delay)

    async def cancel(self, ctx: ObjectContext):
        """Cancel an existing cron job. Cancelling a job that does not exist succeeds."""
        await self._cancel(ctx)

    async def run(self, ctx: ObjectContext):
        """Internal handler executed by the armed delayed call."""
        job = await ctx.get(JOB_SPEC, JobSpec)
        if job is None:
            logger.info(f"Job {ctx.key}: not scheduled, ignoring {ctx.invocation_id}")
            return

        next_run = await ctx.get(NEXT_RUN, NextRun)
        if next_run is not None and next_run.invocation_id != ctx.invocation_id:
            logger.warning(
                f"Job {ctx.key}: {ctx.invocation_id} is not the armed run "
                f"({next_run.invocation_id}), ignoring"
            )
            return

        rendered = await ctx.run("payload", lambda: self._render_payload(ctx, job))
        if "skipped" not in rendered:
            await self._dispatch(ctx, job, rendered["body"])

        try:
            next_time, delay = await self._plan_next_run(ctx, job.schedule)
        except (InvalidSchedule, DurationOutOfRange) as e:
            logger.error(f"Job {ctx.key}: no next run can be scheduled, stopping job: {e}")
            ctx.clear_all()
            return
        await self._arm(ctx, next_time, delay)

    def _render_payload(self, ctx: ObjectContext, job: JobSpec) -> dict[str, Any]:
        """
        Render the request body for this run.

        Returns: {"body": body}, or {"skipped": reason} when the script failed on the
        last attempt the retry policy allows, in which case this tick is missed.
        """
        try:
            body = self.resolver.render_payload(
                job.payload, {"now": ctx.now(), "key": ctx.key}
            )
            return {"body": body}
        except ScriptError as e:
            if not ctx.last_attempt:
                raise
            logger.error(
                f"Job {ctx.key}: payload failed after {ctx.attempt} attempts, "
                f"skipping this run: {e}"
            )
            return {"skipped": str(e)}

    async def _dispatch(self, ctx: ObjectContext, job: JobSpec, body: Optional[str]):
        request = self.resolver.build_request(
            job.target, body, idempotency_key=ctx.invocation_id
        )
        try:
            await ctx.call(request)
            logger.info(f"Job {ctx.key}: dispatched to {request.path}")
        except DispatchError as e:
            logger.warning(
                f"Job {ctx.key}: dispatch to {request.path} failed, scheduling next run anyway: {e}"
            )

    async def get(self, ctx: SharedObjectContext) -> JobSpec:
        """Get the details of an existing cron job."""
        job = await ctx.get(JOB_SPEC, JobSpec)
        if job is None:
            raise NotFound("Cron job not found")
        return job

    async def get_next_run(self, ctx: SharedObjectContext) -> NextRun:
        """Get the next run time of an existing cron job."""
        next_run = await ctx.get(NEXT_RUN, NextRun)
        if next_run is None:
            raise NotFound("Cron job not found")
        return next_run

    def next_run_times(self, schedule: str, now: datetime) -> dict[str, Any]:
        """
        Compute the next fire time of `schedule` after `now` and the delay until then.

        Raises:
            InvalidSchedule: If the schedule cannot be parsed.
            NoUpcomingOccurrence: If the schedule has no occurrence after `now`.
            DurationOutOfRange: If the delay is negative.
        """
        next_time = next_occurrence(schedule, now, self.schedule_timezone)
        delay = next_time - now
        if delay < timedelta(0):
            raise DurationOutOfRange(f"Failed to convert duration: {delay} is negative")
        return {
            "timestamp": next_time.isoformat(),
            "delayMicros": delay // timedelta(microseconds=1),
        }

    async def _plan_next_run(
        self, ctx: ObjectContext, schedule: str
    ) -> tuple[datetime, timedelta]:
        times = await ctx.run(
            "next_run", lambda: self.next_run_times(schedule, ctx.now())
        )
        return (
            datetime.fromisoformat(times["timestamp"]),
            timedelta(microseconds=times["delayMicros"]),
        )

    async def _arm(self, ctx: ObjectContext, next_time: datetime, delay: timedelta):
        invocation_id = await ctx.send_after("run", delay)
        ctx.set(NEXT_RUN, NextRun(invocation_id=invocation_id, timestamp=next_time))
        logger.info(f"Job {ctx.key}: next run {invocation_id} at {next_time.isoformat()}")

    async def _store_and_arm(
        self, ctx: ObjectContext, job: JobSpec, next_time: datetime, delay: timedelta
    ):
        ctx.set(JOB_SPEC, job)
        await self._arm(ctx, next_time, delay)

    async def _cancel(self, ctx: ObjectContext):
        next_run = await ctx.get(NEXT_RUN, NextRun)
        # Clear state first so a run that escapes cancellation finds no job
        ctx.clear_all()
        if next_run is not None:
            cancelled = await ctx.cancel_invocation(next_run.invocation_id)
            logger.info(
                f"Job {ctx.key}: cancelled (pending run {next_run.invocation_id} "
                f"{'cancelled' if cancelled else 'already started'})"
            )


class CronJobClient:
    """Typed client for the handlers of one cron job key."""

    def __init__(self, runtime: Runtime, key: str):
        self.runtime = runtime
        self.key = key

    async def _invoke(
        self,
        handler: str,
        argument: Union[JobSpec, None] = None,
        idempotency_key: Optional[str] = None,
    ) -> Any:
        return await self.runtime.invoke(
            CronJob.service_name,
            self.key,
            handler,
            argument=argument,
            idempotency_key=idempotency_key,
        )

    async def create(self, job: JobSpec, idempotency_key: Optional[str] = None):
        await self._invoke("create", job, idempotency_key)

    async def replace(self, job: JobSpec, idempotency_key: Optional[str] = None):
        await self._invoke("replace", job, idempotency_key)

    async def cancel(self, idempotency_key: Optional[str] = None):
        await self._invoke("cancel", idempotency_key=idempotency_key)

    async def get(self) -> JobSpec:
        return JobSpec.model_validate(await self._invoke("get"))

    async def get_next_run(self) -> NextRun:
        return NextRun.model_validate(await self._invoke("getNextRun"))
