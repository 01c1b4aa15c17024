"""
Creates the example cron job: call Greeter/greet with "World" at the start of every minute.

The job is written to the database configured by CRON_DB_URL; a running
`services.cron_service` against the same database picks up its first run.
"""
import asyncio
import sys
from datetime import datetime, timezone

from cronjob.config import load_settings
from cronjob.errors import AlreadyExists
from cronjob.job import CronJobClient
from cronjob.models import JobSpec, JsonPayload, ServiceTarget
from services.cron_service import build_runtime

EXAMPLE_KEY = "greeter-every-minute"


async def create_example_job():
    """Create the example job, or report it if it already exists."""
    runtime = build_runtime(load_settings())
    client = CronJobClient(runtime, EXAMPLE_KEY)
    job = JobSpec(
        schedule="0 */1 * * * *",
        target=ServiceTarget(name="Greeter", handler="greet"),
        payload=JsonPayload(content="World"),
    )
    try:
        try:
            await client.create(job)
            print(f"✓ Job '{EXAMPLE_KEY}' created")
        except AlreadyExists:
            print(f"✓ Job '{EXAMPLE_KEY}' already exists")
        next_run = await client.get_next_run()
        print(f"  Next run: {next_run.timestamp.isoformat()} ({next_run.invocation_id})")
    finally:
        await runtime.transport.aclose()


if __name__ == "__main__":
    print("=" * 60)
    print("Example Cron Job")
    print("=" * 60)
    print(f"Timestamp: {datetime.now(timezone.utc).isoformat()}")
    print()

    try:
        asyncio.run(create_example_job())
        print()
        print("Next steps:")
        print("1. Start the service: python -m services.cron_service")
        print("2. Watch the service log for 'dispatched to /Greeter/greet' every minute")
        print()
    except Exception as e:
        print(f"✗ Error creating example job: {e}")
        sys.exit(1)
