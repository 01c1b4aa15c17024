"""
Standalone Cron Job Service

Serves the CronJob keyed object over HTTP and runs the timer loop that:
1. Fires delayed `run` calls when they are due
2. Retries failed invocations with backoff
3. Re-queues invocations interrupted by a restart
4. Cleans up finished invocations older than the retention period
"""
import argparse
import logging
import sys

import uvicorn
from sqlmodel import create_engine

from cronjob.api import create_app
from cronjob.config import Settings, load_settings
from cronjob.dispatch import DispatchResolver, ScriptEvaluator
from cronjob.job import CronJob
from cronjob.models import init_db
from cronjob.runtime import RetryPolicy, Runtime
from cronjob.store import DurableStore
from cronjob.transport import HttpTransport

logger = logging.getLogger("CronService")


def build_runtime(settings: Settings, engine=None) -> Runtime:
    """Create the store, transport and runtime for `settings` and bind CronJob to it."""
    if engine is None:
        engine = create_engine(settings.db_url)
    init_db(engine)

    transport = HttpTransport(settings.ingress_url, timeout=settings.dispatch_timeout)
    runtime = Runtime(
        DurableStore(engine),
        transport,
        retry_policy=RetryPolicy(
            initial_interval=settings.retry_initial_interval,
            max_interval=settings.retry_max_interval,
            max_attempts=settings.max_retry_attempts,
        ),
        poll_interval=settings.poll_interval,
        retention=settings.retention,
    )
    resolver = DispatchResolver(ScriptEvaluator())
    runtime.bind(CronJob(resolver, schedule_timezone=settings.schedule_timezone))
    return runtime


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Per-key cron job service")
    parser.add_argument("--config", help="TOML, JSON or YAML config file with a [runtime] table")
    parser.add_argument("--port", type=int, help="Port to listen on (overrides PORT)")
    return parser.parse_args(argv)


def main(argv=None):
    """Entry point for the cron job service."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    args = parse_args(argv)

    logger.info("Initializing cron job service...")
    settings = load_settings(args.config)
    if args.port is not None:
        settings.port = args.port
    logger.info(f"Connecting to database: {settings.db_url}")
    logger.info(
        f"Configuration: ingress_url={settings.ingress_url}, "
        f"poll_interval={settings.poll_interval}s, "
        f"max_retry_attempts={settings.max_retry_attempts}, "
        f"schedule_timezone={settings.schedule_timezone}"
    )

    try:
        app = create_app(build_runtime(settings))
        uvicorn.run(app, host=settings.host, port=settings.port, log_config=None)
    except KeyboardInterrupt:
        logger.info("Cron job service stopped by user")
    except Exception as e:
        logger.error(f"Cron job service crashed: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
