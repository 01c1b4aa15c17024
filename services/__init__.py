"""
Standalone services for the cron job scheduler.

This package contains the processes that run the scheduler:
- cron_service: Serves the CronJob handlers over HTTP and runs the timer loop
"""
