"""
Per-key cron job scheduler.

Each cron job is a keyed object (`CronJob`) that stores its schedule, target and
payload, and re-arms a delayed call to its own `run` handler after every execution:
- job: the CronJob handlers (create, replace, cancel, run, get, getNextRun)
- schedule: next-occurrence calculation for seconds-first cron expressions
- dispatch / transport: target and payload resolution, and the outbound HTTP call
- runtime / context / store: per-key serialized execution, retries, delayed
  self-calls and the step journal, persisted with SQLModel
- api / config: the HTTP ingress and service settings
"""
