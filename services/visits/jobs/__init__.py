"""
Scheduled jobs for the visit engine.

These run as standalone Python scripts via cron / Cloud Scheduler,
NOT inside the ingest process.

Usage:
    python -m services.visits.jobs.visit_cleanup

Schedule: every 5 minutes. The sweep is idempotent, so overlapping or
missed runs are harmless; the next run picks up whatever is stale.
"""
