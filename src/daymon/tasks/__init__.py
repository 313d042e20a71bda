"""
Task subsystem.

Components:
- task_models.py: data structures (Task, TaskRun, statuses, execution results)
- task_store.py: SQLite-backed storage + query/update helpers
- executor.py: automation engine subprocess (timeout, progress parsing)
- task_runner.py: single-flight execution of one task
- task_scheduler.py: cron / one-shot reconciliation loop
"""
