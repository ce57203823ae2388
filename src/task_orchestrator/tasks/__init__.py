"""
Task subsystem.

Components:
- task_models.py: data structures (Task, TaskStatus, TaskContext, OverflowPolicy)
- task_registry.py: in-memory storage and lookup by id
- task_scheduler.py: timers, worker pool, timeouts, retries
- cron.py: cron validation and exact next-fire computation
"""
