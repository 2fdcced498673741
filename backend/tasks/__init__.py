# backend/tasks/__init__.py
"""
Automation engine: matching, scheduling and dispatch.

Celery task registration happens through celery_app's include list
(tasks.automation_tasks); importing this package has no side effects.
"""
