"""
Worker module.
Contains the worker runtime and the process entry point.
"""

from jobdispatch.worker.main import Worker, load_task_modules, run

__all__ = ["Worker", "load_task_modules", "run"]
