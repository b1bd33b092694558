"""Cron evaluation and due-task dispatch.

The dispatcher lives in ``browsercron.modules.scheduler.service``; only the
cron helpers are importable from here so task management can use them
without pulling in the dispatcher.
"""

from browsercron.modules.scheduler.cron import DEFAULT_WINDOW, build_trigger, is_due, is_valid, next_run_time

__all__ = ["DEFAULT_WINDOW", "build_trigger", "is_due", "is_valid", "next_run_time"]
