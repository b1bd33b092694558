"""Task run records and their lifecycle.

The recorder lives in ``browsercron.modules.runs.service``; it is not
re-exported here because the store imports these models.
"""

from browsercron.modules.runs.models import RunOutcome, RunStatus, TaskRun

__all__ = ["RunOutcome", "RunStatus", "TaskRun"]
