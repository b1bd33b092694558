"""Run lifecycle: open a run as ``running``, close it exactly once."""

from __future__ import annotations

import datetime as dt
from typing import Callable

from browsercron.errors import RunAlreadyClosedError
from browsercron.logging_config import get_logger
from browsercron.modules.runs.models import RunOutcome, RunStatus, TaskRun
from browsercron.store import Store

logger = get_logger(__name__)


class RunRecorder:
    """Creates and finalizes TaskRun records."""

    def __init__(
        self,
        store: Store,
        clock: Callable[[], dt.datetime] = lambda: dt.datetime.now(dt.UTC),
    ) -> None:
        self._store = store
        self._clock = clock

    async def open(self, task_id: str) -> str:
        run = await self._store.create_run(task_id, started_at=self._clock())
        logger.info("run_opened", task_id=task_id, run_id=run.id)
        return run.id

    async def close(self, run_id: str, outcome: RunOutcome) -> TaskRun:
        """Finalize a running run with its outcome.

        The write only applies while the run is still ``running``; closing a
        run twice raises ``RunAlreadyClosedError``.
        """
        fields = outcome.to_fields(finished_at=self._clock())
        run = await self._store.update_run(
            run_id, expected_status=RunStatus.RUNNING.value, **fields,
        )
        if run is None:
            logger.error("run_close_rejected", run_id=run_id)
            raise RunAlreadyClosedError(run_id)
        logger.info(
            "run_closed",
            run_id=run_id, task_id=run.task_id, status=run.status,
            duration_ms=run.duration_ms,
        )
        return run
