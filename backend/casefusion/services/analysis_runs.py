"""In-memory registry of analysis runs, at most one active run per case."""
import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, Dict, Optional

from casefusion.errors import AnalysisAlreadyRunningError
from casefusion.services.progress_bus import ProgressBus

logger = logging.getLogger(__name__)

PipelineFactory = Callable[[str, ProgressBus], Awaitable[object]]


class AnalysisRun:
    def __init__(self, case_id: str, bus: ProgressBus):
        self.case_id = case_id
        self.bus = bus
        self.started_at = datetime.utcnow()
        self.task: Optional[asyncio.Task] = None

    @property
    def done(self) -> bool:
        return self.task is not None and self.task.done()


class AnalysisRunManager:
    """Starts pipelines as background tasks and tracks the active run per case.

    A run's task is owned by the manager, so a disconnecting stream reader
    never cancels it.
    """

    def __init__(self, pipeline: PipelineFactory, queue_size: Optional[int] = None):
        self._pipeline = pipeline
        self._queue_size = queue_size
        self._runs: Dict[str, AnalysisRun] = {}

    def get(self, case_id: str) -> Optional[AnalysisRun]:
        run = self._runs.get(case_id)
        if run and not run.done:
            return run
        return None

    def is_running(self, case_id: str) -> bool:
        return self.get(case_id) is not None

    def start(self, case_id: str) -> AnalysisRun:
        """Return the active run for ``case_id`` or start a new one."""
        return self.get(case_id) or self._launch(case_id)

    def start_new(self, case_id: str) -> AnalysisRun:
        if self.is_running(case_id):
            raise AnalysisAlreadyRunningError(f"Analysis already running for case {case_id}")
        return self._launch(case_id)

    def _launch(self, case_id: str) -> AnalysisRun:
        run = AnalysisRun(case_id, ProgressBus(case_id, queue_size=self._queue_size))
        self._runs[case_id] = run
        run.task = asyncio.create_task(self._execute(run))
        logger.info(f"Started analysis run for case {case_id}")
        return run

    async def _execute(self, run: AnalysisRun):
        try:
            await self._pipeline(run.case_id, run.bus)
            run.bus.close()
        except asyncio.CancelledError:
            run.bus.close(error="Analysis cancelled")
            raise
        except Exception as e:
            logger.error(f"Analysis run for case {run.case_id} failed: {e}")
            run.bus.close(error=str(e) or e.__class__.__name__)
        finally:
            if self._runs.get(run.case_id) is run:
                del self._runs[run.case_id]

    async def wait(self, case_id: str):
        """Wait for the active run of ``case_id`` to finish, if any."""
        run = self.get(case_id)
        if run and run.task:
            await asyncio.gather(run.task, return_exceptions=True)

    async def shutdown(self):
        tasks = [run.task for run in self._runs.values() if run.task and not run.task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._runs.clear()
