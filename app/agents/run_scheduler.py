"""
Run Scheduler
=============
Serializes deployments per DeploymentTarget.

Each target gets an asyncio.Queue and one worker task that executes
runs strictly in arrival order, so at most one run per target is ever
Running. Runs for different targets proceed independently.

ALLOW_OVERLAPPING_DEPLOYMENTS=true disables the queue and starts every
run immediately (last deploy wins on the target).
"""
import asyncio
import logging
from typing import Dict, List, Optional, Set

from app.agents.pipeline_engine import PipelineEngine
from app.core.config import ALLOW_OVERLAPPING_DEPLOYMENTS
from app.models.pipeline_run import PipelineRun

logger = logging.getLogger(__name__)


class RunScheduler:
    def __init__(self, engine: PipelineEngine, allow_overlap: bool = ALLOW_OVERLAPPING_DEPLOYMENTS) -> None:
        self.engine = engine
        self.allow_overlap = allow_overlap
        self._queues: Dict[str, asyncio.Queue] = {}
        self._waiting: Dict[str, List[str]] = {}
        self._active: Dict[str, Optional[str]] = {}
        self._workers: Dict[str, asyncio.Task] = {}
        self._tasks: Set[asyncio.Task] = set()

    def submit(self, run: PipelineRun) -> None:
        """Enqueue a Pending run behind any earlier run for the same target."""
        if self.allow_overlap:
            task = asyncio.create_task(self._execute(run.id))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            return

        target = run.target
        queue = self._queues.setdefault(target, asyncio.Queue())
        self._waiting.setdefault(target, []).append(run.id)
        queue.put_nowait(run.id)
        if target not in self._workers or self._workers[target].done():
            self._workers[target] = asyncio.create_task(self._worker(target), name=f"deploy-worker-{target}")
        logger.info("[run:%s] Queued for target %s (position %d)", run.id, target, len(self._waiting[target]))

    async def _worker(self, target: str) -> None:
        queue = self._queues[target]
        while True:
            run_id = await queue.get()
            self._waiting[target].remove(run_id)
            self._active[target] = run_id
            try:
                await self._execute(run_id)
            finally:
                self._active[target] = None
                queue.task_done()

    async def _execute(self, run_id: str) -> None:
        try:
            await self.engine.execute(run_id)
        except Exception:
            logger.exception("[run:%s] Execution aborted", run_id)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------
    def queued(self, target: str) -> List[str]:
        return list(self._waiting.get(target, []))

    def active(self, target: str) -> Optional[str]:
        return self._active.get(target)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def drain(self) -> None:
        """Wait until every submitted run has finished."""
        for queue in list(self._queues.values()):
            await queue.join()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        pending = [*self._workers.values(), *self._tasks]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._workers.clear()
        self._tasks.clear()
        logger.info("Run scheduler stopped")
