"""
Run Notification Model
Emitted exactly once per terminal transition of a PipelineRun.
"""
from datetime import datetime
from typing import Optional

from pydantic import BaseModel

from app.models.pipeline_run import PipelineRun, RunState


class RunNotification(BaseModel):
    run_id: str
    state: RunState
    finished_at: Optional[datetime] = None
    commit_ref: str = ""
    target: str = ""
    failed_stage: Optional[str] = None

    @classmethod
    def of(cls, run: PipelineRun) -> "RunNotification":
        return cls(
            run_id=run.id,
            state=run.state,
            finished_at=run.finished_at,
            commit_ref=run.commit_ref,
            target=run.target,
            failed_stage=run.failed_stage.value if run.failed_stage else None,
        )
