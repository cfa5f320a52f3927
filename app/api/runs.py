"""
GET  /runs               — recent runs, optionally filtered by commit / state
GET  /runs/{run_id}      — one run with its full stage history and rollback record
POST /runs/{run_id}/cancel
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.api.deps import get_pipeline
from app.core.errors import ConsistencyError, RunNotFoundError
from app.models.pipeline_run import PipelineRun, RunState
from app.services.pipeline_service import PipelineService

router = APIRouter()


@router.get("/runs", response_model=List[PipelineRun])
async def list_runs(
    commit_ref: Optional[str] = None,
    state: Optional[RunState] = None,
    limit: int = Query(50, ge=1, le=500),
    pipeline: PipelineService = Depends(get_pipeline),
):
    return await pipeline.list_runs(commit_ref=commit_ref, state=state, limit=limit)


@router.get("/runs/{run_id}", response_model=PipelineRun)
async def get_run(run_id: str, pipeline: PipelineService = Depends(get_pipeline)):
    try:
        return await pipeline.get_run(run_id)
    except RunNotFoundError:
        raise HTTPException(status_code=404, detail=f"Run {run_id} not found")


@router.post("/runs/{run_id}/cancel", status_code=status.HTTP_202_ACCEPTED, response_model=PipelineRun)
async def cancel_run(run_id: str, pipeline: PipelineService = Depends(get_pipeline)):
    try:
        return await pipeline.cancel(run_id)
    except RunNotFoundError:
        raise HTTPException(status_code=404, detail=f"Run {run_id} not found")
    except ConsistencyError as e:
        raise HTTPException(status_code=409, detail=e.message)
