"""
GET /targets
Current image set of every deployment target plus its active and queued runs.
"""
from fastapi import APIRouter, Depends

from app.api.deps import get_pipeline
from app.services.pipeline_service import PipelineService

router = APIRouter()


@router.get("/targets")
async def list_targets(pipeline: PipelineService = Depends(get_pipeline)):
    return pipeline.target_views()
