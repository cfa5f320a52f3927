"""
POST /webhook/push
Receives push notifications from the source-control host.
The raw body is kept intact for the HMAC signature check; accepted
deliveries are queued as a new PipelineRun and answered immediately.
"""
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from app.api.deps import get_pipeline
from app.models.pipeline_request import RawEvent
from app.services.pipeline_service import PipelineService

router = APIRouter()


@router.post("/webhook/push")
async def receive_push(request: Request, pipeline: PipelineService = Depends(get_pipeline)):
    event = RawEvent(headers=dict(request.headers), body=await request.body())
    result = await pipeline.handle_push(event)
    return JSONResponse(status_code=result.status_code, content=result.body)
