"""
Shared FastAPI dependencies.
"""
from fastapi import Request

from app.services.pipeline_service import PipelineService


def get_pipeline(request: Request) -> PipelineService:
    return request.app.state.pipeline
