import uvicorn
import time
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from starlette.middleware.base import BaseHTTPMiddleware

from app.api.runs import router as runs_router
from app.api.targets import router as targets_router
from app.api.webhook import router as webhook_router
from app.core.config import LOG_LEVEL
from app.services.pipeline_service import PipelineService, build_pipeline_service
from app.utils.logging_config import setup_logging

setup_logging(level=LOG_LEVEL)
logger = logging.getLogger("main")


# ---------------------------------------------------------------------------
# Logging Middleware
# ---------------------------------------------------------------------------
class LoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        start_time = time.time()
        client_host = request.client.host if request.client else "unknown"
        logger.info(f"Incoming: {request.method} {request.url.path} from {client_host}")

        try:
            response = await call_next(request)
            process_time = (time.time() - start_time) * 1000
            logger.info(
                f"Outgoing: {request.method} {request.url.path} - "
                f"Status: {response.status_code} - "
                f"Time: {process_time:.2f}ms"
            )
            return response
        except Exception as e:
            logger.error(f"Request failed: {request.method} {request.url.path} - Error: {str(e)}")
            raise


def create_app(service: Optional[PipelineService] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        pipeline = service or build_pipeline_service()
        app.state.pipeline = pipeline
        await pipeline.start()
        logger.info("Pipeline orchestrator ready")
        try:
            yield
        finally:
            await pipeline.stop()

    app = FastAPI(title="Staging Deployment Pipeline Orchestrator", lifespan=lifespan)
    app.add_middleware(LoggingMiddleware)

    # Health endpoint
    @app.get("/health")
    async def health_check():
        return {"status": "ok"}

    # Register routers
    app.include_router(webhook_router, tags=["Trigger"])
    app.include_router(runs_router, tags=["Runs"])
    app.include_router(targets_router, tags=["Targets"])
    return app


app = create_app()

if __name__ == "__main__":
    uvicorn.run("main:app", host="127.0.0.1", port=8000, reload=True)
