# =============================================================================
# Application Entry Point — FastAPI App Factory
# =============================================================================
#
# Run locally:
#   uvicorn payrollpro.main:app --reload
#
# Worker (knowledge-file ingestion):
#   celery -A payrollpro.workers.celery_app worker --loglevel=info
# =============================================================================

import logging
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from payrollpro.api import admin, agents, documents, employees, knowledge, payroll, reference
from payrollpro.api.audit import AuditLoggingMiddleware
from payrollpro.config import settings
from payrollpro.db.engine import async_engine
from payrollpro.models.responses import HealthResponse

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    Path(settings.upload_dir).mkdir(parents=True, exist_ok=True)
    logger.info(
        "%s %s starting (auth=%s, vectorstore=%s, llm=%s)",
        settings.app_name, settings.app_version, settings.auth_enabled,
        settings.vectorstore_type, settings.llm_provider,
    )
    yield
    await async_engine.dispose()
    logger.info("%s stopped", settings.app_name)


def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description=(
            "Payroll, invoicing and employee-import API with a multi-agent "
            "assistant for tax, expense and compliance questions."
        ),
        debug=settings.debug,
        lifespan=lifespan,
    )

    if settings.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )
    app.add_middleware(AuditLoggingMiddleware)

    for module in (agents, knowledge, employees, documents, payroll, reference, admin):
        app.include_router(module.router)

    @app.get("/health", response_model=HealthResponse, tags=["Health"])
    async def health() -> HealthResponse:
        return HealthResponse(version=settings.app_version, service=settings.app_name)

    return app


app = create_app()
