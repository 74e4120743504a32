from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
import uuid
from contextlib import asynccontextmanager
from database import database
from routes import generate, sows, templates, settings

from services.config_store import ConfigStore
from services.credential_cache import create_graph_credential_cache, create_llm_credential_cache
from services.docx_merger import DocxMerger
from services.settings_service import SettingsService
from services.sow_generator import SOWGenerator
from services.sow_orchestrator import SOWOrchestrator
from services.sow_service import SOWService
from services.storage_adapter import GraphClient
from services.template_service import TemplateService
from utils.audit import flush_audit_logs
from utils.errors import AppError
from utils.rate_limiter import RateLimited, RateLimiter

import os
import logging
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables
ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# Configure logging
logging.basicConfig(
    level=os.environ.get('LOG_LEVEL', 'INFO').upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def build_components(app: FastAPI) -> None:
    """Construct the long-lived pipeline components once and attach them to app.state."""
    config_store = ConfigStore()
    graph_credentials = create_graph_credential_cache(config_store)
    llm_credentials = create_llm_credential_cache(config_store)
    graph = GraphClient(graph_credentials)

    app.state.config_store = config_store
    app.state.orchestrator = SOWOrchestrator(
        config_store=config_store,
        rate_limiter=RateLimiter(),
        generator=SOWGenerator(config_store, llm_credentials),
        merger=DocxMerger(),
        graph=graph,
    )
    app.state.template_service = TemplateService()
    app.state.sow_service = SOWService()
    app.state.settings_service = SettingsService(config_store, graph, llm_credentials)


# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Starting SOW Factory API")
    await database.connect()
    build_components(app)

    status_summary = await app.state.config_store.status_summary()
    if status_summary["degraded_mode"]:
        logger.warning("SharePoint not configured or MOCK_SHAREPOINT=true - running in mock mode (no uploads)")
    if not status_summary["llm"]:
        logger.warning("LLM API key not configured - generation will fail until it is set in Settings")

    yield

    # Shutdown
    logger.info("Shutting down SOW Factory API")
    await flush_audit_logs()
    await database.close()

# Create FastAPI app
app = FastAPI(
    title="SOW Factory API",
    description="Statement of Work generation from templates and intake answers",
    version="1.0.0",
    lifespan=lifespan
)

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=os.environ.get('CORS_ORIGINS', '*').split(','),
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(generate.router)
app.include_router(sows.router)
app.include_router(templates.router)
app.include_router(settings.router)

# Health check
@app.get("/api/health")
async def health_check():
    return {
        "status": "healthy",
        "environment": os.getenv("ENVIRONMENT", "development")
    }

# Pipeline/domain errors: stable error_code plus the HTTP mapping carried by the error
@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    if exc.status_code >= 500:
        logger.error(f"{exc.error_code} on {request.url.path}: {exc.message}")
    headers = None
    if isinstance(exc, RateLimited):
        headers = {"Retry-After": str(exc.retry_after)}
    content = exc.to_dict()
    content["detail"] = exc.message
    return JSONResponse(status_code=exc.status_code, content=content, headers=headers)

# Validation error handler: log request_id + full errors (loc path)
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    request_id = str(uuid.uuid4())
    errors = exc.errors()
    logger.warning(
        "Request validation failed request_id=%s path=%s errors=%s",
        request_id,
        request.url.path,
        [(e.get("loc"), e.get("msg"), e.get("type")) for e in errors],
    )
    return JSONResponse(
        status_code=422,
        content={"detail": jsonable_errors(errors), "request_id": request_id},
    )


def jsonable_errors(errors):
    return [{"loc": list(e.get("loc", ())), "msg": e.get("msg"), "type": e.get("type")} for e in errors]


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"}
    )

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "server:app",
        host="0.0.0.0",
        port=8001,
        reload=os.getenv("ENVIRONMENT") == "development"
    )
