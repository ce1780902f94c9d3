"""
FastAPI 应用主文件
"""
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import logging

from .routers import workflows, runs, records, monitoring
from .middleware import RequestLoggingMiddleware
from ..config import EngineSettings
from ..runtime import WorkflowRuntime
from ..exceptions import (
    WorkflowEngineError, WorkflowParseError, ValidationError,
    WorkflowNotFoundError, RunNotFoundError, StateTransitionError
)
from .. import __version__


logger = logging.getLogger(__name__)


def _error_response(request: Request, status_code: int, error: str, exc: Exception) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "error": error,
            "message": str(exc),
            "request_id": getattr(request.state, "request_id", None)
        }
    )


def create_app(settings: EngineSettings = None, runtime: WorkflowRuntime = None) -> FastAPI:
    """创建 FastAPI 应用；传入 runtime 时由调用方负责其配置"""
    settings = settings or EngineSettings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """应用生命周期管理"""
        logger.info("Starting Workflow Automation API...")

        app.state.runtime = runtime or WorkflowRuntime(settings)
        await app.state.runtime.start()

        logger.info("Workflow Automation API started successfully")

        yield

        logger.info("Shutting down Workflow Automation API...")
        await app.state.runtime.stop()
        logger.info("Workflow Automation API shut down successfully")

    app = FastAPI(
        title="Doula CRM Workflow Automation API",
        description="记录驱动的工作流自动化引擎 RESTful API",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json"
    )

    # 配置CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    # 注册路由
    app.include_router(workflows.router, prefix="/api/v1/workflows", tags=["workflows"])
    app.include_router(runs.router, prefix="/api/v1/runs", tags=["runs"])
    app.include_router(records.router, prefix="/api/v1/records", tags=["records"])
    app.include_router(monitoring.router, prefix="/api/v1/monitoring", tags=["monitoring"])

    @app.exception_handler(WorkflowParseError)
    async def parse_error_handler(request: Request, exc: WorkflowParseError):
        return _error_response(request, status.HTTP_400_BAD_REQUEST, "parse_error", exc)

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError):
        response = _error_response(request, status.HTTP_400_BAD_REQUEST, "validation_error", exc)
        if exc.step_key:
            response.headers["X-Step-Key"] = exc.step_key
        return response

    @app.exception_handler(WorkflowNotFoundError)
    async def workflow_not_found_handler(request: Request, exc: WorkflowNotFoundError):
        return _error_response(request, status.HTTP_404_NOT_FOUND, "workflow_not_found", exc)

    @app.exception_handler(RunNotFoundError)
    async def run_not_found_handler(request: Request, exc: RunNotFoundError):
        return _error_response(request, status.HTTP_404_NOT_FOUND, "run_not_found", exc)

    @app.exception_handler(StateTransitionError)
    async def state_error_handler(request: Request, exc: StateTransitionError):
        return _error_response(request, status.HTTP_409_CONFLICT, "invalid_state", exc)

    @app.exception_handler(WorkflowEngineError)
    async def engine_error_handler(request: Request, exc: WorkflowEngineError):
        return _error_response(request, status.HTTP_400_BAD_REQUEST, "workflow_error", exc)

    # 全局异常处理
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """全局异常处理器"""
        logger.error(f"Unhandled exception: {exc}", exc_info=True)

        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "internal_server_error",
                "message": "An unexpected error occurred",
                "request_id": getattr(request.state, "request_id", None)
            }
        )

    @app.get("/", tags=["root"])
    async def root():
        """API根路径"""
        return {
            "name": "Doula CRM Workflow Automation API",
            "version": __version__,
            "status": "running",
            "docs": "/docs",
            "health": "/api/v1/monitoring/health"
        }

    return app
