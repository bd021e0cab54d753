"""Application factory for creating FastAPI instances."""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from .api.endpoints import init_dependencies, router
from .config import AppConfig, get_config, validate_config
from .core.exceptions import StorageError
from .core.execution_engine import ExecutionEngine, RunManager
from .core.executors import Collaborators
from .core.graph_manager import GraphManager
from .core.human_input import PendingInputRegistry
from .core.logging import get_logger, setup_logging
from .core.middleware import ErrorHandlingMiddleware, PerformanceMonitoringMiddleware, RequestLoggingMiddleware
from .core.providers import ModelResolver
from .core.run_history import RunHistory
from .core.websocket_manager import WebSocketManager
from .storage.database import get_session_factory, init_database


logger = get_logger(__name__)


class ApplicationState:
    """Container for application state and components."""

    def __init__(self):
        self.config: Optional[AppConfig] = None
        self.graph_manager: Optional[GraphManager] = None
        self.run_history: Optional[RunHistory] = None
        self.pending_inputs: Optional[PendingInputRegistry] = None
        self.websocket_manager: Optional[WebSocketManager] = None
        self.model_resolver: Optional[ModelResolver] = None
        self.http_client: Optional[httpx.AsyncClient] = None
        self.execution_engine: Optional[ExecutionEngine] = None
        self.run_manager: Optional[RunManager] = None


app_state = ApplicationState()


def initialize_database(config: AppConfig):
    """Create the engine and tables; returns the session factory."""
    session_factory = init_database(config.database_url, echo=config.database_echo)
    logger.info("Database tables created")
    return session_factory


def initialize_core_components(config: AppConfig, session_factory) -> ApplicationState:
    """Wire the engine, its collaborators and the service components together."""
    state = ApplicationState()
    state.config = config
    state.graph_manager = GraphManager(session_factory)
    state.run_history = RunHistory(session_factory)
    state.pending_inputs = PendingInputRegistry()
    state.websocket_manager = WebSocketManager()
    state.http_client = httpx.AsyncClient(timeout=httpx.Timeout(config.request_timeout))
    state.model_resolver = ModelResolver.from_config(config, client=state.http_client)

    collaborators = Collaborators(
        model_resolver=state.model_resolver,
        human_input=state.pending_inputs,
        http_client=state.http_client,
        default_node_delay_ms=config.default_node_delay_ms,
        request_timeout=config.request_timeout,
    )
    state.execution_engine = ExecutionEngine(collaborators=collaborators, max_steps=config.max_step_count)
    state.run_manager = RunManager(
        engine=state.execution_engine,
        run_history=state.run_history,
        pending_inputs=state.pending_inputs,
        listeners=[state.websocket_manager.publish],
        max_active_runs=config.max_active_runs,
    )
    state.websocket_manager.snapshot_provider = state.run_manager.snapshot

    logger.info("Core components initialized")
    return state


async def graceful_shutdown(state: ApplicationState) -> None:
    """Stop runs, the broadcaster and outbound clients."""
    logger.info(f"Shutting down {state.config.app_name if state.config else 'nodeflow'}")

    if state.run_manager is not None:
        await state.run_manager.shutdown()
    if state.websocket_manager is not None:
        await state.websocket_manager.stop_broadcast_processor()
    if state.http_client is not None:
        await state.http_client.aclose()


def create_lifespan_handler(config: AppConfig):
    """Create the application lifespan handler for ``config``."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(
            level=config.log_level.value,
            log_file=config.log_file,
            log_format=config.log_format,
            structured=config.log_structured,
            max_size=config.log_max_size,
            backup_count=config.log_backup_count
        )
        logger.info(f"Starting {config.app_name} v{config.app_version}")

        session_factory = initialize_database(config)
        state = initialize_core_components(config, session_factory)

        try:
            removed = state.run_history.cleanup_runs(config.run_history_retention_hours)
            if removed:
                logger.info(f"Removed {removed} expired runs from history")
        except StorageError as e:
            logger.warning(f"Run history cleanup failed: {e.message}")

        init_dependencies(
            graph_manager=state.graph_manager,
            run_manager=state.run_manager,
            pending_inputs=state.pending_inputs,
            websocket_manager=state.websocket_manager
        )
        state.websocket_manager.start_broadcast_processor()

        app_state.__dict__.update(state.__dict__)
        app.state.components = state
        logger.info("Application startup completed successfully")

        try:
            yield
        finally:
            await graceful_shutdown(state)

    return lifespan


def create_app(config: Optional[AppConfig] = None) -> FastAPI:
    """Create and configure FastAPI application instance."""
    if config is None:
        config = get_config()

    for warning in validate_config(config):
        logger.warning(f"Configuration warning: {warning}")

    app = FastAPI(
        title=config.app_name,
        description="Execution service for node graphs authored in a visual workflow editor",
        version=config.app_version,
        debug=config.debug,
        lifespan=create_lifespan_handler(config)
    )

    if config.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=config.cors_origins,
            allow_credentials=True,
            allow_methods=config.cors_methods,
            allow_headers=["*"],
        )

    app.add_middleware(ErrorHandlingMiddleware)
    if config.enable_performance_monitoring:
        app.add_middleware(PerformanceMonitoringMiddleware, slow_request_threshold=config.slow_request_threshold)
        app.add_middleware(RequestLoggingMiddleware)

    app.include_router(router)
    add_health_endpoints(app, config)
    return app


def add_health_endpoints(app: FastAPI, config: AppConfig) -> None:
    """Add health check endpoints to the application."""

    @app.get("/")
    async def root():
        return {"message": f"{config.app_name} is running", "version": config.app_version}

    @app.get("/health")
    async def health_check():
        return {
            "status": "healthy",
            "service": config.app_name.lower().replace(" ", "-"),
            "version": config.app_version
        }

    @app.get("/health/ready")
    async def readiness_check():
        """Readiness check for container orchestration."""
        checks = {}
        try:
            db = get_session_factory()()
            try:
                db.execute(text("SELECT 1"))
            finally:
                db.close()
            checks["database"] = {"status": "healthy"}
        except SQLAlchemyError as e:
            checks["database"] = {"status": "unhealthy", "error": str(e)}

        run_manager = app_state.run_manager
        checks["run_manager"] = {
            "status": "healthy" if run_manager is not None else "unhealthy",
            "active_runs": len(run_manager.get_active_runs()) if run_manager else 0,
            "max_active_runs": config.max_active_runs,
        }
        if app_state.websocket_manager is not None:
            checks["websocket"] = {"status": "healthy", **app_state.websocket_manager.get_connection_info()}

        ready = all(check["status"] == "healthy" for check in checks.values())
        return JSONResponse(
            status_code=200 if ready else 503,
            content={
                "ready": ready,
                "checks": checks,
                "timestamp": datetime.now(timezone.utc).isoformat()
            }
        )
