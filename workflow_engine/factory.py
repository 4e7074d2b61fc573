"""Application factory for creating FastAPI instances."""

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional
from fastapi import FastAPI
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware

from .config import AppConfig, get_config, validate_config
from .core.logging import setup_logging, get_logger
from .core.action_provider import ActionProvider
from .core.definition_store import DefinitionStore, InMemoryDefinitionStore, SqlDefinitionStore
from .core.engine import WorkflowEngine
from .core.error_recovery import HealthChecker
from .core.triggers import TriggerService
from .actions import register_builtin_actions
from .api.endpoints import router

logger = get_logger(__name__)


class ApplicationComponents:
    """Container for the engine components owned by one application."""

    def __init__(self):
        self.config: Optional[AppConfig] = None
        self.store: Optional[DefinitionStore] = None
        self.action_provider: Optional[ActionProvider] = None
        self.engine: Optional[WorkflowEngine] = None
        self.trigger_service: Optional[TriggerService] = None
        self.health_checker: Optional[HealthChecker] = None
        self.database_engine = None


def initialize_store(config: AppConfig, components: ApplicationComponents) -> DefinitionStore:
    """Create the definition store, creating tables and indexes for the database backend."""
    if config.use_in_memory_store:
        logger.info("Using in-memory definition store")
        return InMemoryDefinitionStore()

    from .storage.database import create_database_engine, create_session_factory, create_tables
    from .storage.migrations import run_migrations

    database_engine = create_database_engine(
        config.database_url,
        echo=config.database_echo,
        connect_args=config.get_database_connect_args()
    )
    create_tables(database_engine)
    logger.info("Database tables created")

    try:
        run_migrations(database_engine)
    except Exception as e:
        # The store works without the indexes.
        logger.warning(f"Database migrations failed: {str(e)}")

    components.database_engine = database_engine
    return SqlDefinitionStore(create_session_factory(database_engine))


def setup_health_checks(components: ApplicationComponents, timeout: float) -> HealthChecker:
    """Register component health checks."""
    checker = HealthChecker()
    store = components.store
    engine = components.engine
    action_provider = components.action_provider

    def check_store():
        return {"message": store.health_check(), "backend": type(store).__name__}

    def check_engine():
        return engine.health_check()

    def check_actions():
        return {"message": "Action provider operational", "registered_actions": len(action_provider.list_actions())}

    checker.register_check("store", check_store, timeout=timeout)
    checker.register_check("execution_engine", check_engine, timeout=timeout)
    checker.register_check("action_provider", check_actions, timeout=timeout)
    return checker


def build_components(config: AppConfig) -> ApplicationComponents:
    """Create and wire the store, actions, engine and trigger service."""
    components = ApplicationComponents()
    components.config = config
    components.store = initialize_store(config, components)

    components.action_provider = ActionProvider()
    register_builtin_actions(components.action_provider)

    components.engine = WorkflowEngine(
        components.store,
        components.action_provider,
        **config.get_engine_options()
    )
    components.trigger_service = TriggerService(
        components.store,
        components.engine,
        poll_interval=config.schedule_poll_interval
    )
    if config.enable_schedule_triggers:
        components.trigger_service.start()

    components.health_checker = setup_health_checks(components, config.health_check_timeout)
    logger.info("Core components initialized")
    return components


def graceful_shutdown(components: ApplicationComponents) -> None:
    """Stop the trigger poller and the engine, then release the database."""
    logger.info("Shutting down workflow engine")

    if components.trigger_service is not None:
        try:
            components.trigger_service.stop()
        except Exception as e:
            logger.error(f"Error stopping trigger service: {str(e)}")

    if components.engine is not None:
        try:
            components.engine.shutdown()
        except Exception as e:
            logger.error(f"Error during engine shutdown: {str(e)}")

    if components.database_engine is not None:
        components.database_engine.dispose()


def build_lifespan(config: AppConfig):
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

        try:
            components = build_components(config)
        except Exception as e:
            logger.error(f"Application startup failed: {e}")
            raise

        app.state.config = config
        app.state.components = components
        app.state.store = components.store
        app.state.action_provider = components.action_provider
        app.state.engine = components.engine
        app.state.trigger_service = components.trigger_service
        app.state.health_checker = components.health_checker
        logger.info("Application startup completed successfully")

        try:
            yield
        finally:
            graceful_shutdown(components)

    return lifespan


def create_app(config: Optional[AppConfig] = None) -> FastAPI:
    """Create and configure FastAPI application instance."""
    if config is None:
        config = get_config()

    validate_config(config)

    app = FastAPI(
        title=config.app_name,
        description="Runs versioned workflow graphs with branching, fan-out/fan-in, retries and compensation",
        version=config.app_version,
        debug=config.debug,
        lifespan=build_lifespan(config)
    )

    if config.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=config.cors_origins,
            allow_credentials=True,
            allow_methods=config.cors_methods,
            allow_headers=["*"],
        )

    from .core.middleware import ErrorHandlingMiddleware, PerformanceMonitoringMiddleware

    if config.enable_performance_monitoring:
        app.add_middleware(PerformanceMonitoringMiddleware, slow_request_threshold=config.slow_request_threshold)
    app.add_middleware(ErrorHandlingMiddleware)

    app.include_router(router)
    add_health_endpoints(app, config)

    return app


def add_health_endpoints(app: FastAPI, config: AppConfig) -> None:
    """Add health check endpoints to the application."""
    service_name = config.app_name.lower().replace(" ", "-")

    @app.get("/")
    async def root():
        """Root endpoint for basic health check."""
        return {"message": f"{config.app_name} is running", "version": config.app_version}

    @app.get("/health")
    async def health_check():
        """Basic health check endpoint."""
        return {
            "status": "healthy",
            "service": service_name,
            "version": config.app_version
        }

    @app.get("/health/detailed")
    async def detailed_health_check():
        """Detailed health check endpoint with component status."""
        checker: HealthChecker = app.state.health_checker
        results = await checker.run_all_checks()
        status_code = 200 if results["overall_status"] == "healthy" else 503

        return JSONResponse(
            status_code=status_code,
            content={
                "service": service_name,
                "version": config.app_version,
                **results
            }
        )

    @app.get("/health/ready")
    async def readiness_check():
        """Readiness check: the store and the engine must be healthy."""
        checker: HealthChecker = app.state.health_checker
        results = {}
        for check_name in ("store", "execution_engine"):
            if check_name in checker.checks:
                results[check_name] = await checker.run_check(check_name)

        ready = all(result.get("status") == "healthy" for result in results.values())
        return JSONResponse(
            status_code=200 if ready else 503,
            content={
                "ready": ready,
                "checks": results,
                "timestamp": datetime.utcnow().isoformat()
            }
        )

    @app.get("/health/live")
    async def liveness_check():
        """Liveness check endpoint for container orchestration."""
        return {
            "alive": True,
            "timestamp": datetime.utcnow().isoformat()
        }
