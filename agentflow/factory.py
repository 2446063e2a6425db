"""Application factory for creating FastAPI instances."""

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from .api.endpoints import init_dependencies, router
from .clients.llm import LanguageModelClient, build_model_router
from .clients.tools import CompositeToolBackend, McpBrokerClient, ToolBackend, ToolRegistry
from .config import AppConfig, get_config, validate_config
from .core.approval import ApprovalGate
from .core.error_recovery import health_checker
from .core.executors import ExecutorRegistry
from .core.ledger import ExecutionLedger
from .core.logging import get_logger, setup_logging
from .core.middleware import RequestContextMiddleware, SlowRequestMiddleware
from .core.orchestrator import StepInterpreter
from .core.templates import TemplateManager
from .storage.database import create_tables, get_session_factory, init_database
from .tools.builtin import DEFAULT_TOOLS


class ApplicationState:
    """Container for application state and components."""

    def __init__(self):
        self.config: Optional[AppConfig] = None
        self.tool_registry: Optional[ToolRegistry] = None
        self.tool_backend: Optional[ToolBackend] = None
        self.ledger: Optional[ExecutionLedger] = None
        self.executors: Optional[ExecutorRegistry] = None
        self.template_manager: Optional[TemplateManager] = None
        self.interpreter: Optional[StepInterpreter] = None
        self.approval_gate: Optional[ApprovalGate] = None
        self.logger = None


# Global application state
app_state = ApplicationState()


def register_default_tools(tool_registry: ToolRegistry, logger) -> None:
    """Register the built-in tools that need no MCP broker."""
    for tool_name, tool_func, tool_desc in DEFAULT_TOOLS:
        if tool_registry.tool_exists(tool_name):
            logger.info(f"Tool already exists: {tool_name}")
            continue
        tool_registry.register_tool(tool_name, tool_func, tool_desc)

    logger.info(f"Registered {len(DEFAULT_TOOLS)} default tools")


def initialize_database(config: AppConfig, logger) -> None:
    """Bind the engine to the configured database, create tables and indexes."""
    try:
        init_database(config.database_url, echo=config.database_echo)
        create_tables()
        logger.info("Database tables created")

        try:
            from .storage.migrations import run_migrations
            run_migrations()
        except Exception as e:
            # Indexes only speed up history queries; startup continues without them.
            logger.warning(f"Database migrations failed: {str(e)}")

    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise


def initialize_core_components(config: AppConfig, logger,
                               llm_client: Optional[LanguageModelClient] = None,
                               tool_backend: Optional[ToolBackend] = None) -> None:
    """Build the collaborators, ledger and interpreter and store them in ``app_state``."""
    tool_registry = ToolRegistry()
    register_default_tools(tool_registry, logger)

    if tool_backend is None:
        broker = None
        if config.mcp_broker_url:
            broker = McpBrokerClient(config.mcp_broker_url, api_key=config.mcp_api_key,
                                     timeout=config.mcp_timeout, transport=config.mcp_transport)
            logger.info(f"Tool calls fall back to MCP broker at {config.mcp_broker_url}")
        tool_backend = CompositeToolBackend(tool_registry, broker)

    if llm_client is None:
        llm_client = build_model_router(config)

    session_factory = get_session_factory()
    ledger = ExecutionLedger(session_factory)
    executors = ExecutorRegistry.create_default(config, llm_client, tool_backend)

    app_state.config = config
    app_state.tool_registry = tool_registry
    app_state.tool_backend = tool_backend
    app_state.ledger = ledger
    app_state.executors = executors
    app_state.template_manager = TemplateManager(session_factory, executors, tool_backend)
    app_state.interpreter = StepInterpreter(ledger, executors, config)
    app_state.approval_gate = ApprovalGate(ledger)
    app_state.logger = logger

    logger.info("Core components initialized")


def setup_health_checks(logger) -> None:
    """Register component health checks."""

    def check_database():
        session = get_session_factory()()
        try:
            session.execute(text("SELECT 1"))
        finally:
            session.close()
        return {"status": "healthy", "message": "Database connection successful"}

    def check_ledger():
        running = app_state.ledger.get_running_executions()
        return {
            "status": "healthy",
            "message": "Execution ledger operational",
            "running_executions": len(running)
        }

    def check_tool_registry():
        tools = app_state.tool_registry.list_tools()
        return {
            "status": "healthy",
            "message": "Tool registry operational",
            "registered_tools": len(tools)
        }

    health_checker.clear()
    health_checker.register_check("database", check_database, timeout=5.0)
    health_checker.register_check("ledger", check_ledger, timeout=3.0)
    health_checker.register_check("tool_registry", check_tool_registry, timeout=2.0)

    logger.info("Health checks registered")


def create_lifespan_handler(config: AppConfig,
                            llm_client: Optional[LanguageModelClient] = None,
                            tool_backend: Optional[ToolBackend] = None):
    """Create application lifespan handler."""

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
        logger = get_logger("agentflow")
        logger.info(f"Starting {config.app_name} v{config.app_version}")

        try:
            initialize_database(config, logger)
            initialize_core_components(config, logger, llm_client=llm_client, tool_backend=tool_backend)

            init_dependencies(
                template_manager=app_state.template_manager,
                interpreter=app_state.interpreter,
                approval_gate=app_state.approval_gate,
                ledger=app_state.ledger
            )
            setup_health_checks(logger)

            logger.info("Application startup completed successfully")
        except Exception as e:
            logger.error(f"Application startup failed: {e}")
            raise

        yield

        logger.info(f"Shutting down {config.app_name}")
        try:
            app_state.interpreter.shutdown()
        except Exception as e:
            logger.error(f"Error during interpreter shutdown: {str(e)}")

    return lifespan


def create_app(config: Optional[AppConfig] = None,
               llm_client: Optional[LanguageModelClient] = None,
               tool_backend: Optional[ToolBackend] = None) -> FastAPI:
    """Create and configure FastAPI application instance.

    ``llm_client`` and ``tool_backend`` replace the configured collaborators,
    which is how tests run without network access.
    """
    if config is None:
        config = get_config()

    validate_config(config)

    app = FastAPI(
        title=config.app_name,
        description="Workflow step interpreter with durable execution ledger and human approval gates",
        version=config.app_version,
        debug=config.debug,
        lifespan=create_lifespan_handler(config, llm_client=llm_client, tool_backend=tool_backend)
    )

    if config.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=config.cors_origins,
            allow_credentials=True,
            allow_methods=config.cors_methods,
            allow_headers=["*"],
        )

    app.add_middleware(SlowRequestMiddleware, slow_request_threshold=config.slow_request_threshold)
    app.add_middleware(RequestContextMiddleware)

    app.include_router(router)
    add_health_endpoints(app, config)

    return app


def add_health_endpoints(app: FastAPI, config: AppConfig) -> None:
    """Add health check endpoints to the application."""
    service_name = config.app_name.lower().replace(" ", "-")

    @app.get("/")
    async def root():
        return {"message": f"{config.app_name} is running", "version": config.app_version}

    @app.get("/health")
    async def health_check():
        return {
            "status": "healthy",
            "service": service_name,
            "version": config.app_version
        }

    @app.get("/health/detailed")
    async def detailed_health_check():
        """Detailed health check endpoint with component status."""
        results = await health_checker.run_all_checks()
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
        """Readiness check endpoint for container orchestration."""
        results = {}
        for check_name in ("database", "ledger"):
            if check_name in health_checker.checks:
                results[check_name] = await health_checker.run_check(check_name)

        ready = bool(results) and all(result.get("status") == "healthy" for result in results.values())

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
        return {
            "alive": True,
            "timestamp": datetime.utcnow().isoformat()
        }
