"""Application startup script and CLI interface."""

import sys
import json
import argparse

from pydantic import ValidationError

from .config import (
    AppConfig,
    load_config,
    get_development_config,
    get_production_config,
    get_testing_config,
    validate_config
)
from .core.logging import get_logger, setup_logging


def create_argument_parser() -> argparse.ArgumentParser:
    """Create command line argument parser."""
    parser = argparse.ArgumentParser(
        prog="workflow-engine",
        description="Workflow Execution Engine - runs versioned workflow graphs"
    )

    # Server configuration
    parser.add_argument("--host", help="Host to bind the server to")
    parser.add_argument("--port", type=int, help="Port to bind the server to")
    parser.add_argument("--reload", action="store_true", help="Enable auto-reload for development")

    # Environment configuration
    parser.add_argument(
        "--env",
        choices=["development", "production", "testing"],
        help="Environment configuration preset"
    )
    parser.add_argument("--config", help="Path to a .env configuration file")

    parser.add_argument("--database-url", help="Database connection URL")
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level"
    )
    parser.add_argument("--log-file", help="Path to log file")
    parser.add_argument("--debug", action="store_true", help="Enable debug mode")

    # Execution engine configuration
    parser.add_argument("--worker-pool-size", type=int, help="Worker threads shared by all executions")
    parser.add_argument(
        "--max-parallel-nodes",
        type=int,
        help="Maximum concurrently running nodes per execution"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("run", help="Run the workflow engine server")

    db_parser = subparsers.add_parser("db", help="Database management commands")
    db_subparsers = db_parser.add_subparsers(dest="db_command", help="Database commands")
    db_subparsers.add_parser("init", help="Initialize database tables")
    db_subparsers.add_parser("migrate", help="Create indexes and apply database settings")
    db_subparsers.add_parser("reset", help="Reset database (drop and recreate tables)")

    health_parser = subparsers.add_parser("health", help="Run health checks")
    health_parser.add_argument("--detailed", action="store_true", help="Run component health checks")

    config_parser = subparsers.add_parser("config", help="Configuration management")
    config_subparsers = config_parser.add_subparsers(dest="config_command", help="Config commands")
    config_subparsers.add_parser("show", help="Show current configuration")
    config_subparsers.add_parser("validate", help="Validate configuration")

    validate_parser = subparsers.add_parser("validate", help="Validate a workflow definition JSON file")
    validate_parser.add_argument("file", help="Path to the workflow definition")

    return parser


def load_configuration(args: argparse.Namespace) -> AppConfig:
    """Load configuration based on command line arguments."""
    if args.env == "development":
        config = get_development_config()
    elif args.env == "production":
        config = get_production_config()
    elif args.env == "testing":
        config = get_testing_config()
    else:
        config = load_config(args.config)

    overrides = {}
    if args.host:
        overrides["host"] = args.host
    if args.port:
        overrides["port"] = args.port
    if args.reload:
        overrides["reload"] = True
    if args.database_url:
        overrides["database_url"] = args.database_url
    if args.log_level:
        overrides["log_level"] = args.log_level
    if args.log_file:
        overrides["log_file"] = args.log_file
    if args.debug:
        overrides["debug"] = True
    if args.worker_pool_size:
        overrides["worker_pool_size"] = args.worker_pool_size
    if args.max_parallel_nodes:
        overrides["max_parallel_nodes_per_execution"] = args.max_parallel_nodes

    if not overrides:
        return config
    return AppConfig(**{**config.model_dump(), **overrides})


def run_server(config: AppConfig):
    """Run the workflow engine server."""
    import uvicorn
    from .factory import create_app

    logger = get_logger(__name__)
    logger.info(f"Starting server on {config.host}:{config.port}")

    uvicorn_config = config.get_uvicorn_config()
    # The engine keeps executions in process; reload would restart it.
    uvicorn_config["reload"] = False
    uvicorn.run(create_app(config), **uvicorn_config)


def run_database_command(command: str, config: AppConfig):
    """Run database management commands."""
    from .storage.database import create_database_engine, create_tables, drop_tables
    from .storage.migrations import run_migrations

    logger = get_logger(__name__)
    engine = create_database_engine(
        config.database_url,
        echo=config.database_echo,
        connect_args=config.get_database_connect_args()
    )

    try:
        if command == "init":
            logger.info("Initializing database tables...")
            create_tables(engine)
            logger.info("Database tables created successfully")

        elif command == "migrate":
            logger.info("Running database migrations...")
            create_tables(engine)
            run_migrations(engine)
            logger.info("Database migrations completed successfully")

        elif command == "reset":
            logger.info("Resetting database...")
            drop_tables(engine)
            create_tables(engine)
            run_migrations(engine)
            logger.info("Database reset completed successfully")
    finally:
        engine.dispose()


async def run_health_check(config: AppConfig, detailed: bool = False) -> int:
    """Run health checks; returns the process exit code."""
    if not detailed:
        print(f"Service: {config.app_name}")
        print("Status: Running")
        print(f"Version: {config.app_version}")
        return 0

    from .factory import build_components, graceful_shutdown

    components = build_components(config.model_copy(update={"enable_schedule_triggers": False}))
    try:
        results = await components.health_checker.run_all_checks()
    finally:
        graceful_shutdown(components)

    print(f"Overall Status: {results['overall_status']}")
    print(f"Timestamp: {results['timestamp']}")
    for check_name, result in results.get('checks', {}).items():
        print(f"  {check_name}: {result.get('status', 'unknown')} - {result.get('message', 'No message')}")

    return 0 if results['overall_status'] == 'healthy' else 1


def validate_workflow_file(path: str) -> int:
    """Validate a workflow definition file against the built-in node types and actions."""
    from .actions import register_builtin_actions
    from .core.action_provider import ActionProvider
    from .core.graph_validator import GraphValidator
    from .core.node_executors import create_default_registry
    from .models.core import WorkflowDefinition

    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = json.load(handle)
        definition = WorkflowDefinition.model_validate(data)
    except (OSError, ValueError) as e:
        # pydantic's ValidationError is a ValueError
        print(f"Could not load {path}: {e}")
        return 1

    provider = ActionProvider()
    register_builtin_actions(provider)
    result = GraphValidator(create_default_registry(), provider).validate(definition)

    print(f"Workflow '{definition.id}': {'VALID' if result.is_valid else 'INVALID'}")
    for error in result.errors:
        print(f"  error: {error}")
    for warning in result.warnings:
        print(f"  warning: {warning}")
    return 0 if result.is_valid else 1


def show_configuration(config: AppConfig):
    """Show current configuration."""
    print("Current Configuration:")
    print(f"  App Name: {config.app_name}")
    print(f"  Version: {config.app_version}")
    print(f"  Debug: {config.debug}")
    print(f"  Host: {config.host}")
    print(f"  Port: {config.port}")
    print(f"  Database URL: {config.database_url}")
    print(f"  In-memory Store: {config.use_in_memory_store}")
    print(f"  Log Level: {config.log_level.value}")
    print(f"  Worker Pool Size: {config.worker_pool_size}")
    print(f"  Max Parallel Nodes per Execution: {config.max_parallel_nodes_per_execution}")
    print(f"  Max Active Executions: {config.max_active_executions}")
    print(f"  Execution Timeout: {config.execution_timeout}")
    print(f"  Node Timeout: {config.node_timeout}")
    print(f"  Schedule Triggers: {config.enable_schedule_triggers} (every {config.schedule_poll_interval}s)")


def validate_configuration_command(config: AppConfig) -> int:
    """Validate configuration and show results."""
    try:
        validate_config(config)
    except ValueError as e:
        print("Configuration validation: FAILED")
        print(f"Error: {e}")
        return 1
    print("Configuration validation: PASSED")
    print("All configuration settings are valid.")
    return 0


def main(argv=None):
    """Main entry point for the application."""
    parser = create_argument_parser()
    args = parser.parse_args(argv)

    try:
        config = load_configuration(args)
    except (ValidationError, ValueError) as e:
        print(f"Error: {e}")
        sys.exit(1)

    setup_logging(level=config.log_level.value, log_file=config.log_file, log_format=config.log_format)
    exit_code = 0

    try:
        if args.command == "validate":
            exit_code = validate_workflow_file(args.file)

        elif args.command == "config":
            if args.config_command == "show":
                show_configuration(config)
            elif args.config_command == "validate":
                exit_code = validate_configuration_command(config)
            else:
                print("Configuration command required. Use --help for options.")
                exit_code = 1

        else:
            validate_config(config)

            if args.command == "run" or args.command is None:
                run_server(config)

            elif args.command == "db":
                if args.db_command:
                    run_database_command(args.db_command, config)
                else:
                    print("Database command required. Use --help for options.")
                    exit_code = 1

            elif args.command == "health":
                import asyncio
                exit_code = asyncio.run(run_health_check(config, args.detailed))

    except Exception as e:
        print(f"Error: {e}")
        exit_code = 1

    if exit_code:
        sys.exit(exit_code)


if __name__ == "__main__":
    main()
