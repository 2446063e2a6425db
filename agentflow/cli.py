"""Command line interface: run the server and manage the ledger database."""

import argparse
import asyncio
import sys

from .config import (
    AppConfig,
    LogLevel,
    get_development_config,
    get_production_config,
    get_testing_config,
    load_config,
    validate_config,
)
from .core.logging import get_logger, setup_logging

logger = get_logger(__name__)

PRESETS = {
    "development": get_development_config,
    "production": get_production_config,
    "testing": get_testing_config,
}


def load_configuration(args: argparse.Namespace) -> AppConfig:
    """Start from an environment preset (or the .env/environment) and apply flag overrides."""
    config = PRESETS[args.env]() if args.env else load_config(args.config)

    overrides = {
        "host": args.host,
        "port": args.port,
        "database_url": args.database_url,
        "log_file": args.log_file,
        "reload": args.reload or None,
        "debug": args.debug or None,
        "log_level": LogLevel(args.log_level) if args.log_level else None,
    }
    for name, value in overrides.items():
        if value is not None:
            setattr(config, name, value)
    return config


def cmd_run(config: AppConfig, args: argparse.Namespace) -> None:
    import uvicorn
    from .factory import create_app

    logger.info(f"Starting server on {config.host}:{config.port} with {args.workers} worker(s)")
    if args.workers > 1:
        # Each worker process builds its own app from the environment.
        uvicorn.run("agentflow.factory:create_app", factory=True, workers=args.workers,
                    **config.get_uvicorn_config())
    else:
        uvicorn.run(create_app(config), **config.get_uvicorn_config())


def cmd_db(config: AppConfig, args: argparse.Namespace) -> None:
    from .core.ledger import ExecutionLedger
    from .storage.database import create_tables, drop_tables, init_database
    from .storage.migrations import run_migrations

    if not args.db_command:
        print("Database command required. Use --help for options.")
        sys.exit(1)

    init_database(config.database_url, echo=config.database_echo)

    if args.db_command == "init":
        create_tables()
        print("Database tables created")
    elif args.db_command == "migrate":
        run_migrations()
        print("History indexes created")
    elif args.db_command == "reset":
        drop_tables()
        create_tables()
        run_migrations()
        print("Database reset")
    elif args.db_command == "purge":
        retention = args.days or config.retention_days
        result = ExecutionLedger().purge_older_than(retention)
        print(f"Deleted {result['executions_deleted']} executions and {result['logs_deleted']} audit entries "
              f"older than {retention} days")


def cmd_health(config: AppConfig, args: argparse.Namespace) -> None:
    """Print service info, or build the components and run every health check."""
    from .core.error_recovery import health_checker
    from .factory import initialize_core_components, initialize_database, setup_health_checks

    if not args.detailed:
        print(f"Service: {config.app_name} {config.app_version}")
        print(f"Database URL: {config.database_url}")
        return

    initialize_database(config, logger)
    initialize_core_components(config, logger)
    setup_health_checks(logger)
    results = asyncio.run(health_checker.run_all_checks())

    print(f"Overall Status: {results['overall_status']}")
    for name, result in results["checks"].items():
        print(f"  {name}: {result['status']} - {result.get('message', '')}")
    if results["overall_status"] != "healthy":
        sys.exit(1)


def cmd_config(config: AppConfig, args: argparse.Namespace) -> None:
    if args.config_command == "show":
        print("Current Configuration:")
        for label, value in (
            ("App Name", config.app_name),
            ("Version", config.app_version),
            ("Debug", config.debug),
            ("Host", config.host),
            ("Port", config.port),
            ("Database URL", config.database_url),
            ("Log Level", config.log_level.value),
            ("Default Model", config.default_model),
            ("Delay Hard Cap", f"{config.delay_hard_cap_ms}ms"),
            ("Retry Re-resolves Params", config.retry_reresolve_params),
            ("MCP Broker", config.mcp_broker_url or "not configured"),
            ("Retention", f"{config.retention_days} days"),
        ):
            print(f"  {label}: {value}")
    elif args.config_command == "validate":
        try:
            validate_config(config)
        except ValueError as e:
            print("Configuration validation: FAILED")
            print(f"Error: {e}")
            sys.exit(1)
        print("Configuration validation: PASSED")
    else:
        print("Configuration command required. Use --help for options.")
        sys.exit(1)


def create_argument_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="agentflow",
        description="Agentflow - workflow step interpreter with durable execution ledger"
    )
    parser.add_argument("--env", choices=sorted(PRESETS), help="Configuration preset")
    parser.add_argument("--config", help="Path to a .env configuration file")
    parser.add_argument("--host", help="Host to bind the server to")
    parser.add_argument("--port", type=int, help="Port to bind the server to")
    parser.add_argument("--reload", action="store_true", help="Enable auto-reload for development")
    parser.add_argument("--database-url", help="Database connection URL")
    parser.add_argument("--log-level", choices=[level.value for level in LogLevel], help="Logging level")
    parser.add_argument("--log-file", help="Path to log file")
    parser.add_argument("--debug", action="store_true", help="Enable debug mode")
    parser.set_defaults(handler=cmd_run, workers=1)

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    run_parser = subparsers.add_parser("run", help="Run the API server (default)")
    run_parser.add_argument("--workers", type=int, default=1, help="Number of worker processes")
    run_parser.set_defaults(handler=cmd_run)

    db_parser = subparsers.add_parser("db", help="Database management commands")
    db_parser.set_defaults(handler=cmd_db)
    db_subparsers = db_parser.add_subparsers(dest="db_command")
    db_subparsers.add_parser("init", help="Create the ledger tables")
    db_subparsers.add_parser("migrate", help="Create history query indexes")
    db_subparsers.add_parser("reset", help="Drop and recreate every table")
    purge_parser = db_subparsers.add_parser("purge", help="Delete finished executions past retention")
    purge_parser.add_argument("--days", type=int, help="Retention in days (default: configured retention)")

    health_parser = subparsers.add_parser("health", help="Run health checks")
    health_parser.add_argument("--detailed", action="store_true", help="Run component health checks")
    health_parser.set_defaults(handler=cmd_health)

    config_parser = subparsers.add_parser("config", help="Configuration management")
    config_parser.set_defaults(handler=cmd_config)
    config_subparsers = config_parser.add_subparsers(dest="config_command")
    config_subparsers.add_parser("show", help="Show current configuration")
    config_subparsers.add_parser("validate", help="Validate configuration")

    return parser


def main(argv=None):
    """Entry point of the ``agentflow`` command."""
    args = create_argument_parser().parse_args(argv)

    try:
        config = load_configuration(args)
        setup_logging(level=config.log_level.value, log_file=config.log_file, log_format=config.log_format)
        if args.command != "config":
            validate_config(config)
        args.handler(config, args)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
