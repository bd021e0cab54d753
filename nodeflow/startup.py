"""Command line interface for serving and running graphs locally."""

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import List, Optional

from pydantic import ValidationError

from .config import (
    AppConfig,
    get_development_config,
    get_production_config,
    get_testing_config,
    load_config,
    validate_config,
)
from .core.exceptions import WorkflowEngineError
from .core.execution_engine import ExecutionEngine
from .core.executors import Collaborators
from .core.human_input import ConsoleInputChannel
from .core.logging import get_logger, setup_logging
from .core.providers import ModelResolver
from .models.core import GraphDefinition, RunEvent, RunResult, RunStatusEnum


logger = get_logger(__name__)


def create_argument_parser() -> argparse.ArgumentParser:
    """Create command line argument parser."""
    parser = argparse.ArgumentParser(
        prog="nodeflow",
        description="nodeflow - execute node graphs authored in a visual workflow editor"
    )

    parser.add_argument("--env", choices=["development", "production", "testing"],
                        help="Environment configuration preset")
    parser.add_argument("--config", help="Path to a .env configuration file")
    parser.add_argument("--database-url", help="Database connection URL")
    parser.add_argument("--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
                        help="Logging level")
    parser.add_argument("--log-file", help="Path to log file")
    parser.add_argument("--debug", action="store_true", help="Enable debug mode")
    parser.add_argument("--max-steps", type=int, help="Maximum node executions per run")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP/WebSocket server")
    serve_parser.add_argument("--host", help="Host to bind the server to")
    serve_parser.add_argument("--port", type=int, help="Port to bind the server to")
    serve_parser.add_argument("--reload", action="store_true", help="Enable auto-reload for development")
    serve_parser.add_argument("--workers", type=int, default=1, help="Number of worker processes (default: 1)")

    execute_parser = subparsers.add_parser("execute", help="Run a graph JSON file locally")
    execute_parser.add_argument("graph_file", help="Path to the graph JSON exported by the editor")
    execute_parser.add_argument("--no-input", action="store_true",
                                help="Decline every human input request instead of prompting")
    execute_parser.add_argument("--save", help="Write the graph annotated with run status to this file")

    validate_parser = subparsers.add_parser("validate", help="Validate a graph JSON file")
    validate_parser.add_argument("graph_file", help="Path to the graph JSON exported by the editor")

    db_parser = subparsers.add_parser("db", help="Database management commands")
    db_subparsers = db_parser.add_subparsers(dest="db_command", help="Database commands")
    db_subparsers.add_parser("init", help="Initialize database tables")
    db_subparsers.add_parser("reset", help="Reset database (drop and recreate tables)")

    config_parser = subparsers.add_parser("config", help="Configuration management")
    config_subparsers = config_parser.add_subparsers(dest="config_command", help="Config commands")
    config_subparsers.add_parser("show", help="Show current configuration")
    config_subparsers.add_parser("validate", help="Validate configuration")

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
    if getattr(args, "host", None):
        overrides["host"] = args.host
    if getattr(args, "port", None):
        overrides["port"] = args.port
    if getattr(args, "reload", False):
        overrides["reload"] = True
    if args.database_url:
        overrides["database_url"] = args.database_url
    if args.log_level:
        overrides["log_level"] = args.log_level
    if args.log_file:
        overrides["log_file"] = args.log_file
    if args.debug:
        overrides["debug"] = True
    if args.max_steps:
        overrides["max_step_count"] = args.max_steps

    if overrides:
        config = AppConfig(**{**config.model_dump(), **overrides})
    return config


def load_graph_file(path: str) -> GraphDefinition:
    """
    Read a graph exported by the editor.

    Accepts either the bare ``{"nodes": [...], "edges": [...]}`` snapshot or a
    wrapper with the snapshot under ``"graph"``.
    """
    payload = json.loads(Path(path).read_text(encoding="utf-8"))
    if isinstance(payload, dict) and "graph" in payload and "nodes" not in payload:
        payload = payload["graph"]
    return GraphDefinition(**payload)


def run_server(config: AppConfig, workers: int = 1):
    """Run the HTTP server."""
    import uvicorn

    from .factory import create_app

    logger.info(f"Starting server with {workers} worker(s)")
    uvicorn_config = config.get_uvicorn_config()

    if workers > 1:
        uvicorn.run("nodeflow.factory:create_app", factory=True, workers=workers, **uvicorn_config)
    else:
        uvicorn.run(create_app(config), **uvicorn_config)


def _print_event(event: RunEvent):
    if event.event_type == "log":
        data = event.data
        prefix = f"[{data.get('node_label')}] " if data.get("node_label") else ""
        print(f"{data['level'].upper():7} {prefix}{data['message']}")
    elif event.event_type == "run_summary":
        print(f"Final output: {json.dumps(event.data.get('final_output'), default=str)}")


async def execute_graph(config: AppConfig, graph: GraphDefinition, interactive: bool = True) -> RunResult:
    """Execute a graph locally, printing the run log as it is written."""
    resolver = ModelResolver.from_config(config)
    collaborators = Collaborators(
        model_resolver=resolver,
        human_input=ConsoleInputChannel() if interactive else None,
        default_node_delay_ms=config.default_node_delay_ms,
        request_timeout=config.request_timeout,
    )
    engine = ExecutionEngine(collaborators=collaborators, max_steps=config.max_step_count)
    try:
        return await engine.run(graph, listeners=[_print_event])
    finally:
        await resolver.aclose()


def run_execute_command(config: AppConfig, graph_file: str, interactive: bool, save: Optional[str]) -> int:
    graph = load_graph_file(graph_file)
    result = asyncio.run(execute_graph(config, graph, interactive))

    print(f"Run {result.run_id}: {result.status.value} after {result.steps} step(s)")
    if save:
        annotated = result.annotated_graph(graph)
        Path(save).write_text(annotated.model_dump_json(by_alias=True, indent=2), encoding="utf-8")
        print(f"Annotated graph written to {save}")
    return 0 if result.status == RunStatusEnum.COMPLETED else 1


def run_validate_command(graph_file: str) -> int:
    graph = load_graph_file(graph_file)
    result = graph.validate_structure()
    print(f"Graph '{graph.name}': {len(graph.nodes)} nodes, {len(graph.edges)} edges")
    for warning in result.warnings:
        print(f"  warning: {warning}")
    if not result.warnings:
        print("  no problems found")
    return 0


def run_database_command(command: str, config: AppConfig):
    """Run database management commands."""
    from .storage.database import drop_tables, init_database

    if command == "init":
        logger.info("Initializing database tables...")
        init_database(config.database_url, echo=config.database_echo)
        logger.info("Database tables created successfully")
    elif command == "reset":
        logger.info("Resetting database...")
        init_database(config.database_url, echo=config.database_echo)
        drop_tables()
        init_database(config.database_url, echo=config.database_echo)
        logger.info("Database reset completed successfully")


def show_configuration(config: AppConfig):
    print("Current Configuration:")
    for key, value in config.redacted().items():
        print(f"  {key}: {value}")


def validate_configuration_command(config: AppConfig) -> int:
    try:
        warnings = validate_config(config)
    except ValueError as e:
        print("Configuration validation: FAILED")
        print(f"Error: {e}")
        return 1
    print("Configuration validation: PASSED")
    for warning in warnings:
        print(f"  warning: {warning}")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the ``nodeflow`` command."""
    parser = create_argument_parser()
    args = parser.parse_args(argv)

    try:
        config = load_configuration(args)
        setup_logging(
            level=config.log_level.value,
            log_file=config.log_file,
            log_format=config.log_format,
            structured=config.log_structured,
        )

        if args.command == "serve" or args.command is None:
            validate_config(config)
            run_server(config, getattr(args, "workers", 1))
            return 0
        if args.command == "execute":
            return run_execute_command(config, args.graph_file, not args.no_input, args.save)
        if args.command == "validate":
            return run_validate_command(args.graph_file)
        if args.command == "db":
            if not args.db_command:
                print("Database command required. Use --help for options.")
                return 1
            run_database_command(args.db_command, config)
            return 0
        if args.command == "config":
            if args.config_command == "show":
                show_configuration(config)
                return 0
            if args.config_command == "validate":
                return validate_configuration_command(config)
            print("Configuration command required. Use --help for options.")
            return 1

        parser.print_help()
        return 1

    except (ValidationError, ValueError, OSError, WorkflowEngineError) as e:
        print(f"Error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
