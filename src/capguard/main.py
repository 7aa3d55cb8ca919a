"""Main entry point for capguard."""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

import uvicorn

from .audit import AuditLog
from .config import create_default_config, get_config_path, load_config
from .dashboard import create_dashboard_app
from .manager import CapabilityManager
from .registry import BUILTIN_TOOL_PERMISSIONS


def setup_logging(level: str = "INFO") -> None:
    """Configure logging for capguard."""
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def init_config(args: argparse.Namespace) -> None:
    """Initialize the configuration file."""
    config_path = create_default_config(Path(args.config) if args.config else None)
    print(f"Configuration file created at: {config_path}")


def run_server(args: argparse.Namespace) -> None:
    """Run the HTTP approval server."""
    config = load_config(Path(args.config) if args.config else None)

    host = args.host or config.server.host
    port = args.port or config.server.port

    manager = CapabilityManager(config)
    manager.registry.register_many(BUILTIN_TOOL_PERMISSIONS)
    manager.registry.register_many(tool.to_permission() for tool in config.tools)

    print(f"Starting capguard approval server on http://{host}:{port}")
    print(f"Configuration: {args.config or get_config_path()}")
    print(f"Audit log: {config.audit.audit_path() if config.audit.persist else 'memory only'}")

    app = create_dashboard_app(manager, initialize_on_startup=True)

    uvicorn.run(
        app,
        host=host,
        port=port,
        log_level=config.logging.level.lower(),
    )


def show_audit(args: argparse.Namespace) -> None:
    """Print recent persisted audit entries as JSON."""
    config = load_config(Path(args.config) if args.config else None)
    if not config.audit.persist:
        print("Audit log: memory only")
        return

    audit = AuditLog(path=config.audit.audit_path())
    asyncio.run(audit.load())

    entries = audit.get_recent(args.limit)
    print(json.dumps([e.model_dump(mode="json") for e in entries], indent=2))


def main() -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="capguard - capability-based approval layer for agent tool calls",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  capguard init              # Write the default config (~/.capguard/config.yaml)
  capguard serve             # Run the HTTP approval server
  capguard audit --limit 20  # Show the 20 most recent audit entries
        """,
    )

    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument("-c", "--config", help="Path to config.yaml")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    subparsers.add_parser("init", help="Initialize configuration")

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP approval server")
    serve_parser.add_argument("--host", help="Host to bind to")
    serve_parser.add_argument("--port", type=int, help="Port to listen on")

    audit_parser = subparsers.add_parser("audit", help="Show recent audit entries")
    audit_parser.add_argument("--limit", type=int, default=50, help="Number of entries")

    args = parser.parse_args()

    log_level = "DEBUG" if args.verbose else "INFO"
    if args.command == "serve" and not args.verbose:
        log_level = load_config(Path(args.config) if args.config else None).logging.level
    setup_logging(log_level)

    if args.command == "init":
        init_config(args)
    elif args.command == "serve":
        run_server(args)
    elif args.command == "audit":
        show_audit(args)
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
