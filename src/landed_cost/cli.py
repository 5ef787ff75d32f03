"""Command-line interface for the landed-cost server."""

import argparse
import asyncio
import logging
import sys

from landed_cost import __version__
from landed_cost.config import get_settings


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _serve(args: argparse.Namespace) -> int:
    import uvicorn

    from landed_cost.api import create_app

    settings = get_settings()
    uvicorn.run(
        create_app(settings),
        host=args.host or settings.host,
        port=args.port or settings.port,
        log_level=settings.log_level.lower(),
    )
    return 0


async def _init_db() -> None:
    from landed_cost.database.connection import close_db, create_tables, init_db

    settings = get_settings()
    await init_db(settings)
    try:
        if not settings.database_auto_create:
            await create_tables()
    finally:
        await close_db()


async def _prune_sessions() -> int:
    from landed_cost.database.connection import close_db, init_db
    from landed_cost.database.sessions import DatabaseSessionStore

    settings = get_settings()
    await init_db(settings)
    try:
        store = DatabaseSessionStore.from_settings(settings)
        return await store.prune_expired()
    finally:
        await close_db()


def main() -> int:
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(
        description="Total Landed Costs - auth and session server"
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Serve command
    serve_parser = subparsers.add_parser("serve", help="Run the API server")
    serve_parser.add_argument("--host", help="Bind address (default: HOST setting)")
    serve_parser.add_argument("--port", type=int, help="Port (default: PORT setting)")

    # Database commands
    subparsers.add_parser("init-db", help="Create the users and sessions tables")
    subparsers.add_parser(
        "prune-sessions", help="Delete expired rows from the sessions table"
    )

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        return 0

    _configure_logging(get_settings().log_level)
    logger = logging.getLogger("landed_cost")

    if args.command == "serve":
        return _serve(args)

    if args.command == "init-db":
        asyncio.run(_init_db())
        logger.info("Database tables created")
        return 0

    if args.command == "prune-sessions":
        removed = asyncio.run(_prune_sessions())
        logger.info(f"Removed {removed} expired sessions")
        return 0

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
