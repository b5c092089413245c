#!/usr/bin/env python
"""Main entry point for the Chronicle notes MCP server."""
import argparse
import logging
import os
import sys
from pathlib import Path

from chronicle_notes.config import config
from chronicle_notes.models.db_models import init_db
from chronicle_notes.observability import configure_logging
from chronicle_notes.server.mcp_server import NotesMcpServer


def parse_args(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description="Chronicle Notes MCP Server")
    parser.add_argument(
        "--database-path",
        help="SQLite database file path",
        type=str,
        default=os.environ.get("CHRONICLE_NOTES_DATABASE_PATH")
    )
    parser.add_argument(
        "--database-url",
        help="Full SQLAlchemy database URL (overrides --database-path)",
        type=str,
        default=os.environ.get("CHRONICLE_NOTES_DATABASE_URL")
    )
    parser.add_argument(
        "--log-level",
        help="Logging level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=os.environ.get("CHRONICLE_NOTES_LOG_LEVEL", "INFO")
    )
    return parser.parse_args(argv)


def update_config(args):
    """Update the global config with command line arguments."""
    if args.database_path:
        config.database_path = Path(args.database_path)
    if args.database_url:
        config.database_url = args.database_url


def main(argv=None):
    """Run the Chronicle notes MCP server."""
    args = parse_args(argv)
    update_config(args)

    log_level = getattr(logging, args.log_level.upper(), logging.INFO)
    try:
        log_dir = configure_logging(log_dir=config.log_dir, level=log_level, console=True)
    except OSError as e:
        # Fall back to console logging if the log directory is not writable
        logging.basicConfig(level=log_level)
        logging.getLogger(__name__).warning(f"Failed to configure file logging: {e}")
        log_dir = None

    logger = logging.getLogger(__name__)
    if log_dir:
        logger.info(f"Persistent logging enabled: {log_dir}")

    try:
        logger.info(f"Using database: {config.get_db_url()}")
        engine = init_db()
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        sys.exit(1)

    try:
        logger.info("Starting Chronicle notes MCP server")
        server = NotesMcpServer(engine=engine)
        server.run()
    except Exception as e:
        logger.error(f"Error running server: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
