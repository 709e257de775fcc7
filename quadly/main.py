"""
Main entry point for the Quadly server.

This module loads configuration, sets up logging and runs the FastAPI
application under uvicorn.
"""

import argparse
import logging
import sys

from quadly.config import get_config
from quadly.shared.exceptions import ConfigurationError
from quadly.shared.logging_config import setup_logging

logger = logging.getLogger(__name__)


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Quadly quadlet management server")
    parser.add_argument("--host", help="Override HTTP_HOST")
    parser.add_argument("--port", type=int, help="Override HTTP_PORT")
    return parser.parse_args(argv)


def main(argv=None):
    """Main entry point for the server."""
    args = parse_args(argv)

    try:
        config = get_config()
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(2)

    setup_logging(
        log_level=config.logging.level,
        log_format=config.logging.format,
        log_file=config.logging.log_file,
        enable_audit=config.logging.enable_audit,
        audit_file=config.logging.audit_file
    )

    host = args.host or config.server.host
    port = args.port or config.server.port

    logger.info("Starting Quadly server...")
    logger.info(f"Configuration: quadlet_dir={config.quadlets.directory}, "
                f"poll_interval={config.monitoring.poll_interval}s, host={host}, port={port}")

    try:
        import uvicorn
        from quadly.api.main import create_app

        uvicorn_config = uvicorn.Config(
            create_app(),
            host=host,
            port=port,
            log_level=config.logging.level.value.lower(),
            timeout_keep_alive=5,
            timeout_graceful_shutdown=config.server.shutdown_timeout,
        )
        server = uvicorn.Server(uvicorn_config)
        server.run()

    except KeyboardInterrupt:
        logger.info("Server shutdown requested via keyboard interrupt")
    except Exception as e:
        logger.error(f"Server error: {e}")
        sys.exit(1)

    logger.info("Server shutdown complete")


if __name__ == "__main__":
    main()
