#!/usr/bin/env python3
"""
Online Banking Entry Point

Starts the FastAPI server with host, port and logging taken from the
BANKING_* environment configuration.
"""

import sys
from pathlib import Path

# Add the project root to Python path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from online_banking.config import get_config
from online_banking.logging_config import setup_logging
from online_banking.api import run_server


if __name__ == "__main__":
    config = get_config()
    logger = setup_logging(config.log_level, log_format=config.log_format, log_file=config.log_file)
    logger.info("Starting online banking API on %s:%d", config.api_host, config.api_port)
    if not config.auth_enabled:
        logger.warning("Authentication is disabled; callers are trusted via X-User-Id")

    try:
        run_server(host=config.api_host, port=config.api_port, debug=False)
    except KeyboardInterrupt:
        logger.info("Shutting down")
    except Exception as e:
        logger.error("Error starting server: %s", e)
        sys.exit(1)
