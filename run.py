#!/usr/bin/env python3
"""
Financial Operations Control Plane Entry Point

Starts the FastAPI server with settings from the FINOPS_* environment.
"""

import sys
from pathlib import Path

# Add the project root to Python path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from finops_control.api import run_server
from finops_control.config import get_config
from finops_control.logging_config import setup_logging


if __name__ == "__main__":
    config = get_config()
    logger = setup_logging(config.log_level, log_format=config.log_format, log_file=config.log_file)
    logger.info(f"Starting control plane on {config.api_host}:{config.api_port} "
                f"(storage {config.database_url}, missing permission policy "
                f"'{config.missing_permission_policy}')")

    try:
        run_server(host=config.api_host, port=config.api_port)
    except KeyboardInterrupt:
        logger.info("Shutting down control plane")
    except Exception:
        logger.exception("Error starting server")
        sys.exit(1)
