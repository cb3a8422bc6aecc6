#!/usr/bin/env python3
"""
Case Workflow Engine Entry Point

Starts the FastAPI server with the workflow engine configured from
WORKFLOW_* environment variables.
"""

import sys
from pathlib import Path

# Add the project root to Python path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from case_workflow.api import run_server
from case_workflow.config import get_config
from case_workflow.logging_config import setup_logging


if __name__ == "__main__":
    config = get_config()
    logger = setup_logging(config.log_level, config.log_format, log_file=config.log_file)
    logger.info("Starting case workflow engine on %s:%s", config.api_host, config.api_port)

    try:
        run_server(host=config.api_host, port=config.api_port)
    except KeyboardInterrupt:
        logger.info("Shutting down case workflow engine")
    except Exception:
        logger.exception("Error starting server")
        sys.exit(1)
