"""Server entry point.

Environment:
    ENV          "development" loads .env.development, anything else .env.production
    LOG_LEVEL    root log level (default INFO)
    LOG_FILE     log file path (default ./logs/owlverload_api.log)
    HOST / PORT  bind address (default 0.0.0.0:8080)

Run with: python -m owlverload.serve
"""

from __future__ import annotations

import logging
import os

from dotenv import load_dotenv

from owlverload.app import create_app
from owlverload.logging_config import setup_logging

logger = logging.getLogger(__name__)


def load_environment() -> str:
    """Load the env file for the current ENV; a missing file is not fatal."""
    env_file = ".env.development" if os.environ.get("ENV") == "development" else ".env.production"
    if not load_dotenv(env_file):
        logger.warning("Env file %s not found, using process environment", env_file)
    return env_file


load_environment()
setup_logging(
    os.environ.get("LOG_LEVEL", "INFO"),
    os.environ.get("LOG_FILE", os.path.join("logs", "owlverload_api.log")),
)

app = create_app()


def main() -> None:
    import uvicorn

    host = os.environ.get("HOST", "0.0.0.0")
    port = int(os.environ.get("PORT", "8080"))
    logger.info("Server starting on %s:%d", host, port)
    uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    main()
