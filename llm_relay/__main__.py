"""
Start the LLM Relay API server.

    python -m llm_relay
    llm-relay --port 9000
"""

import argparse
import logging

import uvicorn

from llm_relay.config.settings import get_settings
from llm_relay.logging_utils import configure_logging

logger = logging.getLogger("llm_relay")


def main(argv=None) -> None:
    settings = get_settings()
    parser = argparse.ArgumentParser(description="LLM Relay API server")
    parser.add_argument("--host", default=settings.api_host, help="Bind address")
    parser.add_argument("--port", type=int, default=settings.api_port, help="Bind port")
    parser.add_argument("--reload", action="store_true", default=settings.api_reload, help="Auto-reload on code changes")
    args = parser.parse_args(argv)

    configure_logging(settings)
    logger.info("Starting %s on http://%s:%d", settings.app_name, args.host, args.port)
    logger.info("API documentation at http://%s:%d/docs", args.host, args.port)

    uvicorn.run(
        "llm_relay.api.app:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level=settings.log_level.lower(),
        access_log=settings.debug,
    )


if __name__ == "__main__":
    main()
