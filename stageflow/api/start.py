#!/usr/bin/env python3
"""
Start the API server with configuration from .stageflow.yaml and the environment.
"""

import uvicorn

from stageflow.utils.config import Config
from stageflow.utils.logging import setup_structured_logging


def main() -> None:
    config = Config.load_default()
    setup_structured_logging(
        level=config.logging.level,
        format_type=config.logging.format,
        log_file=config.logging.file,
    )

    print(f"Starting API server on http://{config.api.host}:{config.api.port}")
    print(f"API documentation available at http://{config.api.host}:{config.api.port}/docs")
    print("\nPress Ctrl+C to stop the server")

    uvicorn.run(
        "stageflow.api.app:create_app",
        factory=True,
        host=config.api.host,
        port=config.api.port,
        reload=False,
        log_level="error",
    )


if __name__ == "__main__":
    main()
