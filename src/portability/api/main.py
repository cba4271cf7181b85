"""Portability API entry point.

uvicorn serves portability.api.main:app; run() is the portability-api
console script.
"""

import logging

from portability.api import create_app

logger = logging.getLogger(__name__)

app = create_app()


def run() -> None:
    """Run the API server using uvicorn."""
    import uvicorn

    from portability.core.config import Settings

    try:
        settings = Settings()
        host = settings.api_host
        port = settings.api_port
    except Exception:
        logger.warning("Could not load settings, using defaults")
        host = "127.0.0.1"
        port = 8000

    logger.info("Starting portability API on %s:%d", host, port)

    uvicorn.run(
        "portability.api.main:app",
        host=host,
        port=port,
        reload=False,
    )


if __name__ == "__main__":
    run()
