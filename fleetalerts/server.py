"""Fleet alerts server entry point.

Usage: python -m fleetalerts.server
"""
from __future__ import annotations

import logging

import uvicorn

from fleetalerts.config import settings

logger = logging.getLogger(__name__)


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
    logger.info("Starting server on %s:%d", settings.host, settings.port)
    uvicorn.run(
        "fleetalerts.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
