"""Serve the API with uvicorn: ``python -m nestauth`` or ``nestauth-serve``."""

from __future__ import annotations

import uvicorn

from nestauth.config import get_settings
from nestauth.logging import get_logger

logger = get_logger(__name__)


def main() -> None:
    settings = get_settings()
    logger.info(
        "server_starting",
        host=settings.bind_host,
        port=settings.bind_port,
        workers=settings.web_workers,
    )
    # import string so each worker process builds its own app and runtime
    uvicorn.run(
        "nestauth.app:app",
        host=settings.bind_host,
        port=settings.bind_port,
        workers=settings.web_workers,
        proxy_headers=True,
    )


if __name__ == "__main__":
    main()
