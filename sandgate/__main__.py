"""
Run the gateway under uvicorn.
"""

from __future__ import annotations

import logging

import uvicorn

from sandgate.config import get_settings


def main() -> None:
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(name)s %(levelname)s %(asctime)s %(message)s",
    )
    uvicorn.run(
        "sandgate.app:app",
        host=settings.host,
        port=settings.port,
        log_config=None,
        proxy_headers=True,
    )


if __name__ == "__main__":
    main()
