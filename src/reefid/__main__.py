"""Run the ReefID server: ``python -m reefid``."""

from __future__ import annotations

import uvicorn

from reefid.config import get_settings


def main() -> None:
    settings = get_settings()
    uvicorn.run(
        "reefid.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
