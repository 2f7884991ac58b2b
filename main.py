from __future__ import annotations

import uvicorn

from cryptodash.utils.config import get_settings
from cryptodash.utils.logger import setup_logging


def main() -> None:
    setup_logging()
    settings = get_settings()

    uvicorn.run(
        "cryptodash.api.webapp:app",
        host=settings.host,
        port=settings.port,
        reload=False,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
