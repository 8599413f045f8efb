from __future__ import annotations

import os

import uvicorn

from icalsync.log import configure_logging


def main() -> None:
    configure_logging()
    host = os.getenv("ICALSYNC_HOST", "0.0.0.0")
    port = int(os.getenv("ICALSYNC_PORT", "8080"))
    uvicorn.run("icalsync.web_admin:app", host=host, port=port, reload=False)


if __name__ == "__main__":
    main()
