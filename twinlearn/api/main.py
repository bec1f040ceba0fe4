"""
HTTP server entrypoint for twinlearn.

Architectural role:
- Configures process-wide logging.
- Serves `twinlearn.api.http_api.create_app` through uvicorn.

Relevant environment variables:
- `HOST` (default `127.0.0.1`), `PORT` (default `8000`).
- `LOG_LEVEL` (default `INFO`).
"""

import logging
import os

import uvicorn
from dotenv import load_dotenv

load_dotenv()


def main():
    """Run the HTTP API until interrupted."""
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(
        "twinlearn.api.http_api:create_app",
        factory=True,
        host=os.getenv("HOST", "127.0.0.1"),
        port=int(os.getenv("PORT", "8000")),
        log_config=None,
    )


if __name__ == "__main__":
    main()
