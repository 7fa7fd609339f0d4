"""Run the order ingest consumer and its health endpoints under uvicorn.

The consumer starts and stops with the FastAPI lifespan in
``ingest_service.server``; ``HOST`` and ``PORT`` choose where the health and
stats endpoints listen.
"""

import os

import uvicorn

from ingest_service.server import app


def main() -> None:
    uvicorn.run(app, host=os.getenv("HOST", "0.0.0.0"), port=int(os.getenv("PORT", "8000")))


if __name__ == "__main__":
    main()
