"""
main.py

Entry point for the project ledger API.

Configures logging from projectledger.yaml, wires the in-memory
infrastructure into the FastAPI app and starts uvicorn.

Usage
-----
    # Option 1 — run directly
    python main.py

    # Option 2 — run via uvicorn CLI (recommended for development)
    uvicorn main:app --reload --port 8000

    # Another config file
    PROJECTLEDGER_CONFIG=/etc/projectledger.yaml uvicorn main:app

Once running, open your browser at:
    http://localhost:8000/docs      ← Swagger UI
    http://localhost:8000/health    ← liveness check

Quick-start walkthrough
-----------------------
1.  POST /api/v1/drafts                       — save a draft (title + content)
2.  POST /api/v1/drafts/completion            — check which phases are complete
3.  POST /api/v1/projects                     — submit the finished project
4.  POST /api/v1/projects/{id}/validation     — approve it ({"approve": true})
5.  GET  /api/v1/users/{user_id}/allocations  — real vs submitted ledger
6.  PUT  /api/v1/users/{user_id}/allocations  — save edited cells
"""

import logging

import uvicorn

from api import app, get_uow
from config import get_config
from infrastructure import InMemoryUnitOfWork

logger = logging.getLogger(__name__)


def configure_logging() -> None:
    config = get_config()
    logging.basicConfig(level=config.log_level, format=config.log_format)
    logger.info("Configuration loaded from %s", config.path)


configure_logging()


# ---------------------------------------------------------------------------
# Wire the concrete Unit of Work into the FastAPI dependency system.
# To swap databases, replace InMemoryUnitOfWork with your SQL implementation.
# ---------------------------------------------------------------------------

app.dependency_overrides[get_uow] = lambda: InMemoryUnitOfWork()


if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host="127.0.0.1",
        port=8000,
        reload=True,          # auto-reload on file changes during development
        log_level=get_config().log_level.lower(),
    )
