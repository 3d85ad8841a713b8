"""FastAPI application entry point."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from client_identity.api.router import api_router
from client_identity.config import settings
from client_identity.db.turso import TursoClient
from client_identity.identity.candidate_search import CandidateSearch
from client_identity.identity.executor import MergeExecutor
from client_identity.identity.planner import MergePlanner
from client_identity.identity.service import IdentityResolutionService
from client_identity.repositories.client_repo import ClientRepository

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


async def initialize_identity_service(app: FastAPI, db: TursoClient) -> None:
    """Create the client repository schema and wire the identity core.

    Registers client_repo and identity_service in app state.
    """
    client_repo = ClientRepository(db)
    await client_repo.initialize()
    app.state.client_repo = client_repo

    app.state.identity_service = IdentityResolutionService(
        store=client_repo,
        search=CandidateSearch(client_repo),
        planner=MergePlanner(),
        executor=MergeExecutor(client_repo),
    )
    logger.info("IdentityResolutionService initialized")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan management.

    Startup:
    - Initialize database connection
    - Initialize client schema and identity service

    Shutdown:
    - Close database connection
    """
    logger.info(f"Starting {settings.app_name}...")

    db = TursoClient()
    await db.connect()
    app.state.db = db
    logger.info(f"Database connected: {db.url}")

    await initialize_identity_service(app, db)

    yield

    logger.info(f"Shutting down {settings.app_name}...")
    await db.close()


app = FastAPI(
    title=settings.app_name,
    description="Client matching and duplicate merge for case management",
    version=settings.app_version,
    lifespan=lifespan,
)

app.include_router(api_router)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "client_identity.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
    )
