"""FastAPI entrypoint for the bug-assessment workflow engine."""

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from bugflow.config import AUTO_SEED
from bugflow.utils.logger import setup_logging

# ──────────────────────── routers ─────────────────────────
from bugflow.interfaces.api.workflow_endpoints import router as workflow_router
from bugflow.interfaces.api.workflow_definition_endpoints import router as definition_router

setup_logging()
logger = logging.getLogger(__name__)


# ─────────────────── lifespan context manager ──────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create the schema and seed bundled definitions on startup."""
    from bugflow.persistence.database import AsyncSessionLocal, async_engine, create_all
    from bugflow.persistence.repositories.workflow_definition_repository import WorkflowDefinitionRepository
    from bugflow.service.workflow_definition_service import WorkflowDefinitionService
    from bugflow.service.workflow_seeder_service import WorkflowSeederService

    await create_all(async_engine)

    if AUTO_SEED:
        async with AsyncSessionLocal() as session:
            seeder = WorkflowSeederService(WorkflowDefinitionService(WorkflowDefinitionRepository(session)))
            counts = await seeder.seed_if_needed()
            if counts is not None:
                logger.info(f"[lifespan] seeded workflow definitions: {counts}")

    yield

    await async_engine.dispose()


# ──────────────────────── FastAPI app ──────────────────────
app = FastAPI(
    title="bugflow",
    version="0.1.0",
    description="Schema-driven bug assessment workflow engine",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(workflow_router)
app.include_router(definition_router)


@app.get("/")
async def root():
    return {"message": "bugflow is running"}


if __name__ == "__main__":
    uvicorn.run("bugflow.main:app", host="0.0.0.0", port=8000, reload=True)
