import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI

from app.config import settings
from app.db import close_pool, init_pool
from app.routers.deploy import router as deploy_router
from app.services.deployment_history import InMemoryDeploymentHistory, PostgresDeploymentHistory
from app.services.rollback_service import ActiveRollbackRegistry

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.rollback_registry = ActiveRollbackRegistry()
    if settings.database_url:
        pool = await init_pool(settings.database_url)
        app.state.deployment_history = PostgresDeploymentHistory(pool)
    else:
        logger.warning("DATABASE_URL is not set; deployment history is kept in memory")
        app.state.deployment_history = InMemoryDeploymentHistory()
    yield
    await close_pool()


app = FastAPI(
    title="dataverse-deployer",
    description="Deploys ER diagrams to Dataverse and rolls them back",
    lifespan=lifespan,
)

app.include_router(deploy_router)


@app.get("/health")
async def health():
    return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}
