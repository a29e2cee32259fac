import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI

from config import settings
from database import init_db
from error_monitoring import error_monitor, register_exception_handlers, setup_logging
from services.embedding_admin_router import router as embedding_admin_router
from services.pdf_jobs_router import router as pdf_jobs_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    await init_db()
    logger.info(f"Work notes service started ({settings.environment}, db={settings.db_path})")
    yield
    logger.info("Work notes service stopped")


# ---- FastAPI Setup ----
app = FastAPI(title="Work Notes", lifespan=lifespan)
register_exception_handlers(app)

app.include_router(pdf_jobs_router)
app.include_router(embedding_admin_router)


@app.get("/health")
async def health():
    return {
        "service": "worknotes",
        "status": "ok",
        "environment": settings.environment,
        "errors": error_monitor.health_check(),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
