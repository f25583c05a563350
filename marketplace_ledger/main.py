import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from marketplace_ledger.core.config import CORS_ORIGINS, DATABASE_URL
from marketplace_ledger.core.database import Base, engine
from marketplace_ledger.core.logging_setup import configure_logging
from marketplace_ledger.core.startup_checks import ensure_migrations_applied, validate_runtime_environment
from marketplace_ledger.middleware.observability import ObservabilityMiddleware
import marketplace_ledger.models  # models must be imported before create_all
import marketplace_ledger.services.event_handlers  # registers event bus handlers

from marketplace_ledger.routers.admin_financial import router as admin_financial_router
from marketplace_ledger.routers.checkout import router as checkout_router
from marketplace_ledger.routers.internal_metrics import router as internal_metrics_router
from marketplace_ledger.routers.payouts import router as payouts_router
from marketplace_ledger.routers.seller_finance import router as seller_finance_router
from marketplace_ledger.routers.transfers import router as transfers_router
from marketplace_ledger.routers.webhooks import router as webhooks_router

configure_logging()

logger = logging.getLogger(__name__)
STARTUP_PREFIX = "[STARTUP]"
REPO_ROOT = Path(__file__).resolve().parents[1]
ALEMBIC_CONFIG_PATH = Path(os.getenv("ALEMBIC_CONFIG", str(REPO_ROOT / "alembic.ini")))


def _startup_tasks() -> None:
    try:
        validate_runtime_environment()
        if DATABASE_URL.startswith("sqlite"):
            Base.metadata.create_all(bind=engine)
        ensure_migrations_applied(engine=engine, alembic_config_path=ALEMBIC_CONFIG_PATH)
    except Exception:
        logger.exception("%s ERROR startup failed", STARTUP_PREFIX)
        raise


@asynccontextmanager
async def lifespan(_: FastAPI):
    _startup_tasks()
    yield


app = FastAPI(
    title="Marketplace Ledger API",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

if CORS_ORIGINS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
app.add_middleware(ObservabilityMiddleware)

# Routers
app.include_router(checkout_router)
app.include_router(seller_finance_router)
app.include_router(payouts_router)
app.include_router(transfers_router)
app.include_router(admin_financial_router)
app.include_router(webhooks_router)
app.include_router(internal_metrics_router)


@app.get("/")
def root():
    return {"status": "ok"}


@app.get("/health")
def health():
    return {"status": "healthy"}
