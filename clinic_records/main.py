"""FastAPI application wiring for the clinic records service."""

from __future__ import annotations

from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from psycopg_pool import ConnectionPool

from .api.routes import router as v1_router
from .config import get_settings
from .domain.patients import PatientService
from .domain.payments import PaymentService
from .domain.records import MedicalRecordService
from .domain.service import AccountService
from .notifications import EmailSender, Notifier
from .repository import ClinicRepository

logger = logging.getLogger(__name__)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialise shared resources (Postgres pool, services) for the app lifecycle."""
    pool = ConnectionPool(settings.database_url, open=False)
    pool.open()
    logger.info("postgres pool opened")
    repository = ClinicRepository(pool)
    notifier = Notifier(repository, EmailSender(settings))
    app.state.pool = pool
    account_service = AccountService(repository)
    if settings.bootstrap_admin_email and settings.bootstrap_admin_password:
        account_service.ensure_admin(settings.bootstrap_admin_email, settings.bootstrap_admin_password)
    app.state.account_service = account_service
    app.state.payment_service = PaymentService(repository)
    app.state.record_service = MedicalRecordService(repository)
    app.state.patient_service = PatientService(repository, notifier, settings.frontend_url)
    app.state.notifier = notifier
    try:
        yield
    finally:
        pool.close()
        logger.info("postgres pool closed")


app = FastAPI(title=settings.app_name, version=settings.version, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[origin.strip() for origin in settings.cors_origins.split(",") if origin.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    max_age=600,
)


@app.get("/healthz", tags=["health"])
def healthz() -> dict[str, str]:
    """Return a minimal readiness indicator used by orchestration systems."""
    return {"status": "ok"}


@app.get("/metrics", tags=["health"])
def metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


app.include_router(v1_router)
