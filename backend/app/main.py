import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

from apscheduler.schedulers.background import BackgroundScheduler
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api.health import router as health_router
from app.api.routes_cart import router as cart_router
from app.api.routes_catalogue import router as catalogue_router
from app.api.routes_checkout import router as checkout_router
from app.api.routes_verification import router as verification_router
from app.config import settings
from app.db import SessionLocal, init_db
from app.repositories.verification_repo import VerificationRepository
from app.services.checkout_orchestrator import purge_stale_lock_files

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
log = logging.getLogger(__name__)


def purge_abandoned_verifications():
    """Drop pending identity requests the shopper never came back from, and idle lock files."""
    db = SessionLocal()
    try:
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=settings.PENDING_VERIFICATION_TTL_SECONDS)
        sessions = VerificationRepository(db).purge_abandoned(cutoff)
        db.commit()
        if sessions:
            log.info("Purged %d abandoned verification requests", len(sessions))
    finally:
        db.close()
    locks = purge_stale_lock_files(settings.PENDING_VERIFICATION_TTL_SECONDS)
    if locks:
        log.info("Removed %d stale session lock files", locks)
    return sessions


@asynccontextmanager
async def lifespan(app: FastAPI):
    # startup
    init_db()

    scheduler = BackgroundScheduler()
    scheduler.add_job(
        purge_abandoned_verifications, "interval", seconds=60, id="purge_abandoned_verifications"
    )
    scheduler.start()
    log.info("Identity gateway: %s", settings.IDENTITY_GATEWAY)

    try:
        yield
    finally:
        scheduler.shutdown(wait=False)


app = FastAPI(title="Age-Gated Storefront - Backend", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.FRONTEND_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health_router, prefix="/api", tags=["health"])

app.include_router(catalogue_router, prefix="/api/products", tags=["catalogue"])

app.include_router(cart_router, tags=["cart"])

app.include_router(checkout_router, tags=["checkout"])

app.include_router(verification_router, tags=["verification"])


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("app.main:app", host=settings.APP_HOST, port=settings.APP_PORT)
