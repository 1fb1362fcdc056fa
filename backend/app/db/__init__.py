import importlib
import logging
import os
import sys

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base
from app.config import settings

log = logging.getLogger(__name__)

DATABASE_URL = settings.DATABASE_URL
engine = create_engine(DATABASE_URL, future=True, echo=False)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()

# model modules that must be imported before create_all (add new modules here)
MODEL_MODULES = [
    "app.models.product",
    "app.models.cart",
    "app.models.cart_item",
    "app.models.verification_record",
    "app.models.pending_verification",
    "app.models.checkout_session",
    "app.models.order",
]

DEFAULT_CATALOGUE = [
    {"sku": "PR-IBU-200", "name": "Ibuprofen 200mg (24 tablets)", "price": "4.99", "category": "pain-relief", "age_restricted": False},
    {"sku": "PR-PARA-500", "name": "Paracetamol 500mg (16 tablets)", "price": "2.49", "category": "pain-relief", "age_restricted": False},
    {"sku": "AL-LORA-10", "name": "Loratadine 10mg (30 tablets)", "price": "7.99", "category": "allergy", "age_restricted": False},
    {"sku": "SL-MELA-3", "name": "Melatonin 3mg (60 tablets)", "price": "12.99", "category": "sleep", "age_restricted": True},
    {"sku": "SL-DOXY-25", "name": "Doxylamine Sleep Aid 25mg", "price": "9.49", "category": "sleep", "age_restricted": True},
    {"sku": "CO-DXM-120", "name": "Dextromethorphan Cough Syrup 120ml", "price": "8.99", "category": "cold-flu", "age_restricted": True},
    {"sku": "NI-GUM-4", "name": "Nicotine Gum 4mg (105 pieces)", "price": "34.99", "category": "smoking-cessation", "age_restricted": True},
    {"sku": "VI-D3-1000", "name": "Vitamin D3 1000 IU (90 softgels)", "price": "6.49", "category": "vitamins", "age_restricted": False},
]


def _should_reset(reset: bool) -> bool:
    if reset:
        return True
    if os.environ.get("RESET_DB", "false").lower() in ("1", "true", "yes"):
        return True
    # tests always start from a clean schema
    if any("pytest" in os.path.basename(a).lower() for a in sys.argv):
        return True
    return "PYTEST_CURRENT_TEST" in os.environ


def init_db(reset: bool = False):
    """
    Initialize DB schema and seed the default catalogue.

    Behavior:
      - If reset is requested (argument, RESET_DB env var, or a pytest run), drop & recreate tables.
      - Otherwise leave existing tables in place.
      - Seed DEFAULT_CATALOGUE skus that are missing (idempotent).
    """
    for mod in MODEL_MODULES:
        importlib.import_module(mod)

    if _should_reset(reset):
        log.info("Resetting database (RESET_DB set or pytest detected)")
        Base.metadata.drop_all(bind=engine)

    Base.metadata.create_all(bind=engine)
    seed_default_catalogue()
    log.info("Database initialized")


def seed_default_catalogue() -> int:
    from app.repositories.product_repo import ProductRepository

    s = SessionLocal()
    try:
        repo = ProductRepository(s)
        created = 0
        for ent in DEFAULT_CATALOGUE:
            if repo.get_by_sku(ent["sku"]) is None:
                repo.create_or_update(**ent)
                created += 1
        if created:
            s.commit()
            log.info("Seeded %d missing catalogue products", created)
        return created
    finally:
        s.close()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
