import logging

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base

from orderflow.config import settings

logger = logging.getLogger(__name__)

# ======================================================
# DATABASE CONNECTION
# ======================================================

DATABASE_URL = settings.database_url

# Normalise the scheme so SQLAlchemy picks psycopg2.
if DATABASE_URL.startswith("postgres://"):
    DATABASE_URL = DATABASE_URL.replace("postgres://", "postgresql://", 1)


def build_engine(url: str):
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False})
    return create_engine(
        url,
        pool_pre_ping=True,       # drops stale connections
        pool_size=5,
        max_overflow=2,
        pool_timeout=30,
        pool_recycle=300,
        connect_args={"connect_timeout": 10},
    )


engine = build_engine(DATABASE_URL)

SessionLocal = sessionmaker(
    bind=engine,
    autoflush=False,
    autocommit=False,
)

Base = declarative_base()


# ======================================================
# DEPENDENCY
# ======================================================

def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


# ======================================================
# DATABASE BOOTSTRAP
# ======================================================

def init_database(bind=None):
    """
    Idempotent schema creation.

    Every table is created from the ORM metadata; existing tables are left
    untouched so this is safe to run on every startup.
    """
    import orderflow.models  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)
    logger.info("Database verified (orders, payments, coupons, loyalty, commissions)")
