"""Database session management"""
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from promoreel.core.config import settings
from promoreel.models.base import Base

engine = create_engine(
    settings.DATABASE_URL,
    pool_pre_ping=True,
    pool_recycle=3600
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    """Dependency for FastAPI endpoints"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db():
    """Create all tables (jobs, scenes, generated videos, users, credit audit)"""
    # Import models so every table is registered on Base.metadata
    import promoreel.models  # noqa: F401
    Base.metadata.create_all(bind=engine)
