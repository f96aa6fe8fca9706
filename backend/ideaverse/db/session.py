"""Database session management"""
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from ideaverse.models.base import Base
from ideaverse.core.config import settings

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
    """Initialize database (create all tables)"""
    # Importing the package registers every model on Base.metadata
    import ideaverse.models  # noqa: F401
    Base.metadata.create_all(bind=engine)
