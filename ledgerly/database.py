from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from ledgerly.config import get_settings

settings = get_settings()

connect_args = {"check_same_thread": False} if settings.database_url.startswith("sqlite") else {}

engine = create_engine(settings.database_url, connect_args=connect_args, pool_pre_ping=True)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db():
    """Create any missing tables."""
    from ledgerly.app import models  # noqa: F401
    Base.metadata.create_all(bind=engine)
