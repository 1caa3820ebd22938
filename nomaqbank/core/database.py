from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from nomaqbank.core.config import settings

_engine_kwargs = {"future": True, "pool_pre_ping": True, "echo": settings.DATABASE_ECHO}
if settings.DATABASE_URL.startswith("sqlite"):
    _engine_kwargs["connect_args"] = {"check_same_thread": False}

engine = create_engine(settings.DATABASE_URL, **_engine_kwargs)
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, future=True)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db() -> None:
    """Create all tables that do not exist yet."""
    from nomaqbank.models.orm import Base

    Base.metadata.create_all(bind=engine)
