from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from subsync.config.settings import get_settings
from subsync.database.models import Base

settings = get_settings()


def build_engine(database_url: str, **overrides) -> Engine:
    """Engine for ``database_url``; keyword overrides win over the defaults."""
    engine_kwargs = {"echo": settings.debug}

    if database_url.startswith("sqlite"):
        # Webhook requests and workers write concurrently; wait for the lock
        engine_kwargs["connect_args"] = {"check_same_thread": False, "timeout": 30}
    elif "poolclass" not in overrides:
        engine_kwargs["pool_size"] = 10
        engine_kwargs["max_overflow"] = 20
        engine_kwargs["pool_pre_ping"] = True

    engine_kwargs.update(overrides)
    return create_engine(database_url, **engine_kwargs)


def make_sessionmaker(bind: Engine) -> sessionmaker:
    return sessionmaker(bind=bind, autocommit=False, autoflush=False)


engine = build_engine(settings.database_url)

SessionLocal = make_sessionmaker(engine)


def init_db(bind: Engine | None = None):
    """Create all tables."""
    Base.metadata.create_all(bind=bind or engine)


def get_db() -> Session:
    """Dependency for FastAPI - yields a database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
