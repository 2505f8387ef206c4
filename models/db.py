#Description: SQLAlchemy engine/session factory and DB initializer.
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, scoped_session
from sqlalchemy.pool import StaticPool
from utils.config import settings

def _engine_kwargs(url: str) -> dict:
    kwargs = {"echo": False, "future": True, "pool_pre_ping": True}
    if url.startswith("sqlite"):
        # stream, worker and scheduler threads share the same database
        kwargs["connect_args"] = {"check_same_thread": False}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
    return kwargs

engine = create_engine(settings.DATABASE_URL, **_engine_kwargs(settings.DATABASE_URL))
SessionLocal = scoped_session(sessionmaker(bind=engine, autoflush=False, autocommit=False))

def get_session():
    return SessionLocal()

def init_db():
    from models.orm import Base
    Base.metadata.create_all(bind=engine)
