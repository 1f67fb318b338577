import os
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

# SQLite keeps local runs and tests free of a Postgres dependency
_DEFAULT_URL = "sqlite:///./dev.db"
_ENGINE = None
_ENGINE_URL = None
_FACTORY = None


def database_url() -> str:
    return os.getenv("DATABASE_URL", _DEFAULT_URL)


def get_engine():
    """Return an engine for the current DATABASE_URL, rebuilding it when the URL changes."""
    global _ENGINE, _ENGINE_URL, _FACTORY
    url = database_url()
    if _ENGINE is None or _ENGINE_URL != url:
        kwargs = {"echo": False, "future": True, "pool_pre_ping": True}
        if url.startswith("sqlite"):
            # FastAPI runs sync endpoints in a threadpool
            kwargs["connect_args"] = {"check_same_thread": False}
        _ENGINE = create_engine(url, **kwargs)
        _ENGINE_URL = url
        _FACTORY = sessionmaker(bind=_ENGINE, autoflush=False, autocommit=False, expire_on_commit=False)
    return _ENGINE


class _EngineProxy:
    def __getattr__(self, name):
        return getattr(get_engine(), name)

    def __repr__(self) -> str:
        return f"<EngineProxy to {get_engine()!r}>"


engine = _EngineProxy()


def SessionLocal() -> Session:
    get_engine()
    return _FACTORY()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
