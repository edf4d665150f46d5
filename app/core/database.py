from datetime import datetime, timezone

from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from .config import settings


def _normalized_database_url(raw_url: str) -> str:
    """
    DATABASE_URL normalization:
    - postgres:// or postgresql:// without a driver -> psycopg3 dialect.
    - anything else (SQLite etc.) is left untouched.
    """
    if not raw_url:
        return "sqlite:///./coursepay.db"
    raw_url = raw_url.strip()
    if raw_url.startswith("postgres://"):
        return "postgresql+psycopg://" + raw_url[len("postgres://") :]
    if raw_url.startswith("postgresql://") and "+psycopg" not in raw_url.split("://", 1)[0]:
        return "postgresql+psycopg://" + raw_url[len("postgresql://") :]
    return raw_url


def build_engine(url: str, **kwargs):
    url = _normalized_database_url(url)
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    connect_args.update(kwargs.pop("connect_args", {}))
    # In-memory SQLite: one shared connection so tables created by init_db are visible everywhere (tests)
    if url.startswith("sqlite") and ":memory:" in url:
        kwargs.setdefault("poolclass", StaticPool)
    return create_engine(url, connect_args=connect_args, **kwargs)


DATABASE_URL = _normalized_database_url(settings.database_url)
engine = build_engine(DATABASE_URL)


def utcnow() -> datetime:
    """Naive UTC; SQLite drops tzinfo on the way back, so everything is stored naive."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def get_db():
    with Session(engine) as session:
        yield session


def init_db():
    SQLModel.metadata.create_all(engine)
