"""
Database engine and session factory for the credential store. SQLite by default.
"""
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from session_client.config import DATABASE_URL
from session_client.models import Base


def make_engine(url: str = DATABASE_URL) -> Engine:
    # SQLite: in-memory needs StaticPool so all connections share the same DB (for tests)
    # SQLite calls run on worker threads (asyncio.to_thread), so check_same_thread=False
    if url.startswith("sqlite:///:memory:"):
        return create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    connect_args = {"check_same_thread": False} if "sqlite" in url else {}
    return create_engine(url, connect_args=connect_args)


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(engine: Engine) -> None:
    """Create the credentials table if missing."""
    Base.metadata.create_all(bind=engine)
