"""
Durable key/value store for the access token, refresh token and the opaque
user profile entries that must be cleared together with them.

Async interface so callers suspend on I/O; the SQL backend runs its blocking
SQLAlchemy calls on a worker thread. Any backend failure surfaces as StorageError.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from session_client.database import init_db, make_engine, make_session_factory
from session_client.errors import StorageError
from session_client.models import StoredEntry

logger = logging.getLogger(__name__)


class CredentialStore(ABC):
    @abstractmethod
    async def get(self, key: str) -> str | None:
        ...

    @abstractmethod
    async def set(self, key: str, value: str) -> None:
        ...

    @abstractmethod
    async def remove(self, keys: Iterable[str]) -> None:
        """Remove all given keys in one operation. Missing keys are ignored."""


class InMemoryCredentialStore(CredentialStore):
    """Process-lifetime store. Tests and ephemeral shells."""

    def __init__(self, initial: dict[str, str] | None = None):
        self._data: dict[str, str] = dict(initial or {})

    async def get(self, key: str) -> str | None:
        return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        self._data[key] = value

    async def remove(self, keys: Iterable[str]) -> None:
        for key in list(keys):
            self._data.pop(key, None)

    def snapshot(self) -> dict[str, str]:
        return dict(self._data)


class SqlCredentialStore(CredentialStore):
    """SQLAlchemy-backed store; one row per key in the credentials table."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    @classmethod
    def from_url(cls, url: str) -> "SqlCredentialStore":
        engine = make_engine(url)
        init_db(engine)
        return cls(make_session_factory(engine))

    def _get(self, key: str) -> str | None:
        db = self._session_factory()
        try:
            row = db.get(StoredEntry, key)
            return row.value if row is not None else None
        finally:
            db.close()

    def _set(self, key: str, value: str) -> None:
        db = self._session_factory()
        try:
            row = db.get(StoredEntry, key)
            if row is None:
                db.add(StoredEntry(key=key, value=value))
            else:
                row.value = value
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            raise
        finally:
            db.close()

    def _remove(self, keys: list[str]) -> None:
        db = self._session_factory()
        try:
            db.query(StoredEntry).filter(StoredEntry.key.in_(keys)).delete(synchronize_session=False)
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            raise
        finally:
            db.close()

    async def get(self, key: str) -> str | None:
        try:
            return await asyncio.to_thread(self._get, key)
        except SQLAlchemyError as e:
            raise StorageError(f"read {key} failed: {e}") from e

    async def set(self, key: str, value: str) -> None:
        try:
            await asyncio.to_thread(self._set, key, value)
        except SQLAlchemyError as e:
            raise StorageError(f"write {key} failed: {e}") from e

    async def remove(self, keys: Iterable[str]) -> None:
        key_list = list(keys)
        if not key_list:
            return
        try:
            await asyncio.to_thread(self._remove, key_list)
        except SQLAlchemyError as e:
            raise StorageError(f"remove {key_list} failed: {e}") from e
        logger.debug("Removed %d credential store keys", len(key_list))
