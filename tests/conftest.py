import os
import sys
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple

import pytest

# Ensure the repository root is on sys.path so tests can import the healthtracker package
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from healthtracker.concurrency import ConcurrencyEngine
from healthtracker.db import DatabaseSettings, create_database_engine, initialise_schema
from healthtracker.errors import StoreUnavailable
from healthtracker.events import EventBus
from healthtracker.resolution import ConflictResolver
from healthtracker.store import SqlVisitStore, VisitRecord


Hook = Callable[[], Awaitable[Any]]


class InterleavingStore:
    """Delegating store that lets a test slip writes in around conditional updates.

    ``before_update`` / ``after_update`` hooks are consumed one per
    conditional update.  Setting ``offline`` makes every call raise
    ``StoreUnavailable`` the way an unreachable server would.
    """

    def __init__(self, inner: SqlVisitStore) -> None:
        self.inner = inner
        self.before_update: List[Hook] = []
        self.after_update: List[Hook] = []
        self.updates: List[Tuple[str, int, Dict[str, Any]]] = []
        self.offline = False

    def _check_online(self) -> None:
        if self.offline:
            raise StoreUnavailable('store offline')

    async def create(self, owner_id: str, fields: Mapping[str, Any], **kwargs: Any) -> VisitRecord:
        self._check_online()
        return await self.inner.create(owner_id, fields, **kwargs)

    async def read(self, visit_id: str) -> Optional[VisitRecord]:
        self._check_online()
        return await self.inner.read(visit_id)

    async def conditional_update(self, visit_id: str, expected_version: int, values: Mapping[str, Any]) -> int:
        self._check_online()
        self.updates.append((visit_id, expected_version, dict(values)))
        if self.before_update:
            await self.before_update.pop(0)()
        rows = await self.inner.conditional_update(visit_id, expected_version, values)
        if self.after_update:
            await self.after_update.pop(0)()
        return rows

    async def delete(self, visit_id: str) -> bool:
        self._check_online()
        return await self.inner.delete(visit_id)

    async def list_by_owner(self, owner_id: str) -> List[VisitRecord]:
        self._check_online()
        return await self.inner.list_by_owner(owner_id)


@pytest.fixture
def db_engine(tmp_path):
    """File backed SQLite engine; worker threads need a shared database file."""

    engine = create_database_engine(DatabaseSettings(url=f"sqlite:///{tmp_path / 'visits.db'}"))
    initialise_schema(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def store(db_engine):
    return SqlVisitStore(db_engine)


@pytest.fixture
def bus():
    return EventBus(capacity=100)


@pytest.fixture
def engine(store, bus):
    return ConcurrencyEngine(store, bus)


@pytest.fixture
def resolver(engine):
    return ConflictResolver(engine)


@pytest.fixture
def interleaving_store(store):
    return InterleavingStore(store)


@pytest.fixture
def interleaved_engine(interleaving_store, bus):
    return ConcurrencyEngine(interleaving_store, bus)


@pytest.fixture
def interleaved_resolver(interleaved_engine):
    return ConflictResolver(interleaved_engine)
