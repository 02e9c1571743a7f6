"""Versioned record store for doctor visits.

The concurrency engine only relies on the small :class:`VersionedStore`
contract defined here.  :class:`SqlVisitStore` implements it with SQLAlchemy
Core; every operation runs in its own transaction on a worker thread so the
database, not the caller, arbitrates concurrent writers.
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, TypeVar

import sqlalchemy as sa
import structlog
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError

from healthtracker.db.models import BOOKKEEPING_FIELDS, VISIT_FIELDS, doctor_visits
from healthtracker.errors import InvalidPatchError, InvalidVersionError, StoreUnavailable
from healthtracker.time_utils import (
    from_epoch_seconds,
    isoformat_utc,
    parse_timestamp,
    to_epoch_seconds,
    utc_now,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class VisitRecord:
    """A doctor visit as stored, including its version counter."""

    id: str
    owner_id: str
    fields: Dict[str, Any] = field(default_factory=dict)
    version: int = 1
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def merged(self, patch: Mapping[str, Any], *, version: int, updated_at: Optional[datetime] = None) -> "VisitRecord":
        """Return a copy with *patch* applied on top of the current fields."""

        fields = dict(self.fields)
        fields.update(patch)
        return VisitRecord(
            id=self.id,
            owner_id=self.owner_id,
            fields=fields,
            version=version,
            created_at=self.created_at,
            updated_at=updated_at or self.updated_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"id": self.id, "owner_id": self.owner_id}
        payload.update(self.fields)
        payload["version"] = self.version
        payload["created_at"] = isoformat_utc(self.created_at) if self.created_at else None
        payload["updated_at"] = isoformat_utc(self.updated_at) if self.updated_at else None
        return payload

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "VisitRecord":
        fields = {k: v for k, v in data.items() if k not in BOOKKEEPING_FIELDS}
        return cls(
            id=str(data["id"]),
            owner_id=str(data.get("owner_id") or ""),
            fields=fields,
            version=int(data.get("version") or 1),
            created_at=parse_timestamp(data.get("created_at")),
            updated_at=parse_timestamp(data.get("updated_at")),
        )


class VersionedStore(Protocol):
    """Backing store contract consumed by the concurrency engine."""

    async def create(self, owner_id: str, fields: Mapping[str, Any]) -> VisitRecord: ...

    async def read(self, visit_id: str) -> Optional[VisitRecord]: ...

    async def conditional_update(
        self, visit_id: str, expected_version: int, values: Mapping[str, Any]
    ) -> int: ...

    async def delete(self, visit_id: str) -> bool: ...

    async def list_by_owner(self, owner_id: str) -> List[VisitRecord]: ...


class SqlVisitStore:
    """:class:`VersionedStore` backed by the ``doctor_visits`` table."""

    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    @property
    def engine(self) -> Engine:
        return self._engine

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    async def _run(self, func: Callable[..., T], *args: Any) -> T:
        try:
            return await asyncio.to_thread(func, *args)
        except OperationalError as exc:
            logger.warning("visit_store_unavailable", error=str(exc.orig or exc))
            raise StoreUnavailable(f"Visit store unavailable: {exc.orig or exc}") from exc

    @staticmethod
    def _check_fields(fields: Mapping[str, Any], *, allowed: tuple[str, ...]) -> None:
        unknown = set(fields) - set(allowed)
        if unknown:
            raise InvalidPatchError(unknown)

    @staticmethod
    def _row_to_record(row: Mapping[str, Any]) -> VisitRecord:
        return VisitRecord(
            id=row["id"],
            owner_id=row["owner_id"],
            fields={name: row[name] for name in VISIT_FIELDS},
            version=int(row["version"]),
            created_at=from_epoch_seconds(row["created_at"]),
            updated_at=from_epoch_seconds(row["updated_at"]),
        )

    # ------------------------------------------------------------------
    # Store contract
    # ------------------------------------------------------------------
    async def create(
        self,
        owner_id: str,
        fields: Mapping[str, Any],
        *,
        visit_id: Optional[str] = None,
    ) -> VisitRecord:
        self._check_fields(fields, allowed=VISIT_FIELDS)
        now = utc_now()
        record = VisitRecord(
            id=visit_id or uuid.uuid4().hex,
            owner_id=owner_id,
            fields={name: fields.get(name) for name in VISIT_FIELDS},
            version=1,
            created_at=now,
            updated_at=now,
        )

        def _insert() -> None:
            with self._engine.begin() as conn:
                conn.execute(
                    doctor_visits.insert().values(
                        id=record.id,
                        owner_id=owner_id,
                        version=1,
                        created_at=to_epoch_seconds(now),
                        updated_at=to_epoch_seconds(now),
                        **record.fields,
                    )
                )

        await self._run(_insert)
        logger.info("visit_created", visit_id=record.id, owner_id=owner_id)
        return record

    async def read(self, visit_id: str) -> Optional[VisitRecord]:
        def _select() -> Optional[VisitRecord]:
            with self._engine.connect() as conn:
                row = (
                    conn.execute(sa.select(doctor_visits).where(doctor_visits.c.id == visit_id))
                    .mappings()
                    .first()
                )
            return self._row_to_record(row) if row is not None else None

        return await self._run(_select)

    async def conditional_update(
        self, visit_id: str, expected_version: int, values: Mapping[str, Any]
    ) -> int:
        """Apply *values* iff the stored version equals *expected_version*.

        The row always moves to ``expected_version + 1``; a ``version`` in
        *values* naming anything else raises :class:`InvalidVersionError`.
        Returns the number of rows modified (0 or 1).
        """

        self._check_fields(values, allowed=VISIT_FIELDS + ("version", "updated_at"))
        new_version = expected_version + 1
        if values.get("version", new_version) != new_version:
            raise InvalidVersionError(
                f"Update from version {expected_version} must write version {new_version}; "
                f"got {values['version']!r}",
                visit_id=visit_id,
            )
        row_values: Dict[str, Any] = dict(values)
        row_values["version"] = new_version
        if isinstance(row_values.get("updated_at"), datetime):
            row_values["updated_at"] = to_epoch_seconds(row_values["updated_at"])
        row_values.setdefault("updated_at", to_epoch_seconds(utc_now()))

        def _update() -> int:
            with self._engine.begin() as conn:
                result = conn.execute(
                    doctor_visits.update()
                    .where(doctor_visits.c.id == visit_id)
                    .where(doctor_visits.c.version == expected_version)
                    .values(**row_values)
                )
                return int(result.rowcount or 0)

        return await self._run(_update)

    async def delete(self, visit_id: str) -> bool:
        def _delete() -> bool:
            with self._engine.begin() as conn:
                result = conn.execute(doctor_visits.delete().where(doctor_visits.c.id == visit_id))
                return bool(result.rowcount)

        deleted = await self._run(_delete)
        if deleted:
            logger.info("visit_deleted", visit_id=visit_id)
        return deleted

    async def list_by_owner(self, owner_id: str) -> List[VisitRecord]:
        def _select() -> List[VisitRecord]:
            with self._engine.connect() as conn:
                rows = (
                    conn.execute(
                        sa.select(doctor_visits)
                        .where(doctor_visits.c.owner_id == owner_id)
                        .order_by(
                            doctor_visits.c.visit_date.desc(),
                            doctor_visits.c.created_at.desc(),
                        )
                    )
                    .mappings()
                    .all()
                )
            return [self._row_to_record(row) for row in rows]

        return await self._run(_select)


__all__ = ["VisitRecord", "VersionedStore", "SqlVisitStore"]
