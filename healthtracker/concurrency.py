"""Optimistic concurrency control for doctor visit updates.

Every update names the version it was computed against.  The store accepts
the write only while that version is still current, bumping it by one; a
write that matches no row is disambiguated by re-reading the record:

* record gone      -> :class:`~healthtracker.errors.VisitNotFoundError`
* version moved on -> :class:`UpdateConflict` carrying the server state
* version ahead    -> :class:`~healthtracker.errors.InvalidVersionError`

The engine never retries on its own.  Deciding what to do with a conflict is
the job of :mod:`healthtracker.resolution`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Union

import structlog

from healthtracker.db.models import BOOKKEEPING_FIELDS
from healthtracker.errors import InvalidVersionError, VersionConflictError, VisitNotFoundError
from healthtracker.events import EventBus, EventType, visit_resource
from healthtracker.store import VersionedStore, VisitRecord
from healthtracker.time_utils import utc_now

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class UpdateSuccess:
    """The conditional update was accepted."""

    visit_id: str
    version: int
    record: Optional[VisitRecord] = None

    ok = True


@dataclass(frozen=True)
class UpdateConflict:
    """The conditional update lost against another writer."""

    visit_id: str
    local_patch: Dict[str, Any]
    expected_version: int
    server: VisitRecord
    ok = False

    @property
    def server_version(self) -> int:
        return self.server.version


UpdateResult = Union[UpdateSuccess, UpdateConflict]


def clean_patch(patch: Mapping[str, Any]) -> Dict[str, Any]:
    """Drop bookkeeping keys (``version``, ``id`` ...) from a caller patch."""

    return {key: value for key, value in patch.items() if key not in BOOKKEEPING_FIELDS}


@dataclass
class ConcurrencyEngine:
    store: VersionedStore
    bus: EventBus = field(default_factory=EventBus)

    async def attempt_update(
        self,
        visit_id: str,
        patch: Mapping[str, Any],
        expected_version: int,
    ) -> UpdateResult:
        """Try to apply *patch* on top of *expected_version*.

        Raises :class:`VisitNotFoundError` when the record no longer exists,
        ``ValueError`` for a version below 1 and :class:`InvalidVersionError`
        when *expected_version* is ahead of the stored record.  A returned
        conflict therefore always has a server version above *expected_version*.
        """

        if isinstance(expected_version, bool) or not isinstance(expected_version, int):
            raise ValueError(f"expected_version must be an integer; got {expected_version!r}")
        if expected_version < 1:
            raise ValueError(f"expected_version must be >= 1; got {expected_version}")

        resource = visit_resource(visit_id)
        local_patch = clean_patch(patch)
        new_version = expected_version + 1
        updated_at = utc_now()

        self.bus.emit(
            EventType.ATTEMPT,
            resource,
            f"Attempting to update from version {expected_version} to {new_version}",
        )
        rows = await self.store.conditional_update(
            visit_id,
            expected_version,
            {**local_patch, "version": new_version, "updated_at": updated_at},
        )

        if rows:
            self.bus.emit(
                EventType.SUCCESS,
                resource,
                f"Successfully updated to version {new_version}",
            )
            logger.info("visit_update_applied", visit_id=visit_id, version=new_version)
            record = await self.store.read(visit_id)
            if record is None or record.version != new_version:
                # Another writer (or a delete) got in after our commit; the
                # write still happened, only the snapshot is gone.
                logger.info(
                    "visit_update_snapshot_superseded",
                    visit_id=visit_id,
                    version=new_version,
                    observed_version=record.version if record else None,
                )
                record = None
            return UpdateSuccess(visit_id=visit_id, version=new_version, record=record)

        server = await self.store.read(visit_id)
        if server is None:
            logger.info("visit_update_missing", visit_id=visit_id, expected_version=expected_version)
            raise VisitNotFoundError(visit_id, expected_version=expected_version)

        if server.version <= expected_version:
            # Nobody else wrote; the caller claimed a version the record never reached.
            logger.warning(
                "visit_update_version_ahead_of_server",
                visit_id=visit_id,
                expected_version=expected_version,
                server_version=server.version,
            )
            raise InvalidVersionError(
                f"Expected version {expected_version} is not behind server version {server.version}",
                visit_id=visit_id,
            )
        self.bus.emit(
            EventType.CONFLICT,
            resource,
            f"Version conflict detected: expected {expected_version}, server has {server.version}",
        )
        logger.info(
            "visit_update_conflict",
            visit_id=visit_id,
            expected_version=expected_version,
            server_version=server.version,
        )
        return UpdateConflict(
            visit_id=visit_id,
            local_patch=local_patch,
            expected_version=expected_version,
            server=server,
        )

    async def update_or_raise(
        self,
        visit_id: str,
        patch: Mapping[str, Any],
        expected_version: int,
    ) -> UpdateSuccess:
        """Like :meth:`attempt_update` but raise :class:`VersionConflictError` on conflict."""

        result = await self.attempt_update(visit_id, patch, expected_version)
        if isinstance(result, UpdateConflict):
            raise VersionConflictError(result)
        return result


__all__ = [
    "ConcurrencyEngine",
    "UpdateConflict",
    "UpdateResult",
    "UpdateSuccess",
    "clean_patch",
]
