"""Conflict resolution for versioned visit updates.

A conflict pairs the caller's patch with the authoritative server record.
Two terminal actions exist:

``use_server``
    Drop the local patch.  Nothing is written; the caller adopts the server
    record.
``use_local``
    Reapply the *local patch only* on top of the server's version.  Fields the
    caller never touched keep whatever the other writer stored.  If yet
    another writer slipped in, the result is a fresh conflict that has to be
    resolved again; the stale version is never reused.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import structlog

from healthtracker.concurrency import ConcurrencyEngine, UpdateConflict
from healthtracker.db.models import BOOKKEEPING_FIELDS
from healthtracker.errors import VersionConflictError
from healthtracker.events import EventType, visit_resource
from healthtracker.store import VisitRecord

logger = structlog.get_logger(__name__)


class Resolution(str, Enum):
    """Choices offered for a conflicting update."""

    USE_SERVER = "use_server"
    USE_LOCAL = "use_local"


# A policy inspects a conflict and picks a resolution, or returns ``None`` when
# the choice needs a person.
ResolutionPolicy = Callable[[UpdateConflict], Optional[Resolution]]


def prefer_server(conflict: UpdateConflict) -> Optional[Resolution]:
    return Resolution.USE_SERVER


def prefer_local(conflict: UpdateConflict) -> Optional[Resolution]:
    return Resolution.USE_LOCAL


def ask_user(conflict: UpdateConflict) -> Optional[Resolution]:
    return None


@dataclass(frozen=True)
class ConflictView:
    """Side-by-side rendering of a conflict for a reviewer."""

    visit_id: str
    expected_version: int
    server_version: int
    local: Dict[str, Any]
    server: Dict[str, Any]
    differing: List[str]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "visitId": self.visit_id,
            "expectedVersion": self.expected_version,
            "serverVersion": self.server_version,
            "local": self.local,
            "server": self.server,
            "differing": self.differing,
        }


@dataclass(frozen=True)
class ResolutionOutcome:
    """Result of applying one decision to one conflict."""

    resolution: Resolution
    conflict: UpdateConflict
    record: Optional[VisitRecord] = None
    next_conflict: Optional[UpdateConflict] = None

    @property
    def settled(self) -> bool:
        return self.next_conflict is None


@dataclass(frozen=True)
class SettleResult:
    rounds: int
    outcome: Optional[ResolutionOutcome] = None
    pending: Optional[UpdateConflict] = None

    @property
    def resolved(self) -> bool:
        return self.pending is None and self.outcome is not None


class ConflictResolver:
    """Apply resolution decisions through the concurrency engine."""

    def __init__(self, engine: ConcurrencyEngine, *, max_rounds: int = 3) -> None:
        if max_rounds < 1:
            raise ValueError("max_rounds must be at least 1")
        self._engine = engine
        self.max_rounds = max_rounds

    @property
    def engine(self) -> ConcurrencyEngine:
        return self._engine

    def compare(self, conflict: UpdateConflict) -> ConflictView:
        """Return the local edit and server state without bookkeeping fields."""

        server = {k: v for k, v in conflict.server.fields.items() if k not in BOOKKEEPING_FIELDS}
        local = dict(server)
        local.update(conflict.local_patch)
        differing = sorted(key for key, value in local.items() if server.get(key) != value)
        return ConflictView(
            visit_id=conflict.visit_id,
            expected_version=conflict.expected_version,
            server_version=conflict.server.version,
            local=local,
            server=server,
            differing=differing,
        )

    async def resolve(self, conflict: UpdateConflict, resolution: Resolution) -> ResolutionOutcome:
        """Apply *resolution* to *conflict* exactly once."""

        resolution = Resolution(resolution)
        resource = visit_resource(conflict.visit_id)
        server = conflict.server

        if resolution is Resolution.USE_SERVER:
            self._engine.bus.emit(
                EventType.RESOLUTION,
                resource,
                f"Kept server version {server.version}; local changes discarded",
            )
            logger.info(
                "visit_conflict_resolved",
                visit_id=conflict.visit_id,
                resolution=resolution.value,
                version=server.version,
            )
            return ResolutionOutcome(resolution=resolution, conflict=conflict, record=server)

        result = await self._engine.attempt_update(
            conflict.visit_id, conflict.local_patch, server.version
        )
        if isinstance(result, UpdateConflict):
            self._engine.bus.emit(
                EventType.RESOLUTION,
                resource,
                f"Reapplying local changes on version {server.version} lost to "
                f"version {result.server.version}; resolution required again",
            )
            logger.info(
                "visit_conflict_reraced",
                visit_id=conflict.visit_id,
                attempted_version=server.version,
                server_version=result.server.version,
            )
            return ResolutionOutcome(
                resolution=resolution,
                conflict=conflict,
                record=result.server,
                next_conflict=result,
            )

        record = result.record or server.merged(conflict.local_patch, version=result.version)
        self._engine.bus.emit(
            EventType.RESOLUTION,
            resource,
            f"Reapplied local changes on version {server.version}; now at version {result.version}",
        )
        logger.info(
            "visit_conflict_resolved",
            visit_id=conflict.visit_id,
            resolution=resolution.value,
            version=result.version,
        )
        return ResolutionOutcome(resolution=resolution, conflict=conflict, record=record)

    async def settle(
        self,
        conflict: UpdateConflict,
        decide: ResolutionPolicy,
        *,
        max_rounds: Optional[int] = None,
    ) -> SettleResult:
        """Resolve *conflict* with *decide*, re-resolving while ``use_local`` keeps losing.

        Returns a result with ``pending`` set when *decide* defers to a person.
        Raises :class:`VersionConflictError` once *max_rounds* decisions have
        been applied without the record settling.
        """

        limit = self.max_rounds if max_rounds is None else max_rounds
        if limit < 1:
            raise ValueError("max_rounds must be at least 1")
        current = conflict
        rounds = 0
        outcome: Optional[ResolutionOutcome] = None
        while True:
            choice = decide(current)
            if choice is None:
                return SettleResult(rounds=rounds, outcome=outcome, pending=current)
            rounds += 1
            outcome = await self.resolve(current, choice)
            if outcome.next_conflict is None:
                return SettleResult(rounds=rounds, outcome=outcome)
            current = outcome.next_conflict
            if rounds >= limit:
                logger.warning(
                    "visit_conflict_unsettled",
                    visit_id=current.visit_id,
                    rounds=rounds,
                    server_version=current.server.version,
                )
                raise VersionConflictError(
                    current,
                    f"Doctor visit {current.visit_id} still conflicting after {rounds} "
                    f"resolution attempt(s); server has version {current.server.version}",
                )


__all__ = [
    "ConflictResolver",
    "ConflictView",
    "Resolution",
    "ResolutionOutcome",
    "ResolutionPolicy",
    "SettleResult",
    "ask_user",
    "prefer_local",
    "prefer_server",
]
