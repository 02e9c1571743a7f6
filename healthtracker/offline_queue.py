"""Durable queue of visit updates made while the store is unreachable.

Mutations are appended to a single JSON collection and replayed strictly in
arrival order once connectivity returns.  Each replay goes through the
concurrency engine with the version the edit was made against, so an edit
that raced an online writer surfaces as a conflict instead of overwriting it.

Connectivity is reported by the caller via :meth:`OfflineQueue.set_online`
and :meth:`OfflineQueue.set_offline`; the queue never checks the network itself.
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Union

import structlog

from healthtracker.concurrency import UpdateConflict, UpdateResult, UpdateSuccess, clean_patch
from healthtracker.db.models import VISIT_FIELDS
from healthtracker.errors import (
    InvalidPatchError,
    InvalidVersionError,
    StoreUnavailable,
    VersionConflictError,
    VisitNotFoundError,
)
from healthtracker.observability import OFFLINE_QUEUE_DEPTH
from healthtracker.persistence import KeyValueStore
from healthtracker.resolution import (
    ConflictResolver,
    ResolutionOutcome,
    ResolutionPolicy,
    ask_user,
)
from healthtracker.store import VisitRecord
from healthtracker.time_utils import isoformat_utc, parse_timestamp, utc_now

logger = structlog.get_logger(__name__)

QUEUE_KEY = "pendingDoctorVisitUpdates"
UNRESOLVED_KEY = "unresolvedDoctorVisitUpdates"

# Errors that will fail the same way on every replay.
_REJECTED = (VisitNotFoundError, InvalidPatchError, InvalidVersionError)


@dataclass(frozen=True)
class PendingMutation:
    visit_id: str
    patch: Dict[str, Any]
    base_version: int
    mutation_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    enqueued_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mutation_id": self.mutation_id,
            "visit_id": self.visit_id,
            "patch": dict(self.patch),
            "base_version": self.base_version,
            "enqueued_at": isoformat_utc(self.enqueued_at),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PendingMutation":
        return cls(
            visit_id=str(data["visit_id"]),
            patch=dict(data.get("patch") or {}),
            base_version=int(data["base_version"]),
            mutation_id=str(data["mutation_id"]),
            enqueued_at=parse_timestamp(data.get("enqueued_at")) or utc_now(),
        )


@dataclass(frozen=True)
class QueuedUpdate:
    """Returned by :meth:`OfflineQueue.submit` when the update was deferred."""

    mutation: PendingMutation
    ok = False


@dataclass(frozen=True)
class DrainFailure:
    mutation: PendingMutation
    error: str


@dataclass
class DrainReport:
    applied: List[UpdateSuccess] = field(default_factory=list)
    resolved: List[ResolutionOutcome] = field(default_factory=list)
    unresolved: List[UpdateConflict] = field(default_factory=list)
    failed: List[DrainFailure] = field(default_factory=list)
    submitted: List[str] = field(default_factory=list)
    interrupted: bool = False

    @property
    def processed(self) -> int:
        return len(self.submitted)



def _conflict_to_dict(mutation: PendingMutation, conflict: UpdateConflict) -> Dict[str, Any]:
    return {
        "mutation_id": mutation.mutation_id,
        "visit_id": conflict.visit_id,
        "local_patch": dict(conflict.local_patch),
        "expected_version": conflict.expected_version,
        "server": conflict.server.to_dict(),
        "parked_at": isoformat_utc(utc_now()),
    }


def _conflict_from_dict(data: Mapping[str, Any]) -> UpdateConflict:
    return UpdateConflict(
        visit_id=str(data["visit_id"]),
        local_patch=dict(data.get("local_patch") or {}),
        expected_version=int(data["expected_version"]),
        server=VisitRecord.from_dict(data["server"]),
    )


class OfflineQueue:
    """FIFO of pending visit mutations backed by a :class:`KeyValueStore`.

    Conflicts no policy could settle are kept under :data:`UNRESOLVED_KEY`
    in the same storage until :meth:`take_unresolved` hands them to a person,
    so a restart never drops a local edit.
    """

    def __init__(
        self,
        resolver: ConflictResolver,
        storage: KeyValueStore,
        *,
        policy: ResolutionPolicy = ask_user,
        online: bool = True,
    ) -> None:
        self._resolver = resolver
        self._engine = resolver.engine
        self._storage = storage
        self._policy = policy
        self._online = online
        self._drain_lock = asyncio.Lock()
        # mutation_id -> conflict waiting for a person to choose a resolution
        self._parked: Dict[str, UpdateConflict] = {
            str(entry["mutation_id"]): _conflict_from_dict(entry)
            for entry in (storage.get(UNRESOLVED_KEY, []) or [])
        }
        OFFLINE_QUEUE_DEPTH.set(len(self))

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------
    @property
    def online(self) -> bool:
        return self._online

    @property
    def unresolved(self) -> List[UpdateConflict]:
        return list(self._parked.values())

    def pending(self) -> List[PendingMutation]:
        entries = self._storage.get(QUEUE_KEY, []) or []
        return [PendingMutation.from_dict(entry) for entry in entries]

    def __len__(self) -> int:
        return len(self._storage.get(QUEUE_KEY, []) or [])

    def take_unresolved(self) -> List[UpdateConflict]:
        """Return the parked conflicts and forget them."""

        taken = dict(self._parked)
        self._storage.update(
            UNRESOLVED_KEY,
            lambda current: [item for item in (current or []) if item.get("mutation_id") not in taken],
            default=[],
        )
        for mutation_id in taken:
            self._parked.pop(mutation_id, None)
        return list(taken.values())

    def requeue_unresolved(self) -> int:
        """Move parked conflicts back to the end of the queue for another drain."""

        mutations = [
            PendingMutation(
                visit_id=conflict.visit_id,
                patch=dict(conflict.local_patch),
                base_version=conflict.expected_version,
                mutation_id=mutation_id,
            )
            for mutation_id, conflict in self._parked.items()
        ]
        if not mutations:
            return 0
        items = self._storage.update(
            QUEUE_KEY,
            lambda current: list(current or []) + [m.to_dict() for m in mutations],
            default=[],
        )
        OFFLINE_QUEUE_DEPTH.set(len(items))
        self.take_unresolved()
        logger.info("visit_conflicts_requeued", count=len(mutations), depth=len(items))
        return len(mutations)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------
    def enqueue(self, visit_id: str, patch: Mapping[str, Any], base_version: int) -> PendingMutation:
        if base_version < 1:
            raise ValueError(f"base_version must be >= 1; got {base_version}")
        cleaned = clean_patch(patch)
        unknown = set(cleaned) - set(VISIT_FIELDS)
        if unknown:
            raise InvalidPatchError(unknown)
        mutation = PendingMutation(visit_id=visit_id, patch=cleaned, base_version=base_version)
        items = self._storage.update(
            QUEUE_KEY, lambda current: list(current or []) + [mutation.to_dict()], default=[]
        )
        OFFLINE_QUEUE_DEPTH.set(len(items))
        logger.info(
            "visit_update_queued",
            visit_id=visit_id,
            mutation_id=mutation.mutation_id,
            base_version=base_version,
            depth=len(items),
        )
        return mutation

    def _remove(self, mutation_id: str) -> None:
        items = self._storage.update(
            QUEUE_KEY,
            lambda current: [item for item in (current or []) if item.get("mutation_id") != mutation_id],
            default=[],
        )
        OFFLINE_QUEUE_DEPTH.set(len(items))

    def _head(self) -> Optional[PendingMutation]:
        entries = self._storage.get(QUEUE_KEY, []) or []
        if not entries:
            return None
        return PendingMutation.from_dict(entries[0])

    async def submit(
        self, visit_id: str, patch: Mapping[str, Any], version: int
    ) -> Union[UpdateResult, QueuedUpdate]:
        """Send the update now when online, otherwise queue it for the next drain."""

        if not self._online:
            return QueuedUpdate(self.enqueue(visit_id, patch, version))
        try:
            return await self._engine.attempt_update(visit_id, patch, version)
        except StoreUnavailable:
            logger.warning("visit_store_unreachable_queueing", visit_id=visit_id)
            self._online = False
            return QueuedUpdate(self.enqueue(visit_id, patch, version))

    # ------------------------------------------------------------------
    # Connectivity
    # ------------------------------------------------------------------
    def set_offline(self) -> None:
        if self._online:
            logger.info("offline_queue_offline")
        self._online = False

    async def set_online(self) -> DrainReport:
        logger.info("offline_queue_online", pending=len(self))
        self._online = True
        return await self.drain()

    # ------------------------------------------------------------------
    # Drain
    # ------------------------------------------------------------------
    async def drain(self) -> DrainReport:
        """Replay queued mutations in order until the queue is empty or the store drops.

        Only :class:`StoreUnavailable` stops a drain.  Any other failure is
        recorded in the report and the entry is dropped so the mutations
        behind it still run.
        """

        report = DrainReport()
        async with self._drain_lock:
            while self._online:
                mutation = self._head()
                if mutation is None:
                    break
                report.submitted.append(mutation.mutation_id)
                if not await self._replay(mutation, report):
                    break
        if report.processed:
            logger.info(
                "offline_queue_drained",
                applied=len(report.applied),
                resolved=len(report.resolved),
                unresolved=len(report.unresolved),
                failed=len(report.failed),
                interrupted=report.interrupted,
                remaining=len(self),
            )
        return report

    def _interrupt(self, mutation: PendingMutation, report: DrainReport, exc: StoreUnavailable) -> bool:
        logger.warning(
            "offline_queue_drain_interrupted",
            mutation_id=mutation.mutation_id,
            visit_id=mutation.visit_id,
            error=str(exc),
        )
        self._online = False
        report.submitted.pop()
        report.interrupted = True
        return False

    def _fail(self, mutation: PendingMutation, report: DrainReport, exc: Exception) -> bool:
        self._remove(mutation.mutation_id)
        report.failed.append(DrainFailure(mutation, str(exc)))
        return True

    async def _replay(self, mutation: PendingMutation, report: DrainReport) -> bool:
        """Submit one mutation; return ``False`` when draining has to stop."""

        try:
            result = await self._engine.attempt_update(
                mutation.visit_id, mutation.patch, mutation.base_version
            )
        except StoreUnavailable as exc:
            return self._interrupt(mutation, report, exc)
        except _REJECTED as exc:
            logger.warning(
                "offline_queue_entry_rejected",
                mutation_id=mutation.mutation_id,
                visit_id=mutation.visit_id,
                error=str(exc),
            )
            return self._fail(mutation, report, exc)
        except Exception as exc:
            logger.exception(
                "offline_queue_replay_failed",
                mutation_id=mutation.mutation_id,
                visit_id=mutation.visit_id,
            )
            return self._fail(mutation, report, exc)

        if isinstance(result, UpdateSuccess):
            self._remove(mutation.mutation_id)
            report.applied.append(result)
            return True
        return await self._hand_off(mutation, result, report)

    async def _hand_off(
        self, mutation: PendingMutation, conflict: UpdateConflict, report: DrainReport
    ) -> bool:
        # The entry stays queued until the conflict is settled or parked.
        try:
            settled = await self._resolver.settle(conflict, self._policy)
        except StoreUnavailable as exc:
            return self._interrupt(mutation, report, exc)
        except VersionConflictError as exc:
            self._park(mutation, exc.conflict, report)
            return True
        except _REJECTED as exc:
            return self._fail(mutation, report, exc)
        except Exception as exc:
            logger.exception(
                "offline_queue_resolution_failed",
                visit_id=conflict.visit_id,
                mutation_id=mutation.mutation_id,
            )
            self._park(mutation, conflict, report)
            report.failed.append(DrainFailure(mutation, str(exc)))
            return True

        if settled.pending is not None:
            self._park(mutation, settled.pending, report)
            return True
        self._remove(mutation.mutation_id)
        if settled.outcome is not None:
            report.resolved.append(settled.outcome)
        return True

    def _park(self, mutation: PendingMutation, conflict: UpdateConflict, report: DrainReport) -> None:
        entry = _conflict_to_dict(mutation, conflict)
        self._storage.update(
            UNRESOLVED_KEY,
            lambda current: [
                item for item in (current or []) if item.get("mutation_id") != mutation.mutation_id
            ]
            + [entry],
            default=[],
        )
        self._remove(mutation.mutation_id)
        self._parked[mutation.mutation_id] = conflict
        report.unresolved.append(conflict)
        logger.info(
            "visit_conflict_parked",
            visit_id=conflict.visit_id,
            mutation_id=mutation.mutation_id,
            server_version=conflict.server.version,
        )


__all__ = [
    "QUEUE_KEY",
    "UNRESOLVED_KEY",
    "DrainFailure",
    "DrainReport",
    "OfflineQueue",
    "PendingMutation",
    "QueuedUpdate",
]
