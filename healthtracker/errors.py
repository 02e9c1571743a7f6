"""Exception types shared by the visit store, concurrency engine and boundaries."""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:  # pragma: no cover - import cycle guard
    from healthtracker.concurrency import UpdateConflict


class VisitNotFoundError(LookupError):
    """Raised when a visit record does not exist (or no longer exists)."""

    def __init__(self, visit_id: str, *, expected_version: Optional[int] = None) -> None:
        self.visit_id = visit_id
        self.expected_version = expected_version
        message = f"Doctor visit {visit_id} not found"
        if expected_version is not None:
            message += f" (attempted update from version {expected_version})"
        super().__init__(message)


class VersionConflictError(Exception):
    """Raised when a conflict has to be surfaced through exception flow."""

    def __init__(self, conflict: "UpdateConflict", message: Optional[str] = None) -> None:
        self.conflict = conflict
        super().__init__(
            message
            or (
                f"Doctor visit {conflict.visit_id} was modified by another writer: "
                f"expected version {conflict.expected_version}, "
                f"server has version {conflict.server.version}"
            )
        )


class StoreUnavailable(Exception):
    """The backing store could not be reached; the mutation should be queued."""

    def __init__(self, message: str, *, visit_id: Optional[str] = None) -> None:
        self.visit_id = visit_id
        super().__init__(message)


class InvalidPatchError(ValueError):
    """A patch referenced fields the store does not know about."""

    def __init__(self, fields) -> None:
        self.fields = sorted(fields)
        super().__init__(f"Unknown visit field(s): {', '.join(self.fields)}")


class InvalidVersionError(ValueError):
    """A version argument that no valid update could carry."""

    def __init__(self, message: str, *, visit_id: Optional[str] = None) -> None:
        self.visit_id = visit_id
        super().__init__(message)


class GenerationError(RuntimeError):
    """Text generation failed or produced output that could not be used."""


__all__ = [
    "VisitNotFoundError",
    "VersionConflictError",
    "StoreUnavailable",
    "InvalidPatchError",
    "InvalidVersionError",
    "GenerationError",
]
