"""Remote visit store speaking the service's HTTP API.

:class:`HttpVisitStore` satisfies the same :class:`~healthtracker.store.VersionedStore`
contract as the SQL store, so an offline-capable client can run the
concurrency engine, the resolver and the offline queue against a server it
only reaches over the network.  Connection errors, timeouts and 5xx replies
surface as :class:`~healthtracker.errors.StoreUnavailable`, which is what
sends mutations to the offline queue.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import quote

import requests
import structlog

from healthtracker.concurrency import ConcurrencyEngine
from healthtracker.config import get_settings
from healthtracker.errors import InvalidPatchError, InvalidVersionError, StoreUnavailable
from healthtracker.events import EventBus
from healthtracker.offline_queue import OfflineQueue
from healthtracker.persistence import open_store
from healthtracker.resolution import ConflictResolver, ResolutionPolicy, ask_user
from healthtracker.store import VisitRecord
from healthtracker.time_utils import isoformat_utc

logger = structlog.get_logger(__name__)

DEFAULT_TIMEOUT = 10.0
_UNAVAILABLE_STATUSES = {500, 502, 503, 504}


class HttpVisitStore:
    """:class:`~healthtracker.store.VersionedStore` over ``/api/visits``."""

    def __init__(
        self,
        base_url: str,
        *,
        session: Optional[requests.Session] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._session = session or requests.Session()
        self._timeout = timeout

    def _url(self, *parts: str) -> str:
        return "/".join([self._base_url, "api", "visits", *(quote(p, safe="") for p in parts)])

    def _request(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        kwargs.setdefault("timeout", self._timeout)
        try:
            response = self._session.request(method, url, **kwargs)
        except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as exc:
            logger.warning("visit_api_unreachable", method=method, url=url, error=str(exc))
            raise StoreUnavailable(f"Visit API unreachable: {exc}") from exc
        if response.status_code in _UNAVAILABLE_STATUSES:
            logger.warning("visit_api_unavailable", method=method, url=url, status=response.status_code)
            raise StoreUnavailable(f"Visit API returned {response.status_code}")
        if response.status_code == 422:
            detail = _detail(response)
            if isinstance(detail, Mapping) and detail.get("fields"):
                raise InvalidPatchError(detail["fields"])
            if isinstance(detail, Mapping) and detail.get("error") == "invalid_version":
                raise InvalidVersionError(str(detail.get("message")), visit_id=detail.get("visitId"))
        return response

    async def _call(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        return await asyncio.to_thread(self._request, method, url, **kwargs)

    async def create(
        self,
        owner_id: str,
        fields: Mapping[str, Any],
        *,
        visit_id: Optional[str] = None,
    ) -> VisitRecord:
        payload: Dict[str, Any] = {"ownerId": owner_id, "fields": dict(fields)}
        if visit_id:
            payload["id"] = visit_id
        response = await self._call("POST", self._url(), json=payload)
        response.raise_for_status()
        return VisitRecord.from_dict(response.json())

    async def read(self, visit_id: str) -> Optional[VisitRecord]:
        response = await self._call("GET", self._url(visit_id))
        if response.status_code == 404:
            return None
        response.raise_for_status()
        return VisitRecord.from_dict(response.json())

    async def conditional_update(
        self, visit_id: str, expected_version: int, values: Mapping[str, Any]
    ) -> int:
        wire_values = dict(values)
        if isinstance(wire_values.get("updated_at"), datetime):
            wire_values["updated_at"] = isoformat_utc(wire_values["updated_at"])
        response = await self._call(
            "POST",
            self._url(visit_id, "conditional-update"),
            json={"expectedVersion": expected_version, "values": wire_values},
        )
        response.raise_for_status()
        return int(response.json().get("rowsAffected", 0))

    async def delete(self, visit_id: str) -> bool:
        response = await self._call("DELETE", self._url(visit_id))
        if response.status_code == 404:
            return False
        response.raise_for_status()
        return True

    async def list_by_owner(self, owner_id: str) -> List[VisitRecord]:
        response = await self._call("GET", self._url(), params={"ownerId": owner_id})
        response.raise_for_status()
        return [VisitRecord.from_dict(item) for item in response.json()]


def _detail(response: requests.Response) -> Any:
    try:
        return response.json().get("detail")
    except (ValueError, AttributeError):
        return None


def create_offline_client(
    base_url: str,
    *,
    queue_path: Optional[str] = None,
    policy: ResolutionPolicy = ask_user,
    bus: Optional[EventBus] = None,
    session: Optional[requests.Session] = None,
) -> OfflineQueue:
    """Wire an :class:`OfflineQueue` to a remote service at *base_url*.

    The queue file defaults to ``HEALTHTRACKER_QUEUE_PATH`` (or the per-user
    data directory) so pending edits survive a restart.
    """

    settings = get_settings()
    store = HttpVisitStore(base_url, session=session)
    engine = ConcurrencyEngine(store, bus or EventBus(settings.event_log_capacity))
    resolver = ConflictResolver(engine, max_rounds=settings.max_resolution_rounds)
    storage = open_store(queue_path or settings.offline_queue_path)
    return OfflineQueue(resolver, storage, policy=policy)


__all__ = ["HttpVisitStore", "create_offline_client"]
