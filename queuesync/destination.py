"""
HTTP client for the game-gallery backend, the reconciler's destination.

The backend keys games by its own UUID and enforces uniqueness on the
catalog app id, reporting a duplicate create as 409. Status changes go
through a separate, narrower endpoint. Review numbers have no columns
there, so payloads never carry them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from .config import DestinationConfig
from .document_store import raise_for_response
from .errors import DuplicateRecord, SyncError, TransientNetworkError
from .types import Record, is_known

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0


@dataclass(frozen=True)
class DestinationRecord:
    """A game as the backend stores it."""
    id: str
    name: str
    app_id: Optional[int] = None
    status: Optional[str] = None
    is_pinned: bool = False
    steam_url: Optional[str] = None
    capsule_image: Optional[str] = None
    created_at: str = ""
    updated_at: str = ""

    @classmethod
    def from_dict(cls, d: dict) -> "DestinationRecord":
        app_id = d.get("app_id")
        return cls(
            id=str(d["id"]),
            name=d.get("name") or "",
            app_id=int(app_id) if app_id not in (None, "") else None,
            status=d.get("status"),
            is_pinned=bool(d.get("is_pinned", False)),
            steam_url=d.get("steam_url"),
            capsule_image=d.get("capsule_image"),
            created_at=d.get("created_at") or "",
            updated_at=d.get("updated_at") or "",
        )


def _release_fields(record: Record) -> dict[str, Any]:
    fields = {}
    if is_known(record.release_date):
        fields["release_date"] = record.release_date
    if is_known(record.coming_soon):
        fields["coming_soon"] = record.coming_soon
    if is_known(record.is_early_access):
        fields["is_early_access"] = record.is_early_access
    return fields


def create_payload(record: Record, app_id: int) -> dict[str, Any]:
    """Fields the backend accepts on create."""
    payload: dict[str, Any] = {
        "app_id": app_id,
        "name": record.name,
        "type": "game",
        "status": record.status.value,
        "is_pinned": record.is_pinned,
    }
    if record.steam_url:
        payload["steam_url"] = record.steam_url
    if record.cover_image:
        payload["capsule_image"] = record.cover_image
    payload.update(_release_fields(record))
    return payload


def update_payload(record: Record) -> dict[str, Any]:
    """Fields the backend accepts on update. Status is not among them."""
    payload: dict[str, Any] = {"name": record.name}
    if record.cover_image:
        payload["capsule_image"] = record.cover_image
    payload.update(_release_fields(record))
    return payload


class DestinationClient:
    """CRUD over the backend's game collection."""

    def __init__(self, config: DestinationConfig, *, timeout: float = DEFAULT_TIMEOUT):
        config.require()
        self._config = config
        self._client = httpx.AsyncClient(
            base_url=config.api_url.rstrip("/"),
            headers={
                "Authorization": f"Bearer {config.token}",
                "Content-Type": "application/json",
            },
            timeout=timeout,
        )

    async def _request(self, method: str, path: str, action: str, **kwargs) -> httpx.Response:
        try:
            return await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise TransientNetworkError(f"{action} timed out: {e}") from e
        except httpx.TransportError as e:
            raise TransientNetworkError(f"{action} failed: {e}") from e

    async def list_records(self) -> list[DestinationRecord]:
        """GET /api/games, following pagination to exhaustion."""
        records: list[DestinationRecord] = []
        page = 1
        while True:
            resp = await self._request(
                "GET", "/api/games", "List games",
                params={"page": page, "page_size": self._config.page_size},
            )
            raise_for_response(resp, "List games")
            data = resp.json()
            records.extend(DestinationRecord.from_dict(d) for d in data.get("data") or [])
            if not (data.get("pagination") or {}).get("has_next"):
                break
            page += 1
        logger.debug("Listed %d destination records over %d pages", len(records), page)
        return records

    async def create(self, payload: dict) -> Optional[str]:
        """POST /api/games -> new record id (None if the backend omits it).

        Raises:
            DuplicateRecord: the app id already exists at the destination
        """
        resp = await self._request("POST", "/api/games", "Create game", json=payload)
        if resp.status_code == 409:
            raise DuplicateRecord(
                f"Game with app_id {payload.get('app_id')} already exists",
                app_id=payload.get("app_id"),
            )
        raise_for_response(resp, "Create game")
        try:
            return (resp.json().get("data") or {}).get("id")
        except ValueError:
            return None

    async def update(self, record_id: str, payload: dict) -> None:
        """PUT /api/games/{id}."""
        if not record_id:
            raise SyncError("Cannot update a destination record without an id")
        resp = await self._request("PUT", f"/api/games/{record_id}", "Update game", json=payload)
        raise_for_response(resp, f"Update game {record_id}")

    async def update_status(self, record_id: str, status: str) -> None:
        """PATCH /api/games/{id}/status."""
        resp = await self._request(
            "PATCH", f"/api/games/{record_id}/status", "Update status",
            json={"status": status},
        )
        raise_for_response(resp, f"Update status {record_id}")

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "DestinationClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()
