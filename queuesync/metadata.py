"""
HTTP client for the Steam store catalog.

Unauthenticated and keyed by numeric app id. Two endpoints matter: the
review summary (cheap, changes daily) and app details (release date,
coming-soon flag, categories, genres). There is no documented limit but
the store throttles per IP, so callers pace requests themselves.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from .config import MetadataConfig
from .document_store import raise_for_response
from .errors import NotFound, TransientNetworkError

logger = logging.getLogger(__name__)

# Store category id that marks an Early Access title
EARLY_ACCESS_CATEGORY = 29


@dataclass(frozen=True)
class ReviewSummary:
    positive_percentage: Optional[int]
    total_reviews: Optional[int]


@dataclass(frozen=True)
class ReleaseInfo:
    release_date: Optional[str]
    coming_soon: Optional[bool]
    is_early_access: Optional[bool]
    genres: Optional[list[dict]] = None


def review_summary_from_totals(summary: dict) -> ReviewSummary:
    """Derive a rounded positive percentage from review totals."""
    positive = summary.get("total_positive")
    negative = summary.get("total_negative")
    percentage = None
    if positive is not None and negative is not None:
        total = positive + negative
        if total > 0:
            percentage = round(positive / total * 100)
    return ReviewSummary(
        positive_percentage=percentage,
        total_reviews=summary.get("total_reviews") or None,
    )


def release_info_from_details(details: dict) -> ReleaseInfo:
    release = details.get("release_date") or {}
    categories = details.get("categories") or []
    genres = details.get("genres")
    return ReleaseInfo(
        release_date=release.get("date") or None,
        coming_soon=release.get("coming_soon"),
        is_early_access=any(c.get("id") == EARLY_ACCESS_CATEGORY for c in categories),
        genres=[{"id": str(g.get("id")), "description": g.get("description")} for g in genres]
        if genres else None,
    )


class MetadataClient:
    """Fetches review and release metadata for one app id per call."""

    def __init__(self, config: Optional[MetadataConfig] = None):
        self._config = config or MetadataConfig()
        self._client = httpx.AsyncClient(
            base_url=self._config.api_url.rstrip("/"),
            headers={"Accept": "application/json"},
            timeout=self._config.timeout,
        )

    async def _get_json(self, path: str, params: dict, action: str) -> dict:
        try:
            resp = await self._client.get(path, params=params)
        except httpx.TimeoutException as e:
            raise TransientNetworkError(f"{action} timed out: {e}") from e
        except httpx.TransportError as e:
            raise TransientNetworkError(f"{action} failed: {e}") from e
        raise_for_response(resp, action)
        try:
            return resp.json()
        except ValueError as e:
            raise TransientNetworkError(f"{action}: response was not JSON") from e

    async def get_reviews(self, app_id: int) -> ReviewSummary:
        """GET /appreviews/{app_id} -> ReviewSummary."""
        data = await self._get_json(
            f"/appreviews/{app_id}",
            {"json": 1, "language": "all", "purchase_type": "all", "num_per_page": 0},
            f"Reviews for {app_id}",
        )
        summary = data.get("query_summary")
        if not summary:
            raise NotFound(f"No review summary for app {app_id}")
        return review_summary_from_totals(summary)

    async def get_release_info(self, app_id: int) -> ReleaseInfo:
        """GET /api/appdetails?appids={app_id} -> ReleaseInfo."""
        data = await self._get_json(
            "/api/appdetails",
            {"appids": app_id, "l": self._config.language, "cc": self._config.country},
            f"Details for {app_id}",
        )
        entry = data.get(str(app_id)) or {}
        if not entry.get("success"):
            raise NotFound(f"No details for app {app_id}")
        return release_info_from_details(entry.get("data") or {})

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "MetadataClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()
