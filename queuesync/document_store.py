"""
Client for the versioned document held in a GitHub repository.

The whole game queue is one JSON file. GitHub's contents API gives us
a blob sha with every read and demands it back on every write, which is
all the concurrency control there is: a write against a stale sha is
rejected and nothing is changed.

Each call makes exactly one request. Retrying is the caller's decision.
"""

from __future__ import annotations

import base64
import logging
from dataclasses import dataclass
from typing import Optional, Sequence, Union
from urllib.parse import quote, urlparse

import httpx

from .config import DocumentConfig
from .errors import (
    AuthError,
    ConflictError,
    NotFound,
    RemoteError,
    SyncError,
    TransientNetworkError,
)
from .types import Document, Record, decode_records, encode_records

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0


# ---------------------------------------------------------------------------
# Write outcomes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Committed:
    """The write landed; ``revision`` is what the next write must present."""
    revision: str


@dataclass(frozen=True)
class Conflict:
    """The presented revision was stale. Retry-worthy after a fresh read."""
    message: str


@dataclass(frozen=True)
class Fault:
    """The write failed for a reason other than a revision mismatch."""
    error: Exception


WriteResult = Union[Committed, Conflict, Fault]


def _is_local(url: str) -> bool:
    host = urlparse(url).hostname or ""
    return host in ("localhost", "127.0.0.1", "::1")


def raise_for_response(resp: httpx.Response, action: str) -> None:
    """Translate a non-success response into the queuesync error taxonomy.

    Shared by every HTTP client in the package.
    """
    status = resp.status_code
    if status < 400:
        return
    detail = resp.text[:300] if resp.text else ""
    if status in (401, 403):
        raise AuthError(f"{action}: credentials rejected ({status})")
    if status == 404:
        raise NotFound(f"{action}: not found")
    if status == 408 or status == 429 or status >= 500:
        raise TransientNetworkError(f"{action}: {status} {detail}".rstrip())
    raise RemoteError(f"{action}: {status} {detail}".rstrip(), status_code=status)


class DocumentStoreClient:
    """Reads and writes a single JSON document through the GitHub contents API."""

    def __init__(self, config: DocumentConfig, *, timeout: float = DEFAULT_TIMEOUT):
        config.require()
        self._config = config
        api_url = config.api_url.rstrip("/")

        # Refuse non-HTTPS for remote APIs (bearer token would be sent in cleartext)
        if not api_url.startswith("https://") and not _is_local(api_url):
            raise ValueError(
                f"Document store URL must use HTTPS (got {api_url}). "
                "Use HTTPS to protect credentials, or use localhost for local development."
            )

        self._contents_path = (
            f"/repos/{config.owner}/{config.repo}/contents/{quote(config.path)}"
        )
        self._client = httpx.AsyncClient(
            base_url=api_url,
            headers={
                "Authorization": f"Bearer {config.token}",
                "Accept": "application/vnd.github.v3+json",
                "Content-Type": "application/json",
            },
            timeout=timeout,
        )

    @property
    def location(self) -> str:
        return f"{self._config.owner}/{self._config.repo}:{self._config.path}"

    async def read(self) -> Document:
        """GET the document and its revision.

        A missing file is an empty Document with no revision, not an error.
        """
        params = {"ref": self._config.branch} if self._config.branch else None
        try:
            resp = await self._client.get(self._contents_path, params=params)
        except httpx.TimeoutException as e:
            raise TransientNetworkError(f"Read timed out: {e}") from e
        except httpx.TransportError as e:
            raise TransientNetworkError(f"Read failed: {e}") from e

        if resp.status_code == 404:
            logger.info("Document %s does not exist yet", self.location)
            return Document()
        raise_for_response(resp, "Read document")

        data = resp.json()
        sha = data.get("sha")
        encoded = data.get("content")
        if not sha or encoded is None:
            raise SyncError(f"Unexpected contents response for {self.location}")
        text = base64.b64decode(encoded).decode("utf-8")
        records = decode_records(text)
        logger.debug("Read %d records at %s", len(records), sha)
        return Document(records=tuple(records), revision=sha)

    async def attempt_write(
        self,
        records: Sequence[Record],
        revision: Optional[str],
        label: str,
    ) -> WriteResult:
        """PUT the document, reporting the outcome as a value.

        A stale revision is a Conflict, any other failure a Fault.
        A missing label is a caller error and raises ValueError.
        """
        if not label or not label.strip():
            raise ValueError("Every write needs a label describing the change")

        body: dict = {
            "message": label.strip(),
            "content": base64.b64encode(encode_records(records).encode("utf-8")).decode("ascii"),
        }
        if revision is not None:
            body["sha"] = revision
        if self._config.branch:
            body["branch"] = self._config.branch

        try:
            resp = await self._client.put(self._contents_path, json=body)
        except httpx.TimeoutException as e:
            return Fault(TransientNetworkError(f"Write timed out: {e}"))
        except httpx.TransportError as e:
            return Fault(TransientNetworkError(f"Write failed: {e}"))

        if resp.status_code == 409:
            return Conflict(f"Remote document changed since revision {revision}")
        # Writing without a sha to a file that now exists
        if resp.status_code == 422 and "sha" in resp.text:
            return Conflict(f"Remote document changed since revision {revision}")
        try:
            raise_for_response(resp, "Write document")
        except SyncError as e:
            return Fault(e)

        new_sha = (resp.json().get("content") or {}).get("sha")
        if not new_sha:
            return Fault(SyncError("Write succeeded but no revision was returned"))
        logger.info("Wrote %d records (%s) -> %s", len(records), label.strip(), new_sha)
        return Committed(new_sha)

    async def write(
        self,
        records: Sequence[Record],
        revision: Optional[str],
        label: str,
    ) -> str:
        """PUT the document under compare-and-swap. Returns the new revision.

        Raises:
            ConflictError: the revision no longer matches; nothing was written
        """
        result = await self.attempt_write(records, revision, label)
        if isinstance(result, Committed):
            return result.revision
        if isinstance(result, Conflict):
            raise ConflictError(result.message, revision=revision)
        raise result.error

    async def check_connection(self) -> bool:
        """True if the repository is reachable with the configured token."""
        try:
            resp = await self._client.get(f"/repos/{self._config.owner}/{self._config.repo}")
        except httpx.HTTPError as e:
            logger.warning("Connection check failed: %s", e)
            return False
        return resp.is_success

    async def current_user(self) -> Optional[str]:
        """Login of the token's owner, or None if it cannot be determined."""
        try:
            resp = await self._client.get("/user")
            if not resp.is_success:
                return None
            return resp.json().get("login")
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Failed to look up current user: %s", e)
            return None

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "DocumentStoreClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()
