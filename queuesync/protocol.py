"""
Protocol definitions for queuesync's remote collaborators.

Defines interface contracts for:
- DocumentStoreProtocol: the revision-controlled document host
- MetadataSourceProtocol: the rate-limited catalog the scheduler enriches from
- DestinationProtocol: the differently-keyed store the reconciler writes into

Components accept any object satisfying these, so tests can pass in-memory fakes.
"""

from typing import Any, Optional, Protocol, Sequence, runtime_checkable

from .types import Document, Record


@runtime_checkable
class DocumentStoreProtocol(Protocol):
    """
    A single versioned document at a remote host.

    Implemented by:
    - DocumentStoreClient (GitHub contents API)
    """

    async def read(self) -> Document: ...

    async def write(
        self,
        records: Sequence[Record],
        revision: Optional[str],
        label: str,
    ) -> str: ...


@runtime_checkable
class MetadataSourceProtocol(Protocol):
    """
    Catalog metadata keyed by numeric app id.

    Implemented by:
    - MetadataClient (Steam store API)
    """

    async def get_reviews(self, app_id: int) -> Any: ...

    async def get_release_info(self, app_id: int) -> Any: ...


@runtime_checkable
class DestinationProtocol(Protocol):
    """
    CRUD over the destination store, keyed by its own identifiers.

    Implemented by:
    - DestinationClient (game-gallery REST backend)
    """

    async def list_records(self) -> list[Any]: ...

    async def create(self, payload: dict) -> Any: ...

    async def update(self, record_id: str, payload: dict) -> Any: ...

    async def update_status(self, record_id: str, status: str) -> Any: ...
