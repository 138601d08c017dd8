"""
queuesync - sync a shared game queue document with the store catalog
and the game-gallery backend.

Basic usage:
    from queuesync.config import load_config
    from queuesync.document_store import DocumentStoreClient
    from queuesync.mutator import ConcurrentMutator

    config = load_config()
    async with DocumentStoreClient(config.document) as store:
        await ConcurrentMutator(store).add_record("Hades", steam_url=url)
"""

from .errors import (
    AuthError,
    ConflictError,
    DuplicateRecord,
    NotConfigured,
    NotFound,
    RemoteError,
    SyncError,
    TransientNetworkError,
    ValidationError,
)
from .types import UNFETCHED, Document, OutcomeSummary, Record, RecordStatus

__version__ = "0.1.0"
__all__ = [
    "AuthError",
    "ConflictError",
    "Document",
    "DuplicateRecord",
    "NotConfigured",
    "NotFound",
    "OutcomeSummary",
    "Record",
    "RecordStatus",
    "RemoteError",
    "SyncError",
    "TransientNetworkError",
    "UNFETCHED",
    "ValidationError",
]
