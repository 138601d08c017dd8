"""
Compare-and-swap edits of the shared document.

Every change to the collection goes through ConcurrentMutator: read the
latest snapshot, apply a pure transform, write it back against the
revision that was read. One attempt only. When another writer got there
first the store rejects the write and the transform has no effect.

The intent helpers at the bottom build the transforms for the single-
record user actions (add, update, remove, pin).
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Sequence, TypeVar

from .document_store import Committed, Conflict
from .errors import ConflictError, NotFound, ValidationError
from .protocol import DocumentStoreProtocol
from .types import Record, RecordStatus, new_record_id, normalize_name, utc_now

logger = logging.getLogger(__name__)

Transform = Callable[[list[Record]], list[Record]]
T = TypeVar("T")


class MutationOutcome(str, Enum):
    COMMITTED = "committed"
    CONFLICT = "conflict"
    FAULT = "fault"


@dataclass
class MutationResult:
    """Outcome of one read-transform-write attempt.

    ``records`` is the committed collection when outcome is COMMITTED,
    otherwise empty. ``error`` is set for CONFLICT and FAULT.
    """
    outcome: MutationOutcome
    records: list[Record] = field(default_factory=list)
    revision: Optional[str] = None
    error: Optional[Exception] = None

    @property
    def committed(self) -> bool:
        return self.outcome is MutationOutcome.COMMITTED

    def unwrap(self) -> list[Record]:
        """Return the committed records or raise the failure."""
        if self.committed:
            return self.records
        if self.error is None:
            raise RuntimeError(f"{self.outcome.value} mutation carries no error")
        raise self.error


class ConcurrentMutator:
    """Applies pure transforms to the document under compare-and-swap."""

    def __init__(self, store: DocumentStoreProtocol):
        self._store = store

    async def try_mutate(self, transform: Transform, label: str) -> MutationResult:
        """
        Read, transform, and write back once, reporting the outcome as a value.

        A ValidationError raised by the transform propagates: it is a
        rejected intent, not a store outcome, and nothing is written.
        Read failures propagate too; there is nothing to report against.
        """
        document = await self._store.read()
        new_records = list(transform(list(document.records)))

        attempt_write = getattr(self._store, "attempt_write", None)
        if attempt_write is not None:
            result = await attempt_write(new_records, document.revision, label)
            if isinstance(result, Committed):
                return MutationResult(MutationOutcome.COMMITTED, new_records, result.revision)
            if isinstance(result, Conflict):
                logger.info("Conflict on '%s': %s", label, result.message)
                return MutationResult(
                    MutationOutcome.CONFLICT,
                    error=ConflictError(result.message, revision=document.revision),
                )
            return MutationResult(MutationOutcome.FAULT, error=result.error)

        try:
            revision = await self._store.write(new_records, document.revision, label)
        except ConflictError as e:
            logger.info("Conflict on '%s': %s", label, e)
            return MutationResult(MutationOutcome.CONFLICT, error=e)
        except Exception as e:
            return MutationResult(MutationOutcome.FAULT, error=e)
        return MutationResult(MutationOutcome.COMMITTED, new_records, revision)

    async def mutate(self, transform: Transform, label: str) -> list[Record]:
        """
        Read, transform, and write back once.

        Returns the collection as committed.

        Raises:
            ConflictError: another writer changed the document since the read
            ValidationError: the transform rejected the change
        """
        result = await self.try_mutate(transform, label)
        return result.unwrap()

    # -- User intents --

    async def add_record(
        self,
        name: str,
        *,
        steam_url: Optional[str] = None,
        cover_image: Optional[str] = None,
        status: "str | RecordStatus" = RecordStatus.QUEUEING,
        **enrichment: Any,
    ) -> Record:
        """Add a new record at the front of the collection."""
        record = build_record(name, steam_url=steam_url, cover_image=cover_image,
                              status=status, **enrichment)
        suffix = f" ({record.app_id})" if record.app_id else ""
        await self.mutate(add_transform(record), f"Add game: {record.name}{suffix}")
        return record

    async def update_record(self, record_id: str, **changes: Any) -> Record:
        records = await self.mutate(
            update_transform(record_id, changes),
            f"Update game: {changes.get('name') or record_id}",
        )
        return _find(records, record_id)

    async def remove_record(self, record_id: str) -> None:
        await self.mutate(remove_transform(record_id), f"Remove game: {record_id}")

    async def set_pinned(self, record_id: str, pinned: bool) -> Record:
        verb = "Pin" if pinned else "Unpin"
        records = await self.mutate(
            update_transform(record_id, {"is_pinned": pinned}),
            f"{verb} game: {record_id}",
        )
        return _find(records, record_id)


def _find(records: Sequence[Record], record_id: str) -> Record:
    for r in records:
        if r.id == record_id:
            return r
    raise NotFound(f"No record with id {record_id!r}")


# ---------------------------------------------------------------------------
# Transforms
# ---------------------------------------------------------------------------

_IMMUTABLE_FIELDS = frozenset({"id", "added_at", "extra"})


def build_record(
    name: str,
    *,
    steam_url: Optional[str] = None,
    cover_image: Optional[str] = None,
    status: "str | RecordStatus" = RecordStatus.QUEUEING,
    **enrichment: Any,
) -> Record:
    name = (name or "").strip()
    if not name:
        raise ValidationError("Record name must not be empty")
    now = utc_now()
    return Record(
        id=new_record_id(),
        name=name,
        status=RecordStatus.parse(status),
        added_at=now,
        last_updated=now,
        steam_url=steam_url,
        cover_image=cover_image,
        **enrichment,
    )


def add_transform(record: Record) -> Transform:
    """Prepend ``record``; reject a case-insensitive duplicate name."""
    key = normalize_name(record.name)

    def transform(records: list[Record]) -> list[Record]:
        for existing in records:
            if normalize_name(existing.name) == key:
                raise ValidationError(f'"{record.name}" is already in the queue')
            if existing.id == record.id:
                raise ValidationError(f"Duplicate record id {record.id!r}")
        return [record] + records

    return transform


def update_transform(record_id: str, changes: dict[str, Any]) -> Transform:
    """Apply ``changes`` to one record and bump its last_updated."""
    bad = _IMMUTABLE_FIELDS.intersection(changes)
    if bad:
        raise ValidationError(f"Cannot change {', '.join(sorted(bad))}")

    def transform(records: list[Record]) -> list[Record]:
        out = []
        found = False
        for r in records:
            if r.id == record_id:
                found = True
                r = r.with_changes(**changes, last_updated=utc_now())
            out.append(r)
        if not found:
            raise NotFound(f"No record with id {record_id!r}")
        return out

    return transform


def remove_transform(record_id: str) -> Transform:
    def transform(records: list[Record]) -> list[Record]:
        out = [r for r in records if r.id != record_id]
        if len(out) == len(records):
            raise NotFound(f"No record with id {record_id!r}")
        return out

    return transform


# ---------------------------------------------------------------------------
# Caller-side retry
# ---------------------------------------------------------------------------

async def retry_on_conflict(
    action: Callable[[], Awaitable[T]],
    attempts: int = 3,
    *,
    delay: float = 0.5,
) -> T:
    """Run ``action`` again on ConflictError, up to ``attempts`` times in total.

    ``action`` must re-read on each call (every mutator call does).
    Validation errors and faults are not retried.
    """
    if attempts < 1:
        raise ValueError("attempts must be >= 1")
    for attempt in range(1, attempts):
        try:
            return await action()
        except ConflictError as e:
            logger.info("Conflict (attempt %d/%d), retrying: %s", attempt, attempts, e)
            await asyncio.sleep(delay * attempt)
    return await action()
