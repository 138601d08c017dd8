"""
One-shot reconciliation of the document into the destination backend.

The destination keys games by its own id, so each source record is
matched by catalog app id first and by case-insensitive name second.
Matches are updated (plus a separate status call when the bucket
differs); the rest are created. A create that collides on the app id
means another writer added it after our snapshot: re-list, re-match by
app id, and update instead.

There is no transaction across the two stores. Running the job again
converges: everything already present is matched and updated.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Callable, Iterable, Optional, Sequence

from .destination import DestinationRecord, create_payload, update_payload
from .errors import DuplicateRecord
from .pacing import Pacer
from .protocol import DestinationProtocol
from .types import MatchKey, OutcomeSummary, Record, normalize_name

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int, str, "Action"], None]


class Action(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    SKIPPED = "skipped"
    FAILED = "failed"


class MatchIndex:
    """Destination records indexed by app id and by normalized name."""

    def __init__(self, records: Iterable[DestinationRecord] = ()):
        self._by_app_id: dict[int, DestinationRecord] = {}
        self._by_name: dict[str, DestinationRecord] = {}
        self.rebuild(records)

    def rebuild(self, records: Iterable[DestinationRecord]) -> None:
        self._by_app_id.clear()
        self._by_name.clear()
        for r in records:
            self.add(r)

    def add(self, record: DestinationRecord) -> None:
        if record.app_id is not None:
            self._by_app_id[record.app_id] = record
        if record.name:
            self._by_name[normalize_name(record.name)] = record

    def by_app_id(self, app_id: Optional[int]) -> Optional[DestinationRecord]:
        if app_id is None:
            return None
        return self._by_app_id.get(app_id)

    def find(self, key: MatchKey) -> Optional[DestinationRecord]:
        """App id wins over name."""
        return self.by_app_id(key.app_id) or self._by_name.get(key.name)


class BatchReconciler:
    """Upserts source records into the destination, one at a time."""

    def __init__(
        self,
        destination: DestinationProtocol,
        *,
        item_delay: float = 0.5,
        pacer: Optional[Pacer] = None,
        on_progress: Optional[ProgressCallback] = None,
    ):
        self._destination = destination
        self._pacer = pacer or Pacer(item_delay)
        self._on_progress = on_progress

    async def _update(self, match: DestinationRecord, record: Record) -> None:
        await self._destination.update(match.id, update_payload(record))
        if match.status != record.status.value:
            await self._destination.update_status(match.id, record.status.value)
            logger.info("  %s: status %s -> %s", record.name, match.status, record.status.value)

    async def _reconcile_one(self, record: Record, index: MatchIndex) -> Action:
        if record.raw_status is not None:
            logger.warning("Skipping %s: unknown status %r", record.name, record.raw_status)
            return Action.SKIPPED

        match = index.find(record.match_key)
        if match is not None:
            await self._update(match, record)
            return Action.UPDATED

        app_id = record.app_id
        if app_id is None:
            # The destination requires an app id to create
            logger.info("Skipping %s: no catalog id", record.name)
            return Action.SKIPPED

        try:
            new_id = await self._destination.create(create_payload(record, app_id))
        except DuplicateRecord:
            logger.info("  %s: app id %d already exists, re-listing destination", record.name, app_id)
            index.rebuild(await self._destination.list_records())
            match = index.by_app_id(app_id)
            if match is None:
                raise
            await self._update(match, record)
            return Action.UPDATED

        index.add(DestinationRecord(
            id=new_id or "",
            name=record.name,
            app_id=app_id,
            status=record.status.value,
        ))
        return Action.CREATED

    async def reconcile(
        self,
        source: Sequence[Record],
        destination_records: Optional[Sequence[DestinationRecord]] = None,
    ) -> OutcomeSummary:
        """
        Upsert every source record. Never stops early on a per-record failure.

        Args:
            source: The full source collection
            destination_records: A pre-fetched destination snapshot; listed
                from the destination when omitted

        Returns:
            OutcomeSummary with one bucket per source record
        """
        summary = OutcomeSummary(total=len(source))
        if destination_records is None:
            destination_records = await self._destination.list_records()
        index = MatchIndex(destination_records)
        logger.info("Reconciling %d source records against %d destination records",
                    len(source), len(destination_records))

        for i, record in enumerate(source, start=1):
            await self._pacer.wait()
            try:
                action = await self._reconcile_one(record, index)
            except Exception as e:
                logger.warning("Failed: %s: %s", record.name, e)
                summary.record_failure(record.name, str(e))
                action = Action.FAILED
            else:
                if action is Action.CREATED:
                    summary.created += 1
                elif action is Action.UPDATED:
                    summary.updated += 1
                else:
                    summary.skipped += 1
            if self._on_progress is not None:
                self._on_progress(i, summary.total, record.name, action)

        logger.info(
            "Reconcile done: total=%d created=%d updated=%d skipped=%d failed=%d",
            summary.total, summary.created, summary.updated, summary.skipped, summary.failed,
        )
        return summary
