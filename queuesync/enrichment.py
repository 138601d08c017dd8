"""
Background enrichment of records from the catalog.

The scheduler keeps review scores and release info reasonably fresh
without overrunning the catalog's informal per-IP throttle and without
fighting other writers of the document.

A pass reads a fresh snapshot, walks it one record at a time with a
fixed delay between records, and collects per-record field changes.
Review numbers are re-fetched every pass. Release info is only
re-fetched when missing or while a title is still in Early Access, so
the move out of Early Access is noticed.

Only the persisted fields are written back. At the end of a pass the
changed fields are applied, per record id, on top of the latest
document through the ConcurrentMutator (field-level last-write-wins).
Review numbers stay in the in-memory LocalCollection; a write never
drops them from it.

States: IDLE -> SCANNING -> (FETCHING -> MERGING)* -> PERSISTING -> IDLE.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, Optional, Sequence

from .config import EnrichmentConfig
from .mutator import ConcurrentMutator, MutationOutcome
from .pacing import Pacer
from .protocol import DocumentStoreProtocol, MetadataSourceProtocol
from .types import (
    LOCAL_ONLY_FIELDS,
    PERSISTED_FIELDS,
    RELEASE_FIELDS,
    UNFETCHED,
    Record,
)

logger = logging.getLogger(__name__)

REFRESH_LABEL = "Update games info after refresh"


class SchedulerState(str, Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    FETCHING = "fetching"
    MERGING = "merging"
    PERSISTING = "persisting"


@dataclass
class PassReport:
    """What one enrichment pass did. Logged, not surfaced to users."""
    prioritized: bool = False
    visited: int = 0
    changed: int = 0
    unchanged: int = 0
    skipped: int = 0
    failed: int = 0
    persisted: int = 0
    outcome: Optional[MutationOutcome] = None
    errors: list[tuple[str, str]] = field(default_factory=list)

    def __str__(self) -> str:
        persist = f", persist={self.outcome.value}" if self.outcome else ""
        return (
            f"visited={self.visited} changed={self.changed} unchanged={self.unchanged} "
            f"skipped={self.skipped} failed={self.failed} persisted={self.persisted}{persist}"
        )


# ---------------------------------------------------------------------------
# Local view
# ---------------------------------------------------------------------------

class LocalCollection:
    """
    The in-memory collection as presented to the user.

    Holds local-only enrichment (review numbers, genres) that the store of
    record has no place for. Replacing the contents with a fresh snapshot
    keeps those values: nothing but a fetch changes a local-only field
    once it is known.
    """

    def __init__(self, records: Iterable[Record] = ()):
        self._records: list[Record] = list(records)

    def snapshot(self) -> list[Record]:
        return list(self._records)

    def __len__(self) -> int:
        return len(self._records)

    def get(self, record_id: str) -> Optional[Record]:
        for r in self._records:
            if r.id == record_id:
                return r
        return None

    def replace(self, records: Iterable[Record]) -> list[Record]:
        """Take ``records`` as the new contents, carrying local-only fields over."""
        previous = {r.id: r for r in self._records}
        merged = []
        for incoming in records:
            old = previous.get(incoming.id)
            if old is not None:
                carried = {
                    f: getattr(old, f)
                    for f in LOCAL_ONLY_FIELDS
                    if getattr(old, f) is not UNFETCHED
                    and getattr(old, f) != getattr(incoming, f)
                }
                if carried:
                    incoming = incoming.with_changes(**carried)
            merged.append(incoming)
        self._records = merged
        return self.snapshot()

    def patch(self, record_id: str, changes: dict[str, Any]) -> Optional[Record]:
        """Apply field changes to the current copy of one record."""
        for i, r in enumerate(self._records):
            if r.id == record_id:
                self._records[i] = r.with_changes(**changes)
                return self._records[i]
        return None


# ---------------------------------------------------------------------------
# Fetch policy and change detection
# ---------------------------------------------------------------------------

def prioritize(records: Sequence[Record]) -> list[Record]:
    """Records missing review data first; otherwise original order."""
    return sorted(records, key=lambda r: not r.missing_reviews)


def needs_release_info(record: Record) -> bool:
    """Release info is re-fetched when missing, unknown, or still Early Access."""
    if not record.release_date:
        return True
    if record.coming_soon is UNFETCHED or record.coming_soon is None:
        return True
    if record.is_early_access is UNFETCHED or record.is_early_access is None:
        return True
    return record.is_early_access is True


def detect_changes(record: Record, fetched: dict[str, Any]) -> dict[str, Any]:
    """
    Fields whose fetched value should replace the record's value.

    A value counts when it differs from the current one. A None from the
    source only counts for a field that was never fetched: it records the
    field as known-absent without clobbering an earlier real value.
    """
    changes = {}
    for name, value in fetched.items():
        current = getattr(record, name)
        if value is None:
            if current is UNFETCHED:
                changes[name] = None
            continue
        if value != current:
            changes[name] = value
    return changes


def split_persisted(
    changes: dict[str, Any],
    persisted_fields: Sequence[str] = PERSISTED_FIELDS,
) -> dict[str, Any]:
    return {k: v for k, v in changes.items() if k in persisted_fields}


def patch_transform(patches: dict[str, dict[str, Any]]):
    """Apply per-record field patches to whatever the latest snapshot holds.

    Records removed by another writer in the meantime are left removed.
    """
    def transform(records: list[Record]) -> list[Record]:
        return [
            r.with_changes(**patches[r.id]) if r.id in patches else r
            for r in records
        ]
    return transform


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------

class EnrichmentScheduler:
    """
    Periodically enriches records from a rate-limited catalog.

    One initial prioritized pass shortly after start(), then a recurring
    pass every ``interval`` seconds. ``notify()`` is the fast path for
    newly added records. Per-record failures are logged and skipped; no
    failure stops the timers. stop() cancels everything.
    """

    def __init__(
        self,
        store: DocumentStoreProtocol,
        metadata: MetadataSourceProtocol,
        *,
        config: Optional[EnrichmentConfig] = None,
        local: Optional[LocalCollection] = None,
        pacer: Optional[Pacer] = None,
        persisted_fields: Sequence[str] = PERSISTED_FIELDS,
        on_change: Optional[Callable[[list[Record]], None]] = None,
    ):
        self._store = store
        self._metadata = metadata
        self._mutator = ConcurrentMutator(store)
        self._config = config or EnrichmentConfig()
        self.local = local if local is not None else LocalCollection()
        self._pacer = pacer or Pacer(self._config.item_delay)
        self._persisted_fields = tuple(persisted_fields)
        self._on_change = on_change

        self.state = SchedulerState.IDLE
        self._pass_lock = asyncio.Lock()
        self._tasks: set[asyncio.Task] = set()
        self._initial_task: Optional[asyncio.Task] = None
        self._timer_task: Optional[asyncio.Task] = None
        self._enqueued: set[str] = set()
        self._last_count = len(self.local)

    def _set_state(self, state: SchedulerState) -> None:
        if state is not self.state:
            logger.debug("Enrichment: %s -> %s", self.state.value, state.value)
        self.state = state

    def _publish(self) -> None:
        if self._on_change is not None:
            self._on_change(self.local.snapshot())

    # -- Per-record work --

    async def _fetch(self, record: Record, *, force_release: bool) -> dict[str, Any]:
        """Fetch current catalog values for one record. Raises on failure."""
        app_id = record.app_id
        await self._pacer.wait()
        reviews = await self._metadata.get_reviews(app_id)
        fetched: dict[str, Any] = {
            "positive_percentage": reviews.positive_percentage,
            "total_reviews": reviews.total_reviews,
        }
        if force_release or needs_release_info(record):
            release = await self._metadata.get_release_info(app_id)
            fetched.update(
                release_date=release.release_date,
                coming_soon=release.coming_soon,
                is_early_access=release.is_early_access,
            )
            if release.genres is not None:
                fetched["genres"] = release.genres
        return fetched

    async def _enrich(
        self,
        records: Sequence[Record],
        report: PassReport,
        *,
        force_release: bool = False,
    ) -> dict[str, dict[str, Any]]:
        """Walk ``records`` sequentially. Returns persisted-field patches by id."""
        patches: dict[str, dict[str, Any]] = {}
        for record in records:
            if record.app_id is None:
                report.skipped += 1
                continue
            report.visited += 1

            self._set_state(SchedulerState.FETCHING)
            try:
                fetched = await self._fetch(record, force_release=force_release)
            except Exception as e:
                logger.warning("Failed to refresh %s: %s", record.name, e)
                report.failed += 1
                report.errors.append((record.name, str(e)))
                continue

            self._set_state(SchedulerState.MERGING)
            # Merge against the current local copy, which may be newer than the pass snapshot
            current = self.local.get(record.id) or record
            changes = detect_changes(current, fetched)
            if not changes:
                report.unchanged += 1
                continue

            report.changed += 1
            self.local.patch(record.id, changes)
            persisted = split_persisted(changes, self._persisted_fields)
            if persisted:
                patches[record.id] = persisted
            logger.debug("Refreshed %s: %s", record.name, sorted(changes))
        return patches

    async def _persist(self, patches: dict[str, dict[str, Any]], report: PassReport) -> None:
        if not patches:
            return
        self._set_state(SchedulerState.PERSISTING)
        try:
            result = await self._mutator.try_mutate(patch_transform(patches), REFRESH_LABEL)
        except Exception as e:
            logger.error("Failed to save refreshed info: %s", e)
            report.outcome = MutationOutcome.FAULT
            return
        report.outcome = result.outcome
        if result.committed:
            self.local.replace(result.records)
            report.persisted = len(patches)
            logger.info("Saved refreshed info for %d records", len(patches))
        elif result.outcome is MutationOutcome.CONFLICT:
            # Fields stay changed locally; the next pass will find them again
            logger.warning("Refresh not saved, document changed concurrently: %s", result.error)
        else:
            logger.error("Failed to save refreshed info: %s", result.error)

    # -- Passes --

    async def run_pass(self, *, prioritize_missing: bool = False) -> PassReport:
        """One full pass over a fresh snapshot of the document."""
        report = PassReport(prioritized=prioritize_missing)
        async with self._pass_lock:
            self._set_state(SchedulerState.SCANNING)
            try:
                try:
                    document = await self._store.read()
                except Exception as e:
                    logger.error("Enrichment pass could not read the document: %s", e)
                    report.errors.append(("<document>", str(e)))
                    return report

                records = self.local.replace(document.records)
                self._last_count = max(self._last_count, len(records))
                if prioritize_missing:
                    records = prioritize(records)

                patches = await self._enrich(records, report)
                await self._persist(patches, report)
            finally:
                self._set_state(SchedulerState.IDLE)
        if report.changed:
            self._publish()
        logger.info("Enrichment pass done (%s): %s",
                    "initial" if prioritize_missing else "periodic", report)
        return report

    async def refresh_records(self, record_ids: Iterable[str]) -> PassReport:
        """Fetch the given records once, outside the periodic schedule."""
        report = PassReport()
        ids = list(record_ids)
        async with self._pass_lock:
            try:
                records = [r for r in (self.local.get(i) for i in ids) if r is not None]
                patches = await self._enrich(records, report, force_release=True)
                await self._persist(patches, report)
            finally:
                self._set_state(SchedulerState.IDLE)
                self._enqueued.difference_update(ids)
        if report.changed:
            self._publish()
        logger.info("New-record refresh done: %s", report)
        return report

    def notify(self, records: Sequence[Record]) -> list[str]:
        """
        The visible collection changed. If it grew, fetch new records once.

        Returns the ids enqueued. A record already enqueued is never
        enqueued again until its refresh finishes.
        """
        self.local.replace(records)
        grew = len(records) > self._last_count
        self._last_count = len(records)
        if not grew:
            return []

        new_ids = [
            r.id for r in records
            if r.id not in self._enqueued and r.missing_reviews and r.app_id is not None
        ]
        if not new_ids:
            return []
        self._enqueued.update(new_ids)
        self._spawn(self._delayed(
            self._config.new_record_delay, lambda: self.refresh_records(new_ids)))
        return new_ids

    # -- Timers --

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _delayed(self, delay: float, make_coro: Callable[[], Awaitable[Any]]):
        try:
            await asyncio.sleep(delay)
            return await make_coro()
        except Exception:
            logger.exception("Enrichment task failed")

    async def _recurring(self) -> None:
        while True:
            await asyncio.sleep(self._config.interval)
            try:
                await self.run_pass(prioritize_missing=False)
            except Exception:
                logger.exception("Periodic enrichment pass failed")

    @property
    def running(self) -> bool:
        """True while the recurring timer is scheduled. Fast-path refreshes don't count."""
        return self._timer_task is not None and not self._timer_task.done()

    def start(self) -> None:
        """Schedule the initial prioritized pass and the recurring timer."""
        if self.running:
            return
        logger.info("Enrichment scheduler started (initial in %.1fs, every %.0fs)",
                    self._config.initial_delay, self._config.interval)
        self._initial_task = self._spawn(self._delayed(
            self._config.initial_delay, lambda: self.run_pass(prioritize_missing=True)))
        self._timer_task = self._spawn(self._recurring())

    async def stop(self) -> None:
        """Cancel timers and pending refreshes. In-flight calls end at their timeout."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self._initial_task = None
        self._timer_task = None
        self._enqueued.clear()
        logger.info("Enrichment scheduler stopped")
