"""Tests for queuesync.enrichment: the background refresh scheduler."""

import asyncio
import gc
import warnings

import pytest

from conftest import FakeDocumentStore, FakeMetadataSource, make_record
from queuesync.config import EnrichmentConfig
from queuesync.enrichment import (
    REFRESH_LABEL,
    EnrichmentScheduler,
    LocalCollection,
    SchedulerState,
    detect_changes,
    needs_release_info,
    patch_transform,
    prioritize,
)
from queuesync.errors import TransientNetworkError
from queuesync.mutator import MutationOutcome
from queuesync.pacing import Pacer
from queuesync.types import UNFETCHED


def _scheduler(store, metadata, clock, **kwargs):
    return EnrichmentScheduler(
        store, metadata,
        pacer=Pacer(1.0, clock=clock, sleep=clock.sleep),
        **kwargs,
    )


ENRICHED = dict(positive_percentage=90, total_reviews=1000, release_date="1 Jan, 2024",
                coming_soon=False, is_early_access=False)


class TestPolicy:
    def test_prioritize_is_stable(self):
        a = make_record("a", "A", 1, **ENRICHED)
        b = make_record("b", "B", 2)
        c = make_record("c", "C", 3, **ENRICHED)
        d = make_record("d", "D", 4, positive_percentage=None, total_reviews=None)
        assert [r.id for r in prioritize([a, b, c, d])] == ["b", "d", "a", "c"]

    def test_release_needed_when_missing(self):
        assert needs_release_info(make_record("1", "A", 1))

    def test_release_needed_while_early_access(self):
        ea = make_record("1", "A", 1, **dict(ENRICHED, is_early_access=True))
        assert needs_release_info(ea)

    def test_release_not_needed_when_settled(self):
        assert not needs_release_info(make_record("1", "A", 1, **ENRICHED))

    def test_detect_changes_ignores_null_over_value(self):
        r = make_record("1", "A", 1, **ENRICHED)
        assert detect_changes(r, {"release_date": None, "total_reviews": 1000}) == {}

    def test_detect_changes_records_known_absent(self):
        r = make_record("1", "A", 1)
        assert detect_changes(r, {"release_date": None}) == {"release_date": None}

    def test_patch_transform_skips_removed(self):
        a = make_record("a", "A", 1)
        out = patch_transform({"a": {"coming_soon": True}, "gone": {"coming_soon": True}})([a])
        assert len(out) == 1
        assert out[0].coming_soon is True


class TestLocalCollection:
    def test_replace_keeps_local_only_fields(self):
        local = LocalCollection([make_record("1", "A", 1, positive_percentage=88,
                                             total_reviews=10)])
        local.replace([make_record("1", "A", 1, release_date="2024")])
        r = local.get("1")
        assert r.positive_percentage == 88
        assert r.total_reviews == 10
        assert r.release_date == "2024"

    def test_stale_document_value_does_not_overwrite_fetched(self):
        local = LocalCollection([make_record("1", "A", 1, positive_percentage=88)])
        local.replace([make_record("1", "A", 1, positive_percentage=70)])
        assert local.get("1").positive_percentage == 88

    def test_replace_takes_new_records_and_drops_removed(self):
        local = LocalCollection([make_record("1", "A", 1)])
        local.replace([make_record("2", "B", 2)])
        assert local.get("1") is None
        assert len(local) == 1


class TestRunPass:
    @pytest.mark.asyncio
    async def test_enriches_and_persists_release_fields_only(self, clock):
        store = FakeDocumentStore([make_record("1", "Hades", 1145360)])
        metadata = FakeMetadataSource()
        metadata.add(1145360, percentage=98, total=250000, release_date="17 Sep, 2020")
        scheduler = _scheduler(store, metadata, clock)

        report = await scheduler.run_pass()

        assert report.changed == 1
        assert report.outcome is MutationOutcome.COMMITTED
        assert store.labels == [REFRESH_LABEL]
        stored = store.records[0]
        assert stored.release_date == "17 Sep, 2020"
        assert stored.is_early_access is False
        # Review numbers never reach the store of record
        assert stored.positive_percentage is UNFETCHED
        local = scheduler.local.get("1")
        assert local.positive_percentage == 98
        assert local.total_reviews == 250000
        assert scheduler.state is SchedulerState.IDLE

    @pytest.mark.asyncio
    async def test_unchanged_pass_does_not_write(self, clock):
        store = FakeDocumentStore([make_record("1", "A", 10, **ENRICHED)])
        metadata = FakeMetadataSource()
        metadata.add(10)
        scheduler = _scheduler(store, metadata, clock)

        report = await scheduler.run_pass()

        assert report.unchanged == 1
        assert store.writes == 0

    @pytest.mark.asyncio
    async def test_release_refetched_only_when_needed(self, clock):
        settled = make_record("1", "Settled", 10, **ENRICHED)
        early = make_record("2", "Early", 20, **dict(ENRICHED, is_early_access=True))
        store = FakeDocumentStore([settled, early])
        metadata = FakeMetadataSource()
        metadata.add(10)
        metadata.add(20, early_access=False)
        scheduler = _scheduler(store, metadata, clock)

        await scheduler.run_pass()

        assert metadata.review_calls == [10, 20]
        assert metadata.release_calls == [20]
        assert store.records[1].is_early_access is False

    @pytest.mark.asyncio
    async def test_failure_is_skipped_and_pass_continues(self, clock):
        store = FakeDocumentStore([
            make_record("1", "Broken", 10),
            make_record("2", "Fine", 20),
            make_record("3", "No link", None),
        ])
        metadata = FakeMetadataSource()
        metadata.add(10)
        metadata.add(20)
        metadata.failing.add(10)
        scheduler = _scheduler(store, metadata, clock)

        report = await scheduler.run_pass()

        assert report.failed == 1
        assert report.changed == 1
        assert report.skipped == 1
        assert report.errors[0][0] == "Broken"
        assert store.records[1].release_date == "1 Jan, 2024"
        assert store.records[0].release_date is UNFETCHED

    @pytest.mark.asyncio
    async def test_requests_are_paced(self, clock):
        store = FakeDocumentStore([make_record(str(i), f"G{i}", i) for i in range(1, 4)])
        metadata = FakeMetadataSource()
        for i in range(1, 4):
            metadata.add(i)
        scheduler = _scheduler(store, metadata, clock)

        await scheduler.run_pass()

        assert clock.now >= 2.0
        assert clock.sleeps == [1.0, 1.0]

    @pytest.mark.asyncio
    async def test_initial_pass_prioritizes_missing(self, clock):
        store = FakeDocumentStore([
            make_record("1", "Known", 10, **ENRICHED),
            make_record("2", "New", 20),
        ])
        metadata = FakeMetadataSource()
        metadata.add(10)
        metadata.add(20)
        scheduler = _scheduler(store, metadata, clock)

        report = await scheduler.run_pass(prioritize_missing=True)

        assert report.prioritized
        assert metadata.review_calls == [20, 10]

    @pytest.mark.asyncio
    async def test_concurrent_edit_is_preserved(self, clock):
        """A user edit that lands mid-pass survives the scheduler's write."""
        store = FakeDocumentStore([make_record("1", "A", 10), make_record("2", "B", 20)])
        metadata = FakeMetadataSource()
        metadata.add(10)
        metadata.add(20)
        scheduler = _scheduler(store, metadata, clock)

        async def user_edit_during_fetch(app_id):
            if app_id == 20:
                pinned = store.records[0].with_changes(is_pinned=True)
                store.commit_external([pinned, store.records[1]])
            return metadata.reviews[app_id]

        metadata.get_reviews = user_edit_during_fetch

        report = await scheduler.run_pass()

        assert report.outcome is MutationOutcome.COMMITTED
        assert store.records[0].is_pinned is True
        assert store.records[0].release_date == "1 Jan, 2024"
        assert store.records[1].release_date == "1 Jan, 2024"

    @pytest.mark.asyncio
    async def test_conflict_leaves_store_untouched(self, clock):
        store = FakeDocumentStore([make_record("1", "A", 10)])
        metadata = FakeMetadataSource()
        metadata.add(10)
        theirs = [make_record("1", "A renamed", 10)]
        store.before_write = lambda s: s.commit_external(theirs)
        scheduler = _scheduler(store, metadata, clock)

        report = await scheduler.run_pass()

        assert report.outcome is MutationOutcome.CONFLICT
        assert store.records[0].name == "A renamed"
        assert store.records[0].release_date is UNFETCHED
        # Still changed locally; the next pass writes it
        assert scheduler.local.get("1").release_date == "1 Jan, 2024"

    @pytest.mark.asyncio
    async def test_read_failure_ends_pass(self, clock):
        store = FakeDocumentStore()
        store.fail_reads = TransientNetworkError("down")
        scheduler = _scheduler(store, FakeMetadataSource(), clock)

        report = await scheduler.run_pass()

        assert report.visited == 0
        assert report.errors == [("<document>", "down")]
        assert scheduler.state is SchedulerState.IDLE

    @pytest.mark.asyncio
    async def test_on_change_receives_local_view(self, clock):
        store = FakeDocumentStore([make_record("1", "A", 10)])
        metadata = FakeMetadataSource()
        metadata.add(10, percentage=77)
        seen = []
        scheduler = _scheduler(store, metadata, clock, on_change=seen.append)

        await scheduler.run_pass()

        assert seen[-1][0].positive_percentage == 77


class TestNotify:
    @pytest.mark.asyncio
    async def test_new_record_fetched_once(self, clock):
        old = make_record("1", "Old", 10, **ENRICHED)
        store = FakeDocumentStore([old])
        metadata = FakeMetadataSource()
        metadata.add(10)
        metadata.add(20)
        config = EnrichmentConfig(new_record_delay=0)
        scheduler = _scheduler(store, metadata, clock, config=config)
        await scheduler.run_pass()
        metadata.review_calls.clear()

        new = make_record("2", "New", 20)
        store.commit_external([new, old])
        first = scheduler.notify([new, old])
        again = scheduler.notify([new, old, make_record("3", "Other", None)])
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        await asyncio.gather(*scheduler._tasks)

        assert first == ["2"]
        assert again == []
        assert metadata.review_calls == [20]
        assert store.records[0].release_date == "1 Jan, 2024"

    @pytest.mark.asyncio
    async def test_shrinking_collection_does_nothing(self, clock):
        scheduler = _scheduler(FakeDocumentStore(), FakeMetadataSource(), clock)
        scheduler.notify([make_record("1", "A", 10), make_record("2", "B", 20)])
        await scheduler.stop()
        assert scheduler.notify([make_record("1", "A", 10)]) == []

    @pytest.mark.asyncio
    async def test_refresh_forces_release_info(self, clock):
        settled = make_record("1", "A", 10, **ENRICHED)
        store = FakeDocumentStore([settled])
        metadata = FakeMetadataSource()
        metadata.add(10, release_date="2 Feb, 2025")
        scheduler = _scheduler(store, metadata, clock, local=LocalCollection([settled]))

        await scheduler.refresh_records(["1"])

        assert metadata.release_calls == [10]
        assert store.records[0].release_date == "2 Feb, 2025"


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_and_stop(self, clock):
        store = FakeDocumentStore([make_record("1", "A", 10)])
        metadata = FakeMetadataSource()
        metadata.add(10)
        config = EnrichmentConfig(initial_delay=0, interval=3600)
        scheduler = _scheduler(store, metadata, clock, config=config)

        scheduler.start()
        assert scheduler.running
        for _ in range(10):
            await asyncio.sleep(0)
            if store.labels:
                break
        await scheduler.stop()

        assert not scheduler.running
        assert store.labels == [REFRESH_LABEL]

    @pytest.mark.asyncio
    async def test_stop_cancels_pending_initial_pass(self, clock):
        store = FakeDocumentStore([make_record("1", "A", 10)])
        scheduler = _scheduler(store, FakeMetadataSource(), clock)

        scheduler.start()
        await scheduler.stop()

        assert store.reads == 0

    @pytest.mark.asyncio
    async def test_start_after_notify_schedules_timers(self, clock):
        metadata = FakeMetadataSource()
        metadata.add(10)
        config = EnrichmentConfig(initial_delay=5, interval=3600, new_record_delay=5)
        scheduler = _scheduler(FakeDocumentStore(), metadata, clock, config=config)

        assert scheduler.notify([make_record("1", "A", 10)]) == ["1"]
        assert not scheduler.running
        scheduler.start()

        assert scheduler.running
        assert len(scheduler._tasks) == 3
        await scheduler.stop()
        assert not scheduler.running
        assert scheduler._tasks == set()

    @pytest.mark.asyncio
    async def test_cancelled_refresh_leaves_no_pending_coroutine(self, clock):
        store = FakeDocumentStore()
        metadata = FakeMetadataSource()
        metadata.add(10)
        config = EnrichmentConfig(new_record_delay=5)
        scheduler = _scheduler(store, metadata, clock, config=config)

        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always")
            scheduler.notify([make_record("1", "A", 10)])
            await scheduler.stop()
            gc.collect()

        assert metadata.review_calls == []
        assert not [w for w in caught if "never awaited" in str(w.message)]
