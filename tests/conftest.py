"""
Shared pytest fixtures for queuesync tests.

Provides in-memory stand-ins for the three remote collaborators so no
test touches the network.
"""

from typing import Optional, Sequence

import pytest

from queuesync.document_store import Committed, Conflict, Fault
from queuesync.errors import DuplicateRecord, NotFound, TransientNetworkError
from queuesync.metadata import ReleaseInfo, ReviewSummary
from queuesync.destination import DestinationRecord
from queuesync.types import Document, Record, RecordStatus


def make_record(
    record_id: str,
    name: str,
    app_id: Optional[int] = None,
    status: RecordStatus = RecordStatus.QUEUEING,
    **kwargs,
) -> Record:
    url = f"https://store.steampowered.com/app/{app_id}/" if app_id else None
    return Record(
        id=record_id,
        name=name,
        status=status,
        added_at="2024-01-01T00:00:00.000Z",
        last_updated="2024-01-01T00:00:00.000Z",
        steam_url=url,
        **kwargs,
    )


class FakeDocumentStore:
    """
    In-memory document with an integer revision counter.

    A write against anything but the current revision is a Conflict.
    ``before_write`` runs between the caller's read and the write, which
    is where a concurrent writer would land.
    """

    def __init__(self, records: Sequence[Record] = ()):
        self.records = list(records)
        self._rev = 1 if records else 0
        self.labels: list[str] = []
        self.reads = 0
        self.writes = 0
        self.before_write = None
        self.fail_writes: Optional[Exception] = None
        self.fail_reads: Optional[Exception] = None

    @property
    def revision(self) -> Optional[str]:
        return f"rev{self._rev}" if self._rev else None

    def commit_external(self, records: Sequence[Record]) -> None:
        """Another writer commits."""
        self.records = list(records)
        self._rev += 1

    async def read(self) -> Document:
        self.reads += 1
        if self.fail_reads is not None:
            raise self.fail_reads
        return Document(records=tuple(self.records), revision=self.revision)

    async def attempt_write(self, records, revision, label):
        if not label:
            raise ValueError("label required")
        if self.before_write is not None:
            hook, self.before_write = self.before_write, None
            hook(self)
        self.writes += 1
        if self.fail_writes is not None:
            return Fault(self.fail_writes)
        if revision != self.revision:
            return Conflict(f"stale revision {revision}, current {self.revision}")
        self.records = list(records)
        self._rev += 1
        self.labels.append(label)
        return Committed(self.revision)

    async def write(self, records, revision, label):
        raise AssertionError("mutator should prefer attempt_write")


class FakeMetadataSource:
    """Catalog keyed by app id. Missing ids raise NotFound."""

    def __init__(self):
        self.reviews: dict[int, ReviewSummary] = {}
        self.releases: dict[int, ReleaseInfo] = {}
        self.failing: set[int] = set()
        self.review_calls: list[int] = []
        self.release_calls: list[int] = []

    def add(self, app_id, percentage=90, total=1000, release_date="1 Jan, 2024",
            coming_soon=False, early_access=False, genres=None):
        self.reviews[app_id] = ReviewSummary(percentage, total)
        self.releases[app_id] = ReleaseInfo(release_date, coming_soon, early_access, genres)

    async def get_reviews(self, app_id):
        self.review_calls.append(app_id)
        if app_id in self.failing:
            raise TransientNetworkError(f"timeout for {app_id}")
        if app_id not in self.reviews:
            raise NotFound(f"no reviews for {app_id}")
        return self.reviews[app_id]

    async def get_release_info(self, app_id):
        self.release_calls.append(app_id)
        if app_id not in self.releases:
            raise NotFound(f"no details for {app_id}")
        return self.releases[app_id]


class FakeDestination:
    """In-memory backend enforcing app id uniqueness on create."""

    def __init__(self, records: Sequence[DestinationRecord] = ()):
        self.records = {r.id: r for r in records}
        self.created: list[dict] = []
        self.updated: list[tuple[str, dict]] = []
        self.status_updates: list[tuple[str, str]] = []
        self.list_calls = 0
        self.fail_names: set[str] = set()
        self.hidden: list[DestinationRecord] = []
        self._next = 1

    def hide(self, record: DestinationRecord) -> None:
        """Present in the backend but missing from the first listing."""
        self.hidden.append(record)

    async def list_records(self):
        self.list_calls += 1
        listed = list(self.records.values())
        if self.list_calls > 1:
            listed += self.hidden
        return listed

    async def create(self, payload):
        if payload["name"] in self.fail_names:
            raise TransientNetworkError("Create game: 503")
        existing = [r for r in list(self.records.values()) + self.hidden
                    if r.app_id == payload["app_id"]]
        if existing:
            raise DuplicateRecord("exists", app_id=payload["app_id"])
        new_id = f"uuid-{self._next}"
        self._next += 1
        self.records[new_id] = DestinationRecord(
            id=new_id, name=payload["name"], app_id=payload["app_id"],
            status=payload["status"],
        )
        self.created.append(payload)
        return new_id

    async def update(self, record_id, payload):
        if payload["name"] in self.fail_names:
            raise TransientNetworkError("Update game: 503")
        self.updated.append((record_id, payload))

    async def update_status(self, record_id, status):
        self.status_updates.append((record_id, status))


class FakeClock:
    """Monotonic clock advanced only by the paired sleep."""

    def __init__(self):
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def isolated_home(tmp_path, monkeypatch):
    """Point config, logs, and credentials at a temp dir."""
    monkeypatch.setenv("QUEUESYNC_HOME", str(tmp_path))
    for var in (
        "QUEUESYNC_CONFIG", "QUEUESYNC_GITHUB_TOKEN", "GITHUB_TOKEN",
        "QUEUESYNC_OWNER", "QUEUESYNC_REPO", "QUEUESYNC_DOCUMENT_PATH",
        "QUEUESYNC_DEST_URL", "QUEUESYNC_DEST_TOKEN", "GAME_GALLERY_TOKEN",
    ):
        monkeypatch.delenv(var, raising=False)
    return tmp_path
