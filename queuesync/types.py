"""
Data types for the game queue.

A Document is an ordered list of Records plus the revision the host
assigned on its last successful write. Records are immutable snapshots;
transforms return new Records via ``dataclasses.replace``.
"""

import json
import logging
import re
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, NamedTuple, Optional

from .errors import ValidationError

logger = logging.getLogger(__name__)


class _Unfetched:
    """Sentinel for an enrichment field that has never been fetched.

    Distinct from ``None``, which means the source was asked and had no value.
    """

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNFETCHED"

    def __bool__(self) -> bool:
        return False

    def __copy__(self):
        return self

    def __deepcopy__(self, memo):
        return self


UNFETCHED: Any = _Unfetched()


def is_known(value: Any) -> bool:
    """True if an enrichment value is present (neither unfetched nor known-absent)."""
    return value is not UNFETCHED and value is not None


def utc_now() -> str:
    """Current UTC timestamp, millisecond precision with a ``Z`` suffix.

    Matches the format already stored in existing documents.
    """
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class RecordStatus(str, Enum):
    QUEUEING = "queueing"
    PLAYING = "playing"
    COMPLETION = "completion"

    @classmethod
    def parse(cls, value: "str | RecordStatus") -> "RecordStatus":
        """Parse a wire value, accepting the short aliases used by older tools."""
        if isinstance(value, cls):
            return value
        key = str(value).strip().lower()
        key = _STATUS_ALIASES.get(key, key)
        try:
            return cls(key)
        except ValueError:
            allowed = ", ".join(s.value for s in cls)
            raise ValidationError(f"Unknown status {value!r} (expected one of: {allowed})") from None


_STATUS_ALIASES = {
    "queued": "queueing",
    "active": "playing",
    "done": "completion",
}


# ---------------------------------------------------------------------------
# External ids and match keys
# ---------------------------------------------------------------------------

_APP_ID_RE = re.compile(r"/app/(\d+)")


def extract_app_id(external_ref: Optional[str]) -> Optional[int]:
    """Extract the numeric catalog id from a store URL like ``.../app/1145360/Hades``.

    A bare digit string is taken as the id itself.
    """
    if not external_ref:
        return None
    ref = str(external_ref).strip()
    if ref.isdigit():
        return int(ref)
    match = _APP_ID_RE.search(ref)
    if not match:
        return None
    return int(match.group(1))


def normalize_name(name: str) -> str:
    return name.strip().lower()


class MatchKey(NamedTuple):
    """Keys used to align one record across two differently-keyed stores."""
    app_id: Optional[int]
    name: str


# ---------------------------------------------------------------------------
# Record
# ---------------------------------------------------------------------------

# Fresh on every pass; cheap to fetch
REVIEW_FIELDS = ("positive_percentage", "total_reviews")

# Slowly changing; only re-fetched when missing or still in early access
RELEASE_FIELDS = ("release_date", "coming_soon", "is_early_access")

# Presentation-only fields the store of record has no columns for
LOCAL_ONLY_FIELDS = (
    "positive_percentage",
    "total_reviews",
    "chinese_positive_percentage",
    "chinese_total_reviews",
    "genres",
)

PERSISTED_FIELDS = RELEASE_FIELDS

ENRICHMENT_FIELDS = LOCAL_ONLY_FIELDS + RELEASE_FIELDS

# Python attribute -> wire key
_WIRE_KEYS = {
    "id": "id",
    "name": "name",
    "status": "status",
    "added_at": "addedAt",
    "last_updated": "lastUpdated",
    "steam_url": "steamUrl",
    "cover_image": "coverImage",
    "is_pinned": "isPinned",
    "positive_percentage": "positivePercentage",
    "total_reviews": "totalReviews",
    "chinese_positive_percentage": "chinesePositivePercentage",
    "chinese_total_reviews": "chineseTotalReviews",
    "release_date": "releaseDate",
    "coming_soon": "comingSoon",
    "is_early_access": "isEarlyAccess",
    "genres": "genres",
}


@dataclass(frozen=True)
class Record:
    """
    One entry in the game queue.

    Enrichment fields are tri-state: ``UNFETCHED`` (never asked),
    ``None`` (asked, source had nothing), or a value.

    Attributes:
        id: Stable identity, never changed after creation
        name: Display name
        status: Queue bucket
        added_at: ISO timestamp of creation
        last_updated: ISO timestamp of the last user-visible change
        steam_url: Catalog URL; source of the numeric external id
        cover_image: Image URL
        is_pinned: Pinned to the top of its bucket
        extra: Wire keys this version does not know, kept verbatim. An
            unrecognized status is kept here under "status" and written back
            unchanged until the status is set again.
    """
    id: str
    name: str
    status: RecordStatus = RecordStatus.QUEUEING
    added_at: str = ""
    last_updated: str = ""
    steam_url: Optional[str] = None
    cover_image: Optional[str] = None
    is_pinned: bool = False
    positive_percentage: Any = UNFETCHED
    total_reviews: Any = UNFETCHED
    chinese_positive_percentage: Any = UNFETCHED
    chinese_total_reviews: Any = UNFETCHED
    release_date: Any = UNFETCHED
    coming_soon: Any = UNFETCHED
    is_early_access: Any = UNFETCHED
    genres: Any = UNFETCHED
    extra: dict = field(default_factory=dict, compare=False)

    @property
    def app_id(self) -> Optional[int]:
        return extract_app_id(self.steam_url)

    @property
    def match_key(self) -> MatchKey:
        return MatchKey(self.app_id, normalize_name(self.name))

    @property
    def missing_reviews(self) -> bool:
        """True if the review score or count was never populated."""
        return any(not is_known(getattr(self, f)) for f in REVIEW_FIELDS)

    @property
    def missing_enrichment(self) -> bool:
        """True if any core enrichment field is unfetched or known-absent."""
        return self.missing_reviews or any(
            getattr(self, f) is UNFETCHED or getattr(self, f) is None
            for f in RELEASE_FIELDS
        )

    def enrichment(self) -> dict[str, Any]:
        """Current enrichment values keyed by attribute name."""
        return {f: getattr(self, f) for f in ENRICHMENT_FIELDS}

    @property
    def raw_status(self) -> Optional[str]:
        """The stored status string when it is not one this version knows."""
        return self.extra.get("status")

    def with_changes(self, **changes: Any) -> "Record":
        if "status" in changes:
            changes["status"] = RecordStatus.parse(changes["status"])
            if "status" in self.extra and "extra" not in changes:
                changes["extra"] = {k: v for k, v in self.extra.items() if k != "status"}
        return replace(self, **changes)

    def to_dict(self) -> dict:
        """Serialize to the wire format. Unfetched fields are omitted."""
        d: dict[str, Any] = dict(self.extra)
        for f in fields(self):
            if f.name == "extra":
                continue
            value = getattr(self, f.name)
            if value is UNFETCHED:
                continue
            if f.name in ("steam_url", "cover_image") and value is None:
                continue
            if isinstance(value, RecordStatus):
                if self.raw_status is not None:
                    continue
                value = value.value
            d[_WIRE_KEYS[f.name]] = value
        return d

    @classmethod
    def from_dict(cls, d: dict) -> "Record":
        """Deserialize from the wire format."""
        if not isinstance(d, dict):
            raise ValidationError(f"Record must be an object, got {type(d).__name__}")
        name = d.get("name")
        if not name or not isinstance(name, str):
            raise ValidationError(f"Record is missing a name: {d!r}")
        known = set(_WIRE_KEYS.values())
        kwargs: dict[str, Any] = {}
        for attr, key in _WIRE_KEYS.items():
            if key in d:
                kwargs[attr] = d[key]
        kwargs["id"] = str(d.get("id") or "")
        extra = {k: v for k, v in d.items() if k not in known}
        try:
            kwargs["status"] = RecordStatus.parse(d.get("status") or RecordStatus.QUEUEING)
        except ValidationError as e:
            logger.warning("Record %s (%s): %s; keeping it as stored", kwargs["id"], name, e)
            kwargs["status"] = RecordStatus.QUEUEING
            extra["status"] = d["status"]
        kwargs["is_pinned"] = bool(d.get("isPinned", False))
        kwargs["added_at"] = d.get("addedAt") or ""
        kwargs["last_updated"] = d.get("lastUpdated") or kwargs["added_at"]
        kwargs["extra"] = extra
        return cls(**kwargs)


def new_record_id() -> str:
    """Millisecond-timestamp id, the scheme existing documents already use."""
    return str(int(datetime.now(timezone.utc).timestamp() * 1000))


# ---------------------------------------------------------------------------
# Document
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Document:
    """A snapshot of the whole collection and the revision it was read at.

    ``revision`` is None when the remote object does not exist yet.
    """
    records: tuple[Record, ...] = ()
    revision: Optional[str] = None

    @property
    def exists(self) -> bool:
        return self.revision is not None

    def __len__(self) -> int:
        return len(self.records)


def decode_records(text: str) -> list[Record]:
    """Parse a ``{"games": [...]}`` document body."""
    try:
        data = json.loads(text) if text.strip() else {}
    except json.JSONDecodeError as e:
        raise ValidationError(f"Document is not valid JSON: {e}") from e
    if isinstance(data, list):
        items = data
    elif isinstance(data, dict):
        items = data.get("games", [])
    else:
        raise ValidationError("Document must be an object with a 'games' list")
    if not isinstance(items, list):
        raise ValidationError("'games' must be a list")
    return [Record.from_dict(item) for item in items]


def encode_records(records: "list[Record] | tuple[Record, ...]") -> str:
    return json.dumps({"games": [r.to_dict() for r in records]}, indent=2, ensure_ascii=False)


# ---------------------------------------------------------------------------
# Outcome summary
# ---------------------------------------------------------------------------

@dataclass
class OutcomeSummary:
    """Tally of a batch run. Every source record lands in exactly one bucket."""
    total: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    errors: list[tuple[str, str]] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.failed == 0

    @property
    def accounted(self) -> int:
        return self.created + self.updated + self.skipped + self.failed

    def record_failure(self, name: str, message: str) -> None:
        self.failed += 1
        self.errors.append((name, message))

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "created": self.created,
            "updated": self.updated,
            "skipped": self.skipped,
            "failed": self.failed,
            "success": self.success,
            "errors": [{"name": n, "error": m} for n, m in self.errors],
        }
