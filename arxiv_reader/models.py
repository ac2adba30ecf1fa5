"""Data models for locally replicated arXiv articles."""

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional, Tuple

# Same shape the arXiv OAI interface hands out: new-style "2501.01234",
# old-style "math/0101001" or "hep-th/9901001".
_ARXIV_ID_RE = re.compile(r"^[0-9a-z][0-9a-z./-]*$")
_VERSION_SUFFIX_RE = re.compile(r"^(?P<id>.+?)v(?P<version>\d+)$")


def is_valid_arxiv_id(value: str) -> bool:
    """Return True if ``value`` looks like an arXiv identifier (no version)."""
    return 0 < len(value) < 20 and bool(_ARXIV_ID_RE.match(value))


def parse_arxiv_id(value: str) -> Tuple[str, Optional[int]]:
    """
    Split an identifier with an optional version suffix.

    Accepts "2501.01234", "2501.01234v3", "arXiv:2501.01234v3" and
    old-style ids such as "math/0101001v2".

    Returns:
        Tuple of (identifier, version or None)

    Raises:
        ValueError: if the identifier is malformed
    """
    text = value.strip()
    if text.lower().startswith("arxiv:"):
        text = text[len("arxiv:"):]

    version: Optional[int] = None
    match = _VERSION_SUFFIX_RE.match(text)
    if match:
        text = match.group("id")
        version = int(match.group("version"))
        if version < 1:
            raise ValueError(f"invalid version number in {value!r}")

    if not is_valid_arxiv_id(text):
        raise ValueError(f"invalid arXiv identifier: {value!r}")
    return text, version


def split_authors(authors: str) -> List[str]:
    """Split an arXiv author string ("A, B and C") into names."""
    text = " ".join(authors.split())
    if not text:
        return []
    parts = re.split(r",\s*(?:and\s+)?|\s+and\s+", text)
    return [p.strip() for p in parts if p.strip()]


@dataclass
class VersionInfo:
    """One submitted version of an article. Never modified once stored."""

    number: int
    submitted: datetime
    title: str
    abstract: str
    authors: List[str]
    # The first category is the primary one.
    categories: List[str]

    size: str = ""
    # arXiv source flag, e.g. "I" for withdrawn versions.
    source_type: Optional[str] = None
    # Feed response date (YYYY-MM-DD) on which this version was first merged.
    first_seen: str = ""

    def probably_withdrawn(self) -> bool:
        return self.source_type == "I" or self.size == "0kb"

    def probably_has_pdf(self) -> bool:
        return not self.probably_withdrawn() and self.source_type != "H"

    def probably_has_src(self) -> bool:
        secret = bool(self.source_type) and self.source_type.startswith("S")
        return not self.probably_withdrawn() and not secret

    def to_dict(self) -> dict:
        """Convert version to dictionary for JSON serialization."""
        return {
            "number": self.number,
            "submitted": self.submitted.isoformat(),
            "title": self.title,
            "abstract": self.abstract,
            "authors": list(self.authors),
            "categories": list(self.categories),
            "size": self.size,
            "source_type": self.source_type,
            "first_seen": self.first_seen,
        }

    @staticmethod
    def from_dict(data: dict) -> "VersionInfo":
        return VersionInfo(
            number=int(data["number"]),
            submitted=datetime.fromisoformat(data["submitted"]),
            title=data.get("title", ""),
            abstract=data.get("abstract", ""),
            authors=list(data.get("authors") or []),
            categories=list(data.get("categories") or []),
            size=data.get("size") or "",
            source_type=data.get("source_type"),
            first_seen=data.get("first_seen") or "",
        )


@dataclass
class ArticleRecord:
    """Local replica of one arXiv article plus the user's state for it."""

    id: str
    versions: List[VersionInfo]

    # Latest remote values
    journal_ref: Optional[str] = None
    doi: Optional[str] = None
    comments: Optional[str] = None
    acm_classes: Optional[str] = None
    msc_classes: Optional[str] = None
    last_change: Optional[str] = None

    # User state, never touched by sync
    bookmarked: bool = False
    note: str = ""

    # Acknowledgement state used to suppress duplicate notifications
    last_seen_version: int = 0
    seen_journal_ref: Optional[str] = None

    @property
    def latest(self) -> VersionInfo:
        return self.versions[-1]

    @property
    def first_version(self) -> VersionInfo:
        return self.versions[0]

    @property
    def max_version(self) -> int:
        return self.versions[-1].number

    @property
    def title(self) -> str:
        return self.latest.title

    @property
    def abstract(self) -> str:
        return self.latest.abstract

    @property
    def authors(self) -> List[str]:
        return self.latest.authors

    @property
    def categories(self) -> List[str]:
        return self.latest.categories

    @property
    def primary_category(self) -> str:
        return self.categories[0] if self.categories else ""

    @property
    def is_seen(self) -> bool:
        return self.last_seen_version > 0

    def validate(self) -> None:
        """
        Check the record invariants.

        Raises:
            ValueError: if versions are empty or not strictly increasing, or
                the acknowledged version is ahead of the stored history
        """
        if not is_valid_arxiv_id(self.id):
            raise ValueError(f"invalid arXiv identifier: {self.id!r}")
        if not self.versions:
            raise ValueError(f"article {self.id} has no versions")
        previous = 0
        for version in self.versions:
            if version.number <= previous:
                raise ValueError(
                    f"article {self.id}: version numbers not strictly increasing"
                )
            previous = version.number
        if not 0 <= self.last_seen_version <= self.max_version:
            raise ValueError(
                f"article {self.id}: last_seen_version {self.last_seen_version} "
                f"outside 0..{self.max_version}"
            )

    def to_dict(self) -> dict:
        """Convert record to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "versions": [v.to_dict() for v in self.versions],
            "journal_ref": self.journal_ref,
            "doi": self.doi,
            "comments": self.comments,
            "acm_classes": self.acm_classes,
            "msc_classes": self.msc_classes,
            "last_change": self.last_change,
            "bookmarked": self.bookmarked,
            "note": self.note,
            "last_seen_version": self.last_seen_version,
            "seen_journal_ref": self.seen_journal_ref,
        }

    @staticmethod
    def from_dict(data: dict) -> "ArticleRecord":
        return ArticleRecord(
            id=data["id"],
            versions=[VersionInfo.from_dict(v) for v in data["versions"]],
            journal_ref=data.get("journal_ref"),
            doi=data.get("doi"),
            comments=data.get("comments"),
            acm_classes=data.get("acm_classes"),
            msc_classes=data.get("msc_classes"),
            last_change=data.get("last_change"),
            bookmarked=bool(data.get("bookmarked", False)),
            note=data.get("note") or "",
            last_seen_version=int(data.get("last_seen_version", 0)),
            seen_journal_ref=data.get("seen_journal_ref"),
        )


@dataclass
class SyncCursor:
    """Sync progress for one subscribed category."""

    category: str
    # Opaque to everything except the feed client that produced it.
    watermark: Optional[str] = None
    updated_at: Optional[str] = None


@dataclass
class FeedEntry:
    """One article as returned by a feed page."""

    id: str
    versions: List[VersionInfo]
    journal_ref: Optional[str] = None
    doi: Optional[str] = None
    comments: Optional[str] = None
    acm_classes: Optional[str] = None
    msc_classes: Optional[str] = None
    datestamp: Optional[str] = None

    @property
    def max_version(self) -> int:
        return max(v.number for v in self.versions)


@dataclass
class FeedPage:
    """A page of feed entries together with the position after it."""

    entries: List[FeedEntry]
    next_watermark: Optional[str]
    has_more: bool
    response_date: Optional[str] = None


class EventKind(str, Enum):
    NEW_ARTICLE = "NewArticle"
    NEW_VERSION = "NewVersion"
    NEW_JOURNAL_REF = "NewJournalRef"


@dataclass(frozen=True)
class Diff:
    """Change caused by merging one feed entry."""

    article_id: str
    kind: EventKind
    # Version number for NewArticle/NewVersion, journal ref for NewJournalRef
    value: object
    category: str = ""


@dataclass(frozen=True)
class NotificationEvent:
    """A change surfaced to the user."""

    article_id: str
    kind: EventKind
    value: object
    title: str = field(default="", compare=False)

    def describe(self) -> str:
        if self.kind == EventKind.NEW_ARTICLE:
            return f"New article {self.article_id}: {self.title}"
        if self.kind == EventKind.NEW_VERSION:
            return f"New version v{self.value} of {self.article_id}: {self.title}"
        return f"{self.article_id} published: {self.value}"


class CitationStatus(str, Enum):
    UP_TO_DATE = "upToDate"
    STALE_VERSION = "staleVersion"
    STALE_JOURNAL_REF = "staleJournalRef"
    UNKNOWN = "unknown"


@dataclass
class CitationEntry:
    """An arXiv reference extracted from a bibliography file."""

    key: str
    cited_id: str
    # None means the entry does not pin a version ("latest").
    cited_version: Optional[int] = None
    # Journal the entry cites, if any besides the arXiv preprint itself.
    cited_journal: Optional[str] = None
    line: Optional[int] = None


@dataclass
class CitationReport:
    """Verdict for one citation entry."""

    entry: CitationEntry
    status: CitationStatus
    latest_version: Optional[int] = None
    journal_ref: Optional[str] = None
    doi: Optional[str] = None

    def describe(self) -> str:
        entry = self.entry
        if self.status == CitationStatus.UNKNOWN:
            return f"Entry {entry.key}: article {entry.cited_id} not found, run a sync first"
        if self.status == CitationStatus.STALE_VERSION:
            return (
                f"Entry {entry.key} refers to {entry.cited_id} version {entry.cited_version}, "
                f"but there is a newer version {self.latest_version}"
            )
        if self.status == CitationStatus.STALE_JOURNAL_REF:
            text = f"Entry {entry.key} refers to {entry.cited_id}, which seems to have been published: {self.journal_ref}"
            if self.doi:
                text += f" (https://doi.org/{self.doi})"
            return text
        return f"Entry {entry.key} ({entry.cited_id}) is up to date"


@dataclass(frozen=True)
class ArtifactRequest:
    """A PDF or source download the artifact fetcher should perform."""

    article_id: str
    version: int
    kind: str  # "pdf" or "src"

    @property
    def url(self) -> str:
        return f"https://arxiv.org/{self.kind}/{self.article_id}v{self.version}"


@dataclass
class SyncConfig:
    """Configuration for fetching and merging the remote feed."""

    base_url: str = "https://oaipmh.arxiv.org/oai"
    max_workers: int = 2
    # Minimum seconds between the start of two requests (shared by all threads)
    min_request_interval: float = 3.0
    max_retries: int = 4
    backoff_base: float = 5.0
    backoff_max: float = 120.0
    timeout: int = 60
