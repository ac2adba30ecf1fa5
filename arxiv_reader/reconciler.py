"""Fetch-and-merge engine keeping the record store in step with the feed."""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from .errors import BadResumptionToken, ProtocolError, RateLimited, TransientError
from .models import (
    ArticleRecord,
    ArtifactRequest,
    Diff,
    EventKind,
    FeedEntry,
    FeedPage,
    SyncConfig,
)
from .rate_limit import RateLimiter
from .storage import RecordStore, StoreBatch

logger = logging.getLogger(__name__)


class SyncState(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    MERGING = "merging"
    RETRYING = "retrying"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class CategoryResult:
    """Outcome of syncing one category."""

    category: str
    state: SyncState = SyncState.IDLE
    diffs: List[Diff] = field(default_factory=list)
    pages: int = 0
    retries: int = 0
    # A record or the cursor was actually written.
    changed: bool = False
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.state == SyncState.IDLE


@dataclass
class SyncReport:
    """Outcome of a sync run, with results in subscription order."""

    results: List[CategoryResult] = field(default_factory=list)

    @property
    def diffs(self) -> List[Diff]:
        return [diff for result in self.results for diff in result.diffs]

    @property
    def failed(self) -> List[CategoryResult]:
        return [r for r in self.results if r.state == SyncState.FAILED]

    @property
    def mutated(self) -> bool:
        """True if any record or cursor was written, i.e. the data directory changed."""
        return any(r.changed for r in self.results)


def _dedupe_entries(entries: Iterable[FeedEntry]) -> List[FeedEntry]:
    """
    Collapse repeated ids in one page.

    The entry with the higher version wins (the later one on a tie), and
    metadata only one of the copies carries is kept.
    """
    chosen: Dict[str, FeedEntry] = {}
    for entry in entries:
        current = chosen.get(entry.id)
        if current is None:
            chosen[entry.id] = entry
            continue
        if entry.max_version >= current.max_version:
            winner, other = entry, current
        else:
            winner, other = current, entry
        chosen[entry.id] = replace(
            winner,
            journal_ref=winner.journal_ref or other.journal_ref,
            doi=winner.doi or other.doi,
            comments=winner.comments or other.comments,
            acm_classes=winner.acm_classes or other.acm_classes,
            msc_classes=winner.msc_classes or other.msc_classes,
            datestamp=max(filter(None, [winner.datestamp, other.datestamp]), default=None),
        )
    return list(chosen.values())


class Reconciler:
    """Merges feed pages into the record store, one atomic batch per page."""

    def __init__(
        self,
        store: RecordStore,
        client,
        config: Optional[SyncConfig] = None,
        rate_limiter: Optional[RateLimiter] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize the reconciler.

        Args:
            store: Record store to merge into
            client: Feed client providing ``fetch(category, watermark)`` and
                ``restart_watermark(watermark)``
            config: SyncConfig with worker and retry settings
            rate_limiter: Limiter shared with the client; told about
                server-requested delays
            sleep: Sleep function used between retries (injectable for tests)
        """
        self.store = store
        self.client = client
        self.config = config or SyncConfig()
        self.rate_limiter = rate_limiter
        self._sleep = sleep

    def merge_page(self, category: str, page: FeedPage) -> List[Diff]:
        """
        Merge one page and advance the category cursor in the same batch.

        Returns:
            Diffs in page order
        """
        diffs, _ = self._merge_page(category, page)
        return diffs

    def _merge_page(self, category: str, page: FeedPage) -> Tuple[List[Diff], bool]:
        with self.store.batch() as batch:
            diffs: List[Diff] = []
            for entry in _dedupe_entries(page.entries):
                diffs.extend(self._merge_entry(batch, category, entry))
            batch.set_cursor(category, page.next_watermark)
            changed = bool(batch.written or batch.cursors)
        if diffs:
            logger.info(f"[{category}] Merged {len(page.entries)} entries, {len(diffs)} changes")
        return diffs, changed

    def _merge_entry(self, batch: StoreBatch, category: str, entry: FeedEntry) -> List[Diff]:
        existing = batch.get(entry.id)
        if existing is None:
            record = ArticleRecord(
                id=entry.id,
                versions=list(entry.versions),
                journal_ref=entry.journal_ref,
                doi=entry.doi,
                comments=entry.comments,
                acm_classes=entry.acm_classes,
                msc_classes=entry.msc_classes,
                last_change=entry.datestamp,
            )
            batch.put(record)
            return [Diff(entry.id, EventKind.NEW_ARTICLE, record.max_version, category)]

        if entry.max_version < existing.max_version:
            logger.warning(
                f"[{category}] Feed lists v{entry.max_version} of {entry.id} "
                f"but v{existing.max_version} is stored, keeping stored history"
            )

        diffs: List[Diff] = []
        new_versions = [v for v in entry.versions if v.number > existing.max_version]
        versions = list(existing.versions) + new_versions
        if new_versions:
            diffs.append(Diff(entry.id, EventKind.NEW_VERSION, versions[-1].number, category))

        journal_ref = existing.journal_ref
        if entry.journal_ref and entry.journal_ref != existing.journal_ref:
            journal_ref = entry.journal_ref
            diffs.append(Diff(entry.id, EventKind.NEW_JOURNAL_REF, journal_ref, category))

        doi = entry.doi or existing.doi
        comments = entry.comments if new_versions else (existing.comments or entry.comments)
        acm_classes = entry.acm_classes or existing.acm_classes
        msc_classes = entry.msc_classes or existing.msc_classes
        if diffs or (doi, comments, acm_classes, msc_classes) != (
            existing.doi,
            existing.comments,
            existing.acm_classes,
            existing.msc_classes,
        ):
            batch.put(
                replace(
                    existing,
                    versions=versions,
                    journal_ref=journal_ref,
                    doi=doi,
                    comments=comments,
                    acm_classes=acm_classes,
                    msc_classes=msc_classes,
                    last_change=entry.datestamp or existing.last_change,
                )
            )
        return diffs

    def _backoff(self, attempt: int) -> float:
        return min(self.config.backoff_base * (2 ** attempt), self.config.backoff_max)

    def sync_category(
        self, category: str, cancel_event: Optional[threading.Event] = None
    ) -> CategoryResult:
        """
        Fetch and merge pages for one category until the feed is exhausted.

        Transient failures are retried with exponential backoff up to
        ``max_retries`` times per request. Protocol failures end the category
        immediately. In both cases the cursor stays at the last merged page.
        StorageError is never caught here.

        Args:
            category: Category to sync
            cancel_event: Checked before each page fetch

        Returns:
            CategoryResult with the diffs discovered
        """
        stop = cancel_event.is_set if cancel_event is not None else (lambda: False)
        return self._sync_category(category, stop)

    def _sync_category(self, category: str, should_stop: Callable[[], bool]) -> CategoryResult:
        result = CategoryResult(category)
        cursor = self.store.get_cursor(category)
        watermark = cursor.watermark if cursor else None
        attempt = 0
        logger.info(f"Syncing category: {category}")

        while True:
            if should_stop():
                result.state = SyncState.CANCELLED
                logger.info(f"[{category}] Cancelled after {result.pages} pages")
                return result

            result.state = SyncState.FETCHING
            try:
                page = self.client.fetch(category, watermark)
            except BadResumptionToken as e:
                restart = self.client.restart_watermark(watermark)
                with self.store.batch() as batch:
                    result.changed = batch.set_cursor(category, restart) or result.changed
                return self._fail(result, f"{e}; harvest restarts on the next run")
            except ProtocolError as e:
                return self._fail(result, str(e))
            except TransientError as e:
                if attempt >= self.config.max_retries:
                    return self._fail(result, f"giving up after {attempt} retries: {e}")
                delay = self._backoff(attempt)
                if isinstance(e, RateLimited) and e.retry_after is not None:
                    delay = max(delay, e.retry_after)
                    if self.rate_limiter is not None:
                        self.rate_limiter.defer(e.retry_after)
                attempt += 1
                result.retries += 1
                result.state = SyncState.RETRYING
                logger.warning(
                    f"[{category}] {e}; retry {attempt}/{self.config.max_retries} in {delay:.1f}s"
                )
                self._sleep(delay)
                continue

            result.state = SyncState.MERGING
            diffs, changed = self._merge_page(category, page)
            result.diffs.extend(diffs)
            result.changed = result.changed or changed
            result.pages += 1
            watermark = page.next_watermark
            attempt = 0

            if not page.has_more:
                result.state = SyncState.IDLE
                logger.info(
                    f"[{category}] Up to date: {result.pages} pages, {len(result.diffs)} changes"
                )
                return result

    def _fail(self, result: CategoryResult, message: str) -> CategoryResult:
        result.state = SyncState.FAILED
        result.error = message
        logger.error(f"[{result.category}] Sync failed: {message}")
        return result

    def sync_all(
        self, categories: Iterable[str], cancel_event: Optional[threading.Event] = None
    ) -> SyncReport:
        """
        Sync several categories concurrently.

        Categories are independent: one failing does not affect the others.
        A StorageError stops the remaining workers and is re-raised.

        Args:
            categories: Categories in subscription order
            cancel_event: Checked by every worker before each page fetch

        Returns:
            SyncReport with results in the given category order
        """
        ordered = list(dict.fromkeys(categories))
        if not ordered:
            return SyncReport()

        abort = threading.Event()

        def should_stop() -> bool:
            return abort.is_set() or (cancel_event is not None and cancel_event.is_set())

        workers = max(1, min(self.config.max_workers, len(ordered)))
        results: Dict[str, CategoryResult] = {}
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = {
                executor.submit(self._sync_category, category, should_stop): category
                for category in ordered
            }
            try:
                for fut in as_completed(futures):
                    results[futures[fut]] = fut.result()
            except BaseException:
                abort.set()
                raise

        report = SyncReport([results[category] for category in ordered])
        logger.info(
            f"Sync finished: {len(report.diffs)} changes, {len(report.failed)} failed categories"
        )
        return report


def artifact_requests(records: Iterable[ArticleRecord]) -> List[ArtifactRequest]:
    """List PDF and source downloads for the latest version of bookmarked articles."""
    requests_: List[ArtifactRequest] = []
    for record in records:
        if not record.bookmarked:
            continue
        latest = record.latest
        if latest.probably_has_pdf():
            requests_.append(ArtifactRequest(record.id, latest.number, "pdf"))
        if latest.probably_has_src():
            requests_.append(ArtifactRequest(record.id, latest.number, "src"))
    return requests_
