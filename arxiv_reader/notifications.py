"""Turn merge diffs into user notifications and track what has been seen."""

import logging
from typing import Dict, Iterable, List, Optional, Set, Tuple

from .filter import FilterExpression
from .models import ArticleRecord, Diff, EventKind, NotificationEvent
from .storage import RecordStore

logger = logging.getLogger(__name__)


class NotificationGenerator:
    """
    Decide which changes the user is told about.

    * NewArticle: the record matches the "new" filter and has never been seen.
    * NewVersion: the record is bookmarked (and matches the optional update
      filter) and has a version newer than the acknowledged one. A lone v1
      is never an update.
    * NewJournalRef: same, for a journal reference different from the
      acknowledged one.

    Events are reported again until they are acknowledged, and never after.
    """

    def __init__(
        self,
        store: RecordStore,
        new_filter: FilterExpression,
        update_filter: Optional[FilterExpression] = None,
    ):
        """
        Args:
            store: Record store to read current state from
            new_filter: Filter selecting new articles worth reporting
            update_filter: Extra condition for updates of bookmarked articles
        """
        self.store = store
        self.new_filter = new_filter
        self.update_filter = update_filter
        # State each reported record had when its events were generated.
        self._reported: Dict[str, Tuple[int, Optional[str]]] = {}

    def _wants_updates(self, record: ArticleRecord) -> bool:
        if not record.bookmarked:
            return False
        return self.update_filter is None or self.update_filter.matches(record)

    def _events_for(
        self, record: ArticleRecord, kinds: Iterable[EventKind]
    ) -> List[NotificationEvent]:
        events: List[NotificationEvent] = []
        kinds = set(kinds)
        title = record.title

        if EventKind.NEW_ARTICLE in kinds and not record.is_seen and self.new_filter.matches(record):
            events.append(
                NotificationEvent(record.id, EventKind.NEW_ARTICLE, record.max_version, title)
            )
        wants_updates = self._wants_updates(record)
        if (
            EventKind.NEW_VERSION in kinds
            and wants_updates
            and not events
            and record.max_version > max(record.last_seen_version, 1)
        ):
            events.append(
                NotificationEvent(record.id, EventKind.NEW_VERSION, record.max_version, title)
            )
        if (
            EventKind.NEW_JOURNAL_REF in kinds
            and wants_updates
            and record.journal_ref
            and record.journal_ref != record.seen_journal_ref
        ):
            events.append(
                NotificationEvent(record.id, EventKind.NEW_JOURNAL_REF, record.journal_ref, title)
            )

        if events:
            self._reported[record.id] = (record.max_version, record.journal_ref)
        return events

    def generate(self, diffs: Iterable[Diff]) -> List[NotificationEvent]:
        """
        Build notifications for the diffs of a sync run.

        Each record is judged on its current stored state, so several diffs
        for one record collapse into at most one event per kind.

        Returns:
            Events in order of discovery
        """
        kinds_by_id: Dict[str, Set[EventKind]] = {}
        for diff in diffs:
            kinds_by_id.setdefault(diff.article_id, set()).add(diff.kind)

        events: List[NotificationEvent] = []
        for article_id, kinds in kinds_by_id.items():
            record = self.store.get(article_id)
            if record is None:
                logger.warning(f"Diff for unknown article {article_id}, skipping")
                continue
            events.extend(self._events_for(record, kinds))

        logger.info(f"Generated {len(events)} notifications from {len(kinds_by_id)} changed articles")
        return events

    def generate_all(self) -> List[NotificationEvent]:
        """Build notifications from the whole store instead of a diff stream."""
        events: List[NotificationEvent] = []
        for record in self.store.iter_records():
            events.extend(self._events_for(record, EventKind))
        logger.info(f"Generated {len(events)} notifications from full store scan")
        return events

    def acknowledge(self, events: Iterable[NotificationEvent]) -> int:
        """
        Mark the records behind ``events`` as seen.

        The acknowledged version and journal reference are the ones the
        record had when the events were generated.

        Returns:
            Number of records acknowledged
        """
        count = 0
        for article_id in dict.fromkeys(event.article_id for event in events):
            state = self._reported.pop(article_id, None)
            if state is None:
                record = self.store.get(article_id)
                if record is None:
                    continue
                state = (record.max_version, record.journal_ref)
            version, journal_ref = state
            if self.store.acknowledge(article_id, version, journal_ref):
                count += 1
        logger.debug(f"Acknowledged {count} articles")
        return count

    def deliver(self, events: List[NotificationEvent], sink) -> int:
        """
        Hand events to a sink, then acknowledge them.

        ``sink`` is a notifier with a ``send(events)`` method or a plain
        callable. If it raises, nothing is acknowledged and the events are
        produced again on the next run.

        Returns:
            Number of events delivered
        """
        if not events:
            return 0
        send = getattr(sink, "send", sink)
        send(events)
        self.acknowledge(events)
        return len(events)
