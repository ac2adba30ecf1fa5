"""Check BibTeX citations of arXiv preprints against the local replica."""

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from .errors import CitationParseError
from .models import CitationEntry, CitationReport, CitationStatus, parse_arxiv_id
from .storage import RecordStore

logger = logging.getLogger(__name__)

_SKIPPED_TYPES = {"comment", "preamble", "string"}
_ID_PATTERN = r"([a-z][a-z.-]*/\d{7}|\d{4}\.\d{4,5})(v\d+)?"
_URL_RE = re.compile(r"arxiv\.org/(?:abs|pdf)/" + _ID_PATTERN, re.IGNORECASE)
_DOI_RE = re.compile(r"10\.48550/arxiv\." + _ID_PATTERN, re.IGNORECASE)
_JOURNAL_RE = re.compile(r"arxiv:\s*(\S+)", re.IGNORECASE)


class _EntryError(Exception):
    pass


@dataclass
class BibEntry:
    """A raw BibTeX entry: type, key and lower-cased field names."""

    entry_type: str
    key: str
    fields: Dict[str, str]
    line: int


def _clean(value: str) -> str:
    return " ".join(value.replace("{", "").replace("}", "").split())


class _BibParser:
    """Minimal BibTeX reader: entries, braced/quoted values and # concatenation."""

    def __init__(self, text: str):
        self.text = text
        self.pos = 0

    def line_of(self, pos: int) -> int:
        return self.text.count("\n", 0, pos) + 1

    def skip_ws(self) -> None:
        while self.pos < len(self.text) and self.text[self.pos].isspace():
            self.pos += 1

    def peek(self) -> str:
        return self.text[self.pos] if self.pos < len(self.text) else ""

    def expect(self, chars: str) -> str:
        self.skip_ws()
        ch = self.peek()
        if not ch or ch not in chars:
            found = repr(ch) if ch else "end of file"
            raise _EntryError(f"expected {' or '.join(repr(c) for c in chars)}, found {found}")
        self.pos += 1
        return ch

    def read_name(self) -> str:
        self.skip_ws()
        start = self.pos
        while self.pos < len(self.text) and (self.text[self.pos].isalnum() or self.text[self.pos] in "_-:.+/'"):
            self.pos += 1
        if self.pos == start:
            raise _EntryError("expected a name")
        return self.text[start:self.pos]

    def read_braced(self) -> str:
        # self.pos is just past the opening brace
        depth = 1
        start = self.pos
        while self.pos < len(self.text):
            ch = self.text[self.pos]
            if ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    value = self.text[start:self.pos]
                    self.pos += 1
                    return value
            self.pos += 1
        raise _EntryError("unbalanced braces")

    def read_quoted(self) -> str:
        depth = 0
        start = self.pos
        while self.pos < len(self.text):
            ch = self.text[self.pos]
            if ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
            elif ch == '"' and depth == 0 and self.text[self.pos - 1] != "\\":
                value = self.text[start:self.pos]
                self.pos += 1
                return value
            self.pos += 1
        raise _EntryError("unterminated quoted value")

    def read_value(self) -> str:
        parts = []
        while True:
            self.skip_ws()
            ch = self.peek()
            if ch == "{":
                self.pos += 1
                parts.append(self.read_braced())
            elif ch == '"':
                self.pos += 1
                parts.append(self.read_quoted())
            elif ch and (ch.isalnum() or ch == "_"):
                parts.append(self.read_name())
            else:
                raise _EntryError("expected a field value")
            self.skip_ws()
            if self.peek() != "#":
                return "".join(parts)
            self.pos += 1

    def read_entry(self, start: int) -> Optional[BibEntry]:
        """Read the entry whose '@' is at ``start``; None for @comment and friends."""
        self.pos = start + 1
        entry_type = self.read_name().lower()
        opener = self.expect("{(")
        closer = "}" if opener == "{" else ")"
        if entry_type in _SKIPPED_TYPES:
            if opener == "{":
                self.read_braced()
            else:
                end = self.text.find(")", self.pos)
                self.pos = end + 1 if end >= 0 else len(self.text)
            return None

        key = self.read_name()
        fields: Dict[str, str] = {}
        while True:
            sep = self.expect("," + closer)
            if sep == closer:
                break
            self.skip_ws()
            if self.peek() == closer:
                self.pos += 1
                break
            name = self.read_name().lower()
            self.expect("=")
            fields[name] = self.read_value()
        return BibEntry(entry_type, key, fields, self.line_of(start))

    def entries(self) -> Tuple[List[BibEntry], List[CitationParseError]]:
        found: List[BibEntry] = []
        problems: List[CitationParseError] = []
        start = self.text.find("@")
        while start >= 0:
            try:
                entry = self.read_entry(start)
                if entry is not None:
                    found.append(entry)
                next_search = self.pos
            except _EntryError as e:
                key_match = re.match(r"@\s*\w+\s*[{(]\s*([^,\s]+)\s*,", self.text[start:])
                key = key_match.group(1) if key_match else None
                problems.append(CitationParseError(str(e), key=key, line=self.line_of(start)))
                next_search = start + 1
            start = self.text.find("@", next_search)
        return found, problems


def _find_arxiv_id(fields: Dict[str, str]) -> Optional[str]:
    """Return the raw arXiv identifier an entry points to, if any."""
    eprint = _clean(fields.get("eprint", ""))
    prefix = _clean(fields.get("archiveprefix", "") or fields.get("eprinttype", "")).lower()
    if eprint and (prefix == "arxiv" or (not prefix and re.fullmatch(_ID_PATTERN, eprint, re.IGNORECASE))):
        return eprint
    if fields.get("arxiv"):
        return _clean(fields["arxiv"])
    for name, pattern in (("url", _URL_RE), ("doi", _DOI_RE)):
        match = pattern.search(_clean(fields.get(name, "")))
        if match:
            return match.group(1) + (match.group(2) or "")
    journal = _clean(fields.get("journal", ""))
    match = _JOURNAL_RE.search(journal)
    if match:
        return match.group(1).rstrip(".,;")
    return None


def _cited_journal(fields: Dict[str, str]) -> Optional[str]:
    """The published venue the entry cites, if it is not just the preprint."""
    journal = _clean(fields.get("journal", "") or fields.get("journaltitle", ""))
    if journal and "arxiv" not in journal.lower():
        return journal
    doi = _clean(fields.get("doi", ""))
    if doi and not _DOI_RE.search(doi):
        return doi
    return None


def parse_bibtex(text: str) -> Tuple[List[CitationEntry], List[CitationParseError]]:
    """
    Extract arXiv citations from BibTeX source.

    Entries that do not reference arXiv are ignored. Malformed entries and
    unreadable identifiers are skipped and returned as problems.

    Returns:
        Tuple of (citation entries in file order, problems)
    """
    raw_entries, problems = _BibParser(text).entries()
    entries: List[CitationEntry] = []
    for raw in raw_entries:
        raw_id = _find_arxiv_id(raw.fields)
        if raw_id is None:
            continue
        try:
            article_id, version = parse_arxiv_id(raw_id)
        except ValueError as e:
            problems.append(CitationParseError(str(e), key=raw.key, line=raw.line))
            continue
        entries.append(
            CitationEntry(
                key=raw.key,
                cited_id=article_id,
                cited_version=version,
                cited_journal=_cited_journal(raw.fields),
                line=raw.line,
            )
        )
    return entries, problems


def check_citations(store: RecordStore, entries: List[CitationEntry]) -> List[CitationReport]:
    """Classify each citation against the stored record it refers to."""
    reports = []
    for entry in entries:
        record = store.get(entry.cited_id)
        if record is None:
            reports.append(CitationReport(entry, CitationStatus.UNKNOWN))
            continue

        if entry.cited_version is not None and entry.cited_version < record.max_version:
            status = CitationStatus.STALE_VERSION
        elif record.journal_ref and not entry.cited_journal:
            status = CitationStatus.STALE_JOURNAL_REF
        else:
            status = CitationStatus.UP_TO_DATE
        reports.append(
            CitationReport(
                entry,
                status,
                latest_version=record.max_version,
                journal_ref=record.journal_ref,
                doi=record.doi,
            )
        )
    return reports


@dataclass
class CitationCheck:
    """Result of checking one bibliography file."""

    reports: List[CitationReport] = field(default_factory=list)
    problems: List[CitationParseError] = field(default_factory=list)

    @property
    def stale(self) -> List[CitationReport]:
        return [r for r in self.reports if r.status != CitationStatus.UP_TO_DATE]


def read_citation_file(path: Path) -> Tuple[List[CitationEntry], List[CitationParseError]]:
    text = Path(path).read_text(encoding="utf-8")
    entries, problems = parse_bibtex(text)
    for problem in problems:
        logger.warning(f"Skipping malformed citation in {path}: {problem}")
    logger.info(f"Read {len(entries)} arXiv citations from {path}")
    return entries, problems


def check_file(store: RecordStore, path: Path) -> CitationCheck:
    """Parse a BibTeX file and check every arXiv citation in it."""
    entries, problems = read_citation_file(path)
    return CitationCheck(check_citations(store, entries), problems)


def bookmark_citations(store: RecordStore, entries: List[CitationEntry]) -> Tuple[List[str], List[str]]:
    """
    Bookmark every cited article that is present in the store.

    Returns:
        Tuple of (ids bookmarked, ids not found)
    """
    bookmarked: List[str] = []
    unknown: List[str] = []
    for article_id in dict.fromkeys(entry.cited_id for entry in entries):
        if store.set_bookmarked(article_id, True):
            bookmarked.append(article_id)
        else:
            unknown.append(article_id)
    if unknown:
        logger.info(f"{len(unknown)} cited articles not found, run a sync first")
    return bookmarked, unknown
