"""arXiv OAI-PMH feed client (ListRecords with the arXivRaw metadata format)."""

import json
import logging
import xml.etree.ElementTree as ET
from datetime import date, datetime, timedelta
from email.utils import parsedate_to_datetime
from typing import Dict, List, Optional

import requests

from . import __version__
from .errors import BadResumptionToken, NetworkError, ProtocolError, RateLimited
from .models import FeedEntry, FeedPage, SyncConfig, VersionInfo, parse_arxiv_id, split_authors
from .rate_limit import RateLimiter

logger = logging.getLogger(__name__)

NS = {
    "oai": "http://www.openarchives.org/OAI/2.0/",
    "raw": "http://arxiv.org/OAI/arXivRaw/",
}

# Archives that form their own OAI set group; everything else lives under "physics".
_OWN_GROUP_ARCHIVES = {"cs", "econ", "eess", "math", "q-bio", "q-fin", "stat"}


def category_to_set(category: str) -> Optional[str]:
    """
    Map an arXiv category to its OAI set spec.

    Examples: "cs.AI" -> "cs:cs:AI", "math" -> "math:math",
    "hep-th" -> "physics:hep-th", "astro-ph.CO" -> "physics:astro-ph:CO".
    An empty category means the whole repository (no set).
    """
    category = category.strip()
    if not category:
        return None
    if ":" in category:
        # Already a set spec.
        return category
    archive = category.split(".", 1)[0]
    group = archive if archive in _OWN_GROUP_ARCHIVES else "physics"
    return f"{group}:{category.replace('.', ':')}"


def parse_watermark(watermark: Optional[str]) -> Dict[str, Optional[str]]:
    """Decode a watermark produced by this client (None means never synced)."""
    state: Dict[str, Optional[str]] = {"date": None, "token": None, "response_date": None}
    if not watermark:
        return state
    try:
        data = json.loads(watermark)
    except json.JSONDecodeError as e:
        raise ProtocolError(f"unreadable watermark {watermark!r}: {e}") from e
    if not isinstance(data, dict):
        raise ProtocolError(f"unreadable watermark {watermark!r}")
    for key in state:
        value = data.get(key)
        state[key] = str(value) if value else None
    return state


def make_watermark(
    date_: Optional[str], token: Optional[str] = None, response_date: Optional[str] = None
) -> str:
    return json.dumps(
        {"date": date_, "token": token, "response_date": response_date}, sort_keys=True
    )


def _text(element: ET.Element, path: str) -> Optional[str]:
    value = element.findtext(path, default=None, namespaces=NS)
    if value is None:
        return None
    value = " ".join(value.split())
    return value or None


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Parse a Retry-After header given in seconds or as an HTTP date."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    return max(0.0, (when - datetime.now(when.tzinfo)).total_seconds())


class OaiFeedClient:
    """Fetches pages of the arXiv OAI-PMH feed for one category at a time."""

    def __init__(
        self,
        config: SyncConfig,
        rate_limiter: RateLimiter,
        session: Optional[requests.Session] = None,
    ):
        """
        Initialize the client.

        Args:
            config: SyncConfig with the endpoint URL and timeout
            rate_limiter: Limiter shared by every thread using this service
            session: Optional requests session (injectable for tests)
        """
        self.config = config
        self.rate_limiter = rate_limiter
        self.session = session or requests.Session()
        self.session.headers["User-Agent"] = f"arxiv-reader/{__version__}"

    def fetch(self, category: str, watermark: Optional[str]) -> FeedPage:
        """
        Fetch the next page of changes for a category.

        Args:
            category: arXiv category such as "cs.AI"
            watermark: Value of ``next_watermark`` from the previous page, or
                the stored cursor; None for a first harvest

        Returns:
            FeedPage with the parsed entries

        Raises:
            NetworkError: connection failure, timeout or 5xx answer
            RateLimited: 429/503 answer
            ProtocolError: anything the client cannot interpret
            BadResumptionToken: the stored resumption token was rejected
        """
        state = parse_watermark(watermark)
        params = self._build_params(category, state)
        root = self._request(params)

        response_date = (_text(root, "oai:responseDate") or "")[:10]
        if not response_date:
            raise ProtocolError("response without responseDate")
        # The harvest date is the response date of the first request of a harvest.
        harvest_date = (state["token"] and state["response_date"]) or response_date

        for error in root.findall("oai:error", NS):
            code = error.get("code", "")
            if code == "badResumptionToken":
                raise BadResumptionToken(f"resumption token rejected for {category}")
            if code == "noRecordsMatch":
                logger.info(f"[{category}] Received 0 records")
                return FeedPage(
                    entries=[],
                    next_watermark=make_watermark(harvest_date),
                    has_more=False,
                    response_date=harvest_date,
                )
            raise ProtocolError(f"OAI error {code}: {(error.text or '').strip()}")

        list_records = root.find("oai:ListRecords", NS)
        if list_records is None:
            raise ProtocolError("response without ListRecords")

        entries = []
        for record in list_records.findall("oai:record", NS):
            entry = self._parse_record(record, harvest_date)
            if entry is not None:
                entries.append(entry)
        logger.info(f"[{category}] Received {len(entries)} records")

        token_elem = list_records.find("oai:resumptionToken", NS)
        token = (token_elem.text or "").strip() if token_elem is not None else ""
        if token:
            next_watermark = make_watermark(state["date"], token, harvest_date)
        else:
            next_watermark = make_watermark(harvest_date)
        return FeedPage(
            entries=entries,
            next_watermark=next_watermark,
            has_more=bool(token),
            response_date=harvest_date,
        )

    def restart_watermark(self, watermark: Optional[str]) -> Optional[str]:
        """Drop the resumption token from a watermark, keeping its date."""
        state = parse_watermark(watermark)
        if state["date"] is None:
            return None
        return make_watermark(state["date"])

    def _build_params(self, category: str, state: Dict[str, Optional[str]]) -> Dict[str, str]:
        if state["token"]:
            return {"verb": "ListRecords", "resumptionToken": state["token"]}

        params = {"verb": "ListRecords", "metadataPrefix": "arXivRaw"}
        set_spec = category_to_set(category)
        if set_spec:
            params["set"] = set_spec
        if state["date"]:
            try:
                last = date.fromisoformat(state["date"])
            except ValueError as e:
                raise ProtocolError(f"invalid watermark date {state['date']!r}") from e
            # One day of overlap so changes around midnight are not lost.
            since = (last - timedelta(days=1)).isoformat()
            logger.info(f"[{category}] Retrieving changes since {since}")
            params["from"] = since
        return params

    def _request(self, params: Dict[str, str]) -> ET.Element:
        """POST one OAI-PMH request and return the parsed XML root."""
        waited = self.rate_limiter.acquire()
        if waited:
            logger.debug(f"Rate limiter delayed request by {waited:.2f}s")

        try:
            response = self.session.post(
                self.config.base_url, data=params, timeout=self.config.timeout
            )
        except (requests.ConnectionError, requests.Timeout) as e:
            raise NetworkError(f"requesting {self.config.base_url}: {e}") from e
        except requests.RequestException as e:
            raise ProtocolError(f"requesting {self.config.base_url}: {e}") from e

        status = response.status_code
        if status in (429, 503):
            retry_after = _parse_retry_after(response.headers.get("Retry-After"))
            raise RateLimited(f"HTTP {status} from feed", retry_after=retry_after)
        if status >= 500:
            raise NetworkError(f"HTTP {status} from feed")
        if status >= 400:
            raise ProtocolError(f"HTTP {status} from feed")

        content_type = response.headers.get("Content-Type", "")
        if not content_type.startswith("text/xml"):
            raise ProtocolError(f"wrong content type (expected text/xml, received {content_type!r})")

        try:
            return ET.fromstring(response.content)
        except ET.ParseError as e:
            raise ProtocolError(f"parsing response from feed: {e}") from e

    def _parse_record(self, record: ET.Element, harvest_date: str) -> Optional[FeedEntry]:
        """Convert one <record> element; deleted records are skipped."""
        header = record.find("oai:header", NS)
        if header is not None and header.get("status") == "deleted":
            return None
        raw = record.find("oai:metadata/raw:arXivRaw", NS)
        if raw is None:
            raise ProtocolError("record without arXivRaw metadata")

        raw_id = _text(raw, "raw:id") or ""
        try:
            article_id, _ = parse_arxiv_id(raw_id)
        except ValueError as e:
            raise ProtocolError(str(e)) from e

        title = _text(raw, "raw:title") or ""
        abstract = _text(raw, "raw:abstract") or ""
        authors = split_authors(_text(raw, "raw:authors") or "")
        categories = (_text(raw, "raw:categories") or "").split()

        versions: List[VersionInfo] = []
        for version in raw.findall("raw:version", NS):
            label = version.get("version", "")
            try:
                number = int(label.lstrip("v"))
                submitted = parsedate_to_datetime(_text(version, "raw:date") or "")
            except (TypeError, ValueError) as e:
                raise ProtocolError(f"invalid version {label!r} of {article_id}: {e}") from e
            versions.append(
                VersionInfo(
                    number=number,
                    submitted=submitted,
                    title=title,
                    abstract=abstract,
                    authors=authors,
                    categories=categories,
                    size=_text(version, "raw:size") or "",
                    source_type=_text(version, "raw:source_type"),
                    first_seen=harvest_date,
                )
            )
        if not versions:
            raise ProtocolError(f"article {article_id} without versions")
        versions.sort(key=lambda v: v.number)
        numbers = [v.number for v in versions]
        if len(set(numbers)) != len(numbers) or numbers[0] < 1:
            raise ProtocolError(f"article {article_id} has invalid version list {numbers}")

        return FeedEntry(
            id=article_id,
            versions=versions,
            journal_ref=_text(raw, "raw:journal-ref"),
            doi=_text(raw, "raw:doi"),
            comments=_text(raw, "raw:comments"),
            acm_classes=_text(raw, "raw:acm-class"),
            msc_classes=_text(raw, "raw:msc-class"),
            datestamp=_text(header, "oai:datestamp") if header is not None else None,
        )
