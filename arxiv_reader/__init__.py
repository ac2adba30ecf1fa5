"""arxiv-reader - Local replica of the arXiv metadata feed with change notifications."""

__version__ = "0.1.0"

from .citations import bookmark_citations, check_citations, check_file, parse_bibtex
from .config import AppConfig, load_config
from .errors import (
    ArxivReaderError,
    BadResumptionToken,
    ConfigError,
    FilterSyntaxError,
    NetworkError,
    ProtocolError,
    RateLimited,
    StorageError,
    UserInputError,
)
from .fetcher import OaiFeedClient
from .filter import FilterExpression, compile_filter, evaluate
from .models import ArticleRecord, EventKind, NotificationEvent, SyncConfig, VersionInfo
from .notifications import NotificationGenerator
from .notifier import NotificationConfig, build_notifier
from .rate_limit import RateLimiter
from .reconciler import Reconciler, SyncReport, SyncState, artifact_requests
from .storage import RecordStore

__all__ = [
    "ArticleRecord",
    "VersionInfo",
    "EventKind",
    "NotificationEvent",
    "SyncConfig",
    "RecordStore",
    "RateLimiter",
    "OaiFeedClient",
    "Reconciler",
    "SyncReport",
    "SyncState",
    "artifact_requests",
    "FilterExpression",
    "compile_filter",
    "evaluate",
    "NotificationGenerator",
    "NotificationConfig",
    "build_notifier",
    "parse_bibtex",
    "check_citations",
    "check_file",
    "bookmark_citations",
    "AppConfig",
    "load_config",
    # Errors
    "ArxivReaderError",
    "BadResumptionToken",
    "ConfigError",
    "FilterSyntaxError",
    "NetworkError",
    "ProtocolError",
    "RateLimited",
    "StorageError",
    "UserInputError",
]
