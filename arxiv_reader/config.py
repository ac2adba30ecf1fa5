"""Configuration loading (YAML) and secret resolution.

Credentials can be kept out of ``config.yaml`` by naming an environment
variable or a local file that holds them.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .errors import ConfigError, FilterSyntaxError
from .filter import FilterExpression, compile_filter
from .models import SyncConfig
from .notifier import NotificationConfig

logger = logging.getLogger(__name__)

DATA_DIR_ENV = "ARXIV_READER_DIR"
CONFIG_FILE_NAME = "config.yaml"
DB_FILE_NAME = "db.sqlite"

DEFAULT_CONFIG = """\
# arxiv-reader configuration

# Categories to keep in sync, in the order they are fetched and reported.
categories:
  - cs.AI

filters:
  # Which new articles to report.
  new: "category:cs.AI"
  # Optional extra condition for updates of bookmarked articles.
  update: null

sync:
  base_url: https://oaipmh.arxiv.org/oai
  max_workers: 2
  min_request_interval: 3.0
  max_retries: 4
  backoff_base: 5.0
  backoff_max: 120.0
  timeout: 60

notification:
  enabled: false
  provider: console        # console | telegram | feishu
  max_items: 50
  use_rich_format: true
  telegram:
    bot_token_env: TELEGRAM_BOT_TOKEN
    chat_id: null
  feishu:
    webhook_url_env: FEISHU_WEBHOOK_URL
    secret_env: FEISHU_SECRET

# Shell commands run around a pull, e.g. to commit the data directory.
hooks:
  pre_pull: null
  push: null

logging:
  level: INFO
  log_file: null
  console_output: true
"""


@dataclass
class HooksConfig:
    pre_pull: Optional[str] = None
    push: Optional[str] = None


@dataclass
class LoggingConfig:
    level: str = "INFO"
    log_file: Optional[str] = None
    console_output: bool = True


@dataclass
class AppConfig:
    """Fully validated application configuration."""

    data_dir: Path
    categories: List[str] = field(default_factory=list)
    new_filter_text: str = "false"
    update_filter_text: Optional[str] = None
    new_filter: FilterExpression = field(default_factory=lambda: compile_filter("false"))
    update_filter: Optional[FilterExpression] = None
    sync: SyncConfig = field(default_factory=SyncConfig)
    notification: NotificationConfig = field(default_factory=NotificationConfig)
    hooks: HooksConfig = field(default_factory=HooksConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @property
    def db_path(self) -> Path:
        return self.data_dir / DB_FILE_NAME


def resolve_data_dir(explicit: Optional[str] = None) -> Path:
    """Data directory from the argument, then $ARXIV_READER_DIR, then ~/arxiv-reader."""
    if explicit:
        return Path(explicit).expanduser()
    env = os.getenv(DATA_DIR_ENV)
    if env:
        return Path(env).expanduser()
    return Path.home() / "arxiv-reader"


def read_secret_file(path: str) -> str:
    """Read a secret from a local file without logging its content."""
    p = Path(path).expanduser()
    try:
        return p.read_text(encoding="utf-8").strip()
    except OSError:
        # Avoid leaking absolute paths via exception messages.
        raise ConfigError(f"Failed to read secret file: {p.name}")


def resolve_secret(
    *,
    value: Optional[str] = None,
    env: Optional[str] = None,
    file_path: Optional[str] = None,
    required: bool = True,
    name: str = "secret",
) -> Optional[str]:
    """Resolve a secret from an explicit value, an env var, or a file (in that order)."""
    if value and str(value).strip():
        return str(value).strip()

    if env:
        resolved = (os.getenv(env) or "").strip()
        if resolved:
            return resolved

    if file_path:
        resolved = read_secret_file(file_path)
        if resolved:
            return resolved

    if required:
        hint = []
        if env:
            hint.append(f"env={env}")
        if file_path:
            hint.append(f"file={Path(file_path).name}")
        hint_str = f" ({', '.join(hint)})" if hint else ""
        raise ConfigError(f"Missing required {name}{hint_str}")
    return None


def _section(raw: Dict[str, Any], name: str) -> Dict[str, Any]:
    value = raw.get(name) or {}
    if not isinstance(value, dict):
        raise ConfigError(f"'{name}' must be a mapping")
    return value


def _build_sync(section: Dict[str, Any]) -> SyncConfig:
    known = {f.name: f for f in fields(SyncConfig)}
    unknown = set(section) - set(known)
    if unknown:
        raise ConfigError(f"Unknown sync options: {', '.join(sorted(unknown))}")

    defaults = SyncConfig()
    values = {}
    for name, value in section.items():
        target_type = type(getattr(defaults, name))
        try:
            values[name] = target_type(value)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"sync.{name}: {e}") from e
    config = SyncConfig(**values)

    if config.max_workers < 1:
        raise ConfigError("sync.max_workers must be at least 1")
    if config.max_retries < 0:
        raise ConfigError("sync.max_retries must not be negative")
    for name in ("min_request_interval", "backoff_base", "backoff_max", "timeout"):
        if getattr(config, name) < 0:
            raise ConfigError(f"sync.{name} must not be negative")
    return config


def _build_notification(section: Dict[str, Any]) -> NotificationConfig:
    try:
        max_items = int(section.get("max_items", 50))
    except (TypeError, ValueError) as e:
        raise ConfigError(f"notification.max_items: {e}") from e
    if max_items < 1:
        raise ConfigError("notification.max_items must be at least 1")
    config = NotificationConfig(
        enabled=bool(section.get("enabled", False)),
        provider=str(section.get("provider") or "console").lower(),
        max_items=max_items,
        use_rich_format=bool(section.get("use_rich_format", True)),
    )
    if not config.enabled:
        return config

    if config.provider == "telegram":
        telegram = _section(section, "telegram")
        config.telegram_bot_token = resolve_secret(
            value=telegram.get("bot_token"),
            env=telegram.get("bot_token_env"),
            file_path=telegram.get("bot_token_file"),
            name="telegram bot_token",
        )
        config.telegram_chat_id = resolve_secret(
            value=telegram.get("chat_id"),
            env=telegram.get("chat_id_env"),
            name="telegram chat_id",
        )
    elif config.provider == "feishu":
        feishu = _section(section, "feishu")
        config.feishu_webhook = resolve_secret(
            value=feishu.get("webhook_url"),
            env=feishu.get("webhook_url_env"),
            file_path=feishu.get("webhook_url_file"),
            name="feishu webhook_url",
        )
        config.feishu_secret = resolve_secret(
            value=feishu.get("secret"),
            env=feishu.get("secret_env"),
            file_path=feishu.get("secret_file"),
            required=False,
            name="feishu secret",
        )
    elif config.provider != "console":
        raise ConfigError(f"Unknown notification provider: {config.provider}")
    return config


def _compile(text: str, name: str) -> FilterExpression:
    try:
        return compile_filter(text)
    except FilterSyntaxError as e:
        raise ConfigError(f"filters.{name}: {e}") from e


def parse_config(raw: Any, data_dir: Path) -> AppConfig:
    """Validate a parsed YAML document and build the AppConfig."""
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigError("configuration must be a mapping")

    categories = raw.get("categories") or []
    if not isinstance(categories, list) or not all(isinstance(c, str) and c.strip() for c in categories):
        raise ConfigError("'categories' must be a list of category names")
    categories = [c.strip() for c in categories]

    filters = _section(raw, "filters")
    default_new = " or ".join(f"category:{c}" for c in categories) or "false"
    new_text = str(filters.get("new") or default_new)
    update_text = filters.get("update")
    update_text = str(update_text) if update_text else None

    hooks = _section(raw, "hooks")
    log_section = _section(raw, "logging")
    level = str(log_section.get("level", "INFO")).upper()
    if not isinstance(logging.getLevelName(level), int):
        raise ConfigError(f"logging.level: unknown level {level!r}")

    return AppConfig(
        data_dir=data_dir,
        categories=categories,
        new_filter_text=new_text,
        update_filter_text=update_text,
        new_filter=_compile(new_text, "new"),
        update_filter=_compile(update_text, "update") if update_text else None,
        sync=_build_sync(_section(raw, "sync")),
        notification=_build_notification(_section(raw, "notification")),
        hooks=HooksConfig(pre_pull=hooks.get("pre_pull"), push=hooks.get("push")),
        logging=LoggingConfig(
            level=level,
            log_file=log_section.get("log_file"),
            console_output=bool(log_section.get("console_output", True)),
        ),
    )


def load_config(data_dir: Path, config_path: Optional[Path] = None) -> AppConfig:
    """
    Load configuration from YAML file.

    Args:
        data_dir: Data directory holding the database
        config_path: Config file (default: ``<data_dir>/config.yaml``)

    Returns:
        AppConfig

    Raises:
        ConfigError: if the file is missing or invalid
    """
    path = Path(config_path) if config_path else Path(data_dir) / CONFIG_FILE_NAME
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f)
    except FileNotFoundError as e:
        raise ConfigError(f"Config file not found: {path} (run 'arxiv-reader init')") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    return parse_config(raw, Path(data_dir))


def write_default_config(data_dir: Path) -> Path:
    """Create ``config.yaml`` in the data directory unless it already exists."""
    data_dir = Path(data_dir)
    data_dir.mkdir(parents=True, exist_ok=True)
    path = data_dir / CONFIG_FILE_NAME
    if path.exists():
        logger.info(f"Config already exists: {path}")
        return path
    path.write_text(DEFAULT_CONFIG, encoding="utf-8")
    logger.info(f"Wrote default config to {path}")
    return path
