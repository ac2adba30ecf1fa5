"""Repository hygiene checks."""

from pathlib import Path

import yaml

from arxiv_reader.config import DEFAULT_CONFIG

ROOT = Path(__file__).resolve().parents[1]


def test_no_hardcoded_api_keys_in_source_tree():
    banned_prefixes = ("sk" + "-", "xox" + "b-")
    scan_suffixes = {".py", ".md", ".yaml", ".yml", ".json", ".toml"}
    ignored_parts = {".git", "__pycache__", ".pytest_cache"}

    offenders = []
    for path in ROOT.rglob("*"):
        if not path.is_file() or path.suffix not in scan_suffixes:
            continue
        if any(part in ignored_parts for part in path.parts):
            continue

        text = path.read_text(encoding="utf-8", errors="ignore")
        if any(prefix in text for prefix in banned_prefixes):
            offenders.append(path.relative_to(ROOT).as_posix())

    assert not offenders, f"Hardcoded key-like content found in: {offenders}"


def test_default_config_only_references_secrets():
    notification = yaml.safe_load(DEFAULT_CONFIG)["notification"]
    assert "bot_token" not in notification["telegram"]
    assert "webhook_url" not in notification["feishu"]
    assert "secret" not in notification["feishu"]
