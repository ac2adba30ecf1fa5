"""End-to-end tests for the command line interface."""

import json
from dataclasses import replace
from datetime import datetime, timezone

import pytest

from arxiv_reader import cli
from arxiv_reader.models import FeedEntry, FeedPage, VersionInfo
from arxiv_reader.notifier import NotificationError


def _entry(article_id, title="Graph Networks", versions=1):
    return FeedEntry(
        id=article_id,
        versions=[
            VersionInfo(
                number=n,
                submitted=datetime(2025, 1, n, tzinfo=timezone.utc),
                title=title,
                abstract="Abstract",
                authors=["Alice"],
                categories=["cs.AI"],
                size="100kb",
                source_type="D",
                first_seen="2025-01-10",
            )
            for n in range(1, versions + 1)
        ],
    )


class FakeFeed:
    pages = []

    def __init__(self, config, rate_limiter, session=None):
        self.calls = []

    def fetch(self, category, watermark):
        self.calls.append((category, watermark))
        return FakeFeed.pages.pop(0)

    def restart_watermark(self, watermark):
        return None


@pytest.fixture
def data_dir(tmp_path, monkeypatch):
    monkeypatch.setattr(cli, "OaiFeedClient", FakeFeed)
    path = tmp_path / "data"
    assert cli.main(["--data-dir", str(path), "init"]) == 0
    return path


def run(data_dir, *args):
    return cli.main(["--data-dir", str(data_dir), *args])


def test_init_writes_config(data_dir, capsys):
    assert (data_dir / "config.yaml").exists()
    assert (data_dir / "db.sqlite").exists()
    assert run(data_dir, "init") == 0
    assert "0 articles" in capsys.readouterr().out


def test_missing_config_is_an_error(tmp_path, capsys):
    assert cli.main(["--data-dir", str(tmp_path / "nowhere"), "news"]) == 1
    assert "Config file not found" in capsys.readouterr().err


def test_pull_then_news(data_dir, capsys):
    FakeFeed.pages = [
        FeedPage([_entry("2501.00001"), _entry("2501.00002", title="Sparse Models")], "w1", False)
    ]
    assert run(data_dir, "pull", "--no-hooks") == 0

    capsys.readouterr()
    assert run(data_dir, "news") == 0
    out = capsys.readouterr().out
    assert "New article 2501.00001: Graph Networks" in out
    assert "Sparse Models" in out

    assert run(data_dir, "news") == 0
    assert "No new articles or updates." in capsys.readouterr().out


def test_news_no_ack_keeps_events(data_dir, capsys):
    FakeFeed.pages = [FeedPage([_entry("2501.00001")], "w1", False)]
    run(data_dir, "pull")
    capsys.readouterr()

    run(data_dir, "news", "--no-ack")
    run(data_dir, "news", "--no-ack")
    assert capsys.readouterr().out.count("New article 2501.00001") == 2


def test_bookmark_find_and_artifacts(data_dir, capsys):
    FakeFeed.pages = [
        FeedPage([_entry("2501.00001", versions=2), _entry("2501.00002", title="Other")], "w1", False)
    ]
    run(data_dir, "pull")
    capsys.readouterr()

    assert run(data_dir, "bookmark", "arXiv:2501.00001v1") == 0
    assert run(data_dir, "note", "2501.00001", "read", "later") == 0
    assert run(data_dir, "find", "bookmarked", "note:later") == 0
    out = capsys.readouterr().out
    assert "* 2501.00001v2  Graph Networks" in out
    assert "2501.00002" not in out

    assert run(data_dir, "artifacts") == 0
    assert capsys.readouterr().out.split() == [
        "https://arxiv.org/pdf/2501.00001v2",
        "https://arxiv.org/src/2501.00001v2",
    ]


def test_bookmark_unknown_and_invalid(data_dir, capsys):
    assert run(data_dir, "bookmark", "2501.09999") == 1
    assert "not found" in capsys.readouterr().err
    assert run(data_dir, "bookmark", "not an id") == 1


def test_find_with_bad_filter(data_dir, capsys):
    assert run(data_dir, "find", "title:") == 1
    assert "missing value" in capsys.readouterr().err


def test_bibtex_check(data_dir, tmp_path, capsys):
    FakeFeed.pages = [FeedPage([_entry("2501.00001", versions=2)], "w1", False)]
    run(data_dir, "pull")
    bib = tmp_path / "refs.bib"
    bib.write_text("@article{a, eprint = {2501.00001v1}, archiveprefix = {arXiv}}", encoding="utf-8")
    capsys.readouterr()

    assert run(data_dir, "bibtex", "check", str(bib)) == 1
    assert "newer version 2" in capsys.readouterr().out

    assert run(data_dir, "bibtex", "bookmark", str(bib)) == 0
    assert "Bookmarked 2501.00001" in capsys.readouterr().out


def test_db_dump_and_load(data_dir, tmp_path, capsys):
    FakeFeed.pages = [FeedPage([_entry("2501.00001")], "w1", False)]
    run(data_dir, "pull")

    dump = tmp_path / "dump.json"
    assert run(data_dir, "db", "dump", str(dump)) == 0
    data = json.loads(dump.read_text(encoding="utf-8"))
    assert [a["id"] for a in data["articles"]] == ["2501.00001"]
    assert data["cursors"] == {"cs.AI": "w1"}

    other = tmp_path / "other"
    assert cli.main(["--data-dir", str(other), "init"]) == 0
    assert cli.main(["--data-dir", str(other), "db", "load", str(dump)]) == 0
    assert "Loaded 1 articles" in capsys.readouterr().out
    assert cli.main(["--data-dir", str(other), "db", "load"]) == 2


def test_pull_runs_push_hook_unless_disabled(data_dir):
    config = (data_dir / "config.yaml").read_text(encoding="utf-8")
    config = config.replace("  push: null", "  push: touch pushed")
    (data_dir / "config.yaml").write_text(config, encoding="utf-8")

    FakeFeed.pages = [FeedPage([], "w1", False)]
    assert run(data_dir, "pull") == 0
    assert (data_dir / "pushed").exists()

    (data_dir / "pushed").unlink()
    FakeFeed.pages = [FeedPage([_entry("2501.00001")], "w2", False)]
    assert run(data_dir, "pull", "--no-hooks") == 0
    assert not (data_dir / "pushed").exists()


def test_find_sort_by_date(data_dir, capsys):
    older = _entry("2501.00002", title="Older")
    older.versions[0] = replace(
        older.versions[0], submitted=datetime(2024, 12, 1, tzinfo=timezone.utc)
    )
    FakeFeed.pages = [FeedPage([_entry("2501.00001"), older], "w1", False)]
    run(data_dir, "pull", "--no-hooks")
    capsys.readouterr()

    assert run(data_dir, "find", "true", "--sort-by", "date") == 0
    assert [line.split()[0] for line in capsys.readouterr().out.splitlines()] == [
        "2501.00002v1",
        "2501.00001v1",
    ]

    assert run(data_dir, "find", "true", "--limit", "1") == 0
    assert capsys.readouterr().out.split()[0] == "2501.00001v1"


def test_pull_redelivers_events_after_failed_delivery(data_dir, monkeypatch):
    delivered = []

    class FlakySink:
        failures = 1

        def send(self, events):
            if FlakySink.failures:
                FlakySink.failures -= 1
                raise NotificationError("webhook down")
            delivered.extend(event.article_id for event in events)

    monkeypatch.setattr(cli, "build_notifier", lambda config: FlakySink())
    FakeFeed.pages = [
        FeedPage([_entry("2501.00001")], "w1", False),
        FeedPage([_entry("2501.00001")], "w1", False),
        FeedPage([], "w1", False),
    ]

    assert run(data_dir, "pull", "--no-hooks") == 0
    assert delivered == []

    assert run(data_dir, "pull", "--no-hooks") == 0
    assert delivered == ["2501.00001"]

    assert run(data_dir, "pull", "--no-hooks") == 0
    assert delivered == ["2501.00001"]
