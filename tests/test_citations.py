"""Tests for BibTeX citation checking."""

import shutil
import tempfile
import unittest
from datetime import datetime, timezone
from pathlib import Path

from arxiv_reader.citations import (
    bookmark_citations,
    check_citations,
    check_file,
    parse_bibtex,
)
from arxiv_reader.models import ArticleRecord, CitationStatus, VersionInfo
from arxiv_reader.storage import RecordStore


BIBTEX = r"""
@comment{ generated by a reference manager }

@article{smith2025,
  title = {Graph {Neural} Networks},
  author = "Smith, Alice and Jones, Bob",
  eprint = {2501.00001v2},
  archivePrefix = {arXiv},
}

@misc{unknown2025,
  title = {Something},
  url = {https://arxiv.org/abs/2502.09999},
}

@article{published2024,
  title = {Published Work},
  journal = {arXiv preprint arXiv:2501.00002},
  year = 2024
}

@book{knuth1984,
  title = {The TeXbook},
  publisher = {Addison-Wesley},
}

@article{broken2025,
  title = {Missing brace
  eprint = {2501.00003},

@article{jones2025,
  journal = {Journal of Tests},
  doi = {10.1000/xyz},
  eprint = "2501.00002",
}
"""


def _record(article_id, versions=1, journal_ref=None):
    return ArticleRecord(
        id=article_id,
        versions=[
            VersionInfo(
                number=n,
                submitted=datetime(2025, 1, n, tzinfo=timezone.utc),
                title="Title",
                abstract="Abstract",
                authors=["Alice"],
                categories=["cs.AI"],
            )
            for n in range(1, versions + 1)
        ],
        journal_ref=journal_ref,
    )


class TestParseBibtex(unittest.TestCase):
    def setUp(self):
        self.entries, self.problems = parse_bibtex(BIBTEX)
        self.by_key = {entry.key: entry for entry in self.entries}

    def test_only_arxiv_entries_are_kept(self):
        self.assertEqual(
            [entry.key for entry in self.entries],
            ["smith2025", "unknown2025", "published2024", "jones2025"],
        )

    def test_identifier_sources(self):
        self.assertEqual(self.by_key["smith2025"].cited_id, "2501.00001")
        self.assertEqual(self.by_key["smith2025"].cited_version, 2)
        self.assertEqual(self.by_key["unknown2025"].cited_id, "2502.09999")
        self.assertIsNone(self.by_key["unknown2025"].cited_version)
        self.assertEqual(self.by_key["published2024"].cited_id, "2501.00002")

    def test_cited_journal(self):
        self.assertIsNone(self.by_key["published2024"].cited_journal)
        self.assertEqual(self.by_key["jones2025"].cited_journal, "Journal of Tests")

    def test_malformed_entry_is_reported_and_skipped(self):
        self.assertEqual(len(self.problems), 1)
        self.assertEqual(self.problems[0].key, "broken2025")
        self.assertIsNotNone(self.problems[0].line)

    def test_line_numbers(self):
        self.assertEqual(self.by_key["smith2025"].line, 4)

    def test_string_concatenation_and_doi(self):
        entries, problems = parse_bibtex(
            '@misc{x, doi = "10.48550/" # "arXiv.2501.00004v1"}'
        )
        self.assertEqual(problems, [])
        self.assertEqual((entries[0].cited_id, entries[0].cited_version), ("2501.00004", 1))

    def test_old_style_identifier(self):
        entries, _ = parse_bibtex("@article{old, eprint = {hep-th/9901001}}")
        self.assertEqual(entries[0].cited_id, "hep-th/9901001")


class TestCheckCitations(unittest.TestCase):
    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.store = RecordStore(Path(self.temp_dir) / "db.sqlite")
        with self.store.batch() as batch:
            batch.put(_record("2501.00001", versions=3))
            batch.put(_record("2501.00002", journal_ref="Phys. Rev. X 1 (2025)"))

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_statuses(self):
        entries, _ = parse_bibtex(BIBTEX)
        statuses = {r.entry.key: r.status for r in check_citations(self.store, entries)}
        self.assertEqual(
            statuses,
            {
                "smith2025": CitationStatus.STALE_VERSION,
                "unknown2025": CitationStatus.UNKNOWN,
                "published2024": CitationStatus.STALE_JOURNAL_REF,
                "jones2025": CitationStatus.UP_TO_DATE,
            },
        )

    def test_stale_version_report(self):
        entries, _ = parse_bibtex(BIBTEX)
        report = check_citations(self.store, entries)[0]
        self.assertEqual(report.latest_version, 3)
        self.assertIn("newer version 3", report.describe())

    def test_unversioned_citation_of_latest_is_up_to_date(self):
        entries, _ = parse_bibtex("@misc{a, eprint = {2501.00001}, archiveprefix = {arXiv}}")
        self.assertEqual(check_citations(self.store, entries)[0].status, CitationStatus.UP_TO_DATE)

    def test_check_file(self):
        path = Path(self.temp_dir) / "refs.bib"
        path.write_text(BIBTEX, encoding="utf-8")
        check = check_file(self.store, path)
        self.assertEqual(len(check.reports), 4)
        self.assertEqual(len(check.stale), 3)
        self.assertEqual(len(check.problems), 1)

    def test_bookmark_citations(self):
        entries, _ = parse_bibtex(BIBTEX)
        bookmarked, unknown = bookmark_citations(self.store, entries)
        self.assertEqual(bookmarked, ["2501.00001", "2501.00002"])
        self.assertEqual(unknown, ["2502.09999"])
        self.assertTrue(self.store.get("2501.00002").bookmarked)


if __name__ == "__main__":
    unittest.main()
