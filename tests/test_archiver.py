"""Tests for section archives."""

from datetime import date, datetime, timezone

import pytest

from contextopt.archiver import (
    ARCHIVE_DIR,
    ArchiveContent,
    ArchiveError,
    archive_ref,
    archive_stats,
    archive_stub,
    create_archive,
    find_archive_references,
    restore_archive,
    slugify,
    summarize_section,
)
from contextopt.classifier import classify
from contextopt.config import EngineConfig
from contextopt.parser import parse

CONFIG = EngineConfig(today=date(2025, 6, 1))
ARCHIVED_AT = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)
CONTENT = (
    "# Project\n"
    "Intro.\n"
    "## Q1 2023 Planning\n"
    "- [x] Ship the parser\n"
    "- [x] Write docs\n"
    "Reviewed 2023-03-01.\n"
    "## Commands\n"
    "make test\n"
)


def planning_archive():
    document = parse(CONTENT)
    classified = classify(document.sections, document.stale_dates, CONFIG)
    return create_archive(classified[1], "/work/repo", "outdated", archived_at=ARCHIVED_AT)


def archived_content(archive):
    section = parse(CONTENT).sections[1]
    return CONTENT.replace(section.text, archive_stub(section, archive.archive_ref))


class TestArchiveRef:
    def test_slugify(self):
        assert slugify("Q1 2023 Planning!") == "q1-2023-planning"
        assert slugify("???") == "section"
        assert len(slugify("x" * 80)) == 50

    def test_stable_and_distinct(self):
        assert archive_ref("Q1 Planning") == archive_ref("Q1 Planning")
        assert archive_ref("Q1 Planning") != archive_ref("Q1 planning")
        assert archive_ref("Q1 Planning").startswith(f"{ARCHIVE_DIR}/CLAUDE-q1-planning-")
        assert archive_ref("Q1 Planning").endswith(".md")


class TestStub:
    def test_heading_kept(self):
        section = parse(CONTENT).sections[1]
        stub = archive_stub(section, "ref.md")
        assert stub == (
            "## Q1 2023 Planning\n\n> **Archived:** See `ref.md` (4 lines, ~20 tokens)\n"
        )

    def test_preamble_has_no_heading(self):
        section = parse("loose text\n# A\n").sections[0]
        assert archive_stub(section, "ref.md").startswith("> **Archived:**")

    def test_summary_bullets(self):
        section = parse(CONTENT).sections[1]
        summary = summarize_section(section)
        assert summary.splitlines() == [
            "- Ship the parser",
            "- Write docs",
            "*Original: 4 lines, ~20 tokens*",
        ]


class TestCreateArchive:
    def test_fields(self):
        archive = planning_archive()
        assert archive.section_name == "Q1 2023 Planning"
        assert archive.category == "historical"
        assert archive.archive_ref == archive_ref("Q1 2023 Planning")
        assert archive.archive_file == f"/work/repo/{archive.archive_ref}"
        assert archive.source_file == "/work/repo/CLAUDE.md"
        assert archive.original_lines == 4
        assert archive.archived_content == parse(CONTENT).sections[1].text

    def test_markdown(self):
        markdown = planning_archive().to_markdown()
        assert markdown.startswith("# Archive: Q1 2023 Planning\n")
        assert "| Reason | outdated |" in markdown
        assert "| Archived | 2025-06-01T12:00:00+00:00 |" in markdown
        assert markdown.endswith("## Original Content\n\n" + parse(CONTENT).sections[1].text)

    def test_dict_round_trip(self):
        archive = planning_archive()
        data = archive.to_dict()
        assert data["archived_at"] == "2025-06-01T12:00:00+00:00"
        assert ArchiveContent.from_dict(data) == archive


class TestRestore:
    def test_restore_is_inverse(self):
        archive = planning_archive()
        assert restore_archive(archived_content(archive), archive) == CONTENT

    def test_other_sections_untouched(self):
        archive = planning_archive()
        restored = restore_archive(archived_content(archive) + "## Extra\nnew\n", archive)
        assert restored == CONTENT + "## Extra\nnew\n"

    def test_missing_reference(self):
        with pytest.raises(ArchiveError):
            restore_archive(CONTENT, planning_archive())

    def test_archive_error_is_lookup_error(self):
        assert issubclass(ArchiveError, LookupError)


class TestReferences:
    def test_find(self):
        archive = planning_archive()
        (ref,) = find_archive_references(archived_content(archive))
        assert ref.archive_ref == archive.archive_ref
        assert ref.line == 4
        assert ref.section_name == "Q1 2023 Planning"

    def test_none(self):
        assert find_archive_references(CONTENT) == []


class TestStats:
    def test_counts(self):
        archive = planning_archive()
        stats = archive_stats([archive, archive])
        assert stats["total_archives"] == 2
        assert stats["total_lines"] == 8
        assert stats["avg_lines_per_archive"] == 4
        assert stats["by_reason"] == {"outdated": 2}

    def test_empty(self):
        assert archive_stats([])["avg_lines_per_archive"] == 0
