"""Tests for the context file parser and token estimation."""

from datetime import date

import pytest

from contextopt.parser import (
    PREAMBLE,
    ParseError,
    extract_dates,
    fence_mask,
    fence_spans,
    fenced_blocks,
    find_section,
    parse,
    parse_heading,
    section_stats,
    split_lines,
)
from contextopt.tokens import CharRatioEstimator, estimate_tokens


class TestTokenEstimation:
    def test_ceil_of_chars_over_four(self):
        assert estimate_tokens("") == 0
        assert estimate_tokens("abcd") == 1
        assert estimate_tokens("abcde") == 2

    def test_custom_ratio_and_version(self):
        estimator = CharRatioEstimator(chars_per_token=2)
        assert estimator.count("abcde") == 3
        assert estimator.version == "chars/2-v1"

    def test_document_records_estimator(self):
        assert parse("# A\n").estimator == "chars/4-v1"


class TestSplitLines:
    def test_keeps_endings(self):
        assert split_lines("a\r\nb\nc") == ["a\r\n", "b\n", "c"]

    def test_trailing_newline(self):
        assert split_lines("a\n") == ["a\n"]

    def test_empty(self):
        assert split_lines("") == []


class TestHeadings:
    def test_levels(self):
        assert parse_heading("# Top") == (1, "Top")
        assert parse_heading("###### Deep") == (6, "Deep")

    def test_closing_hashes_stripped(self):
        assert parse_heading("## Title ##") == (2, "Title")

    def test_requires_space(self):
        assert parse_heading("#NoSpace") is None
        assert parse_heading("####### Seven") is None

    def test_crlf(self):
        assert parse_heading("## Windows\r\n") == (2, "Windows")


class TestParse:
    def test_round_trip(self):
        content = "intro line\n# A\nbody\n\n## B\r\nx\r\n### C\ntrailing without newline"
        document = parse(content)
        assert "".join(s.text for s in document.sections) == content

    def test_preamble_and_names(self):
        document = parse("intro\n# A\nbody\n## B\nmore\n")
        assert [s.name for s in document.sections] == [PREAMBLE, "A", "B"]
        assert document.sections[0].is_preamble
        assert document.sections[1].level == 1
        assert document.sections[2].level == 2

    def test_no_preamble_when_heading_first(self):
        document = parse("# A\nbody\n")
        assert [s.name for s in document.sections] == ["A"]

    def test_line_ranges(self):
        document = parse("# A\none\ntwo\n# B\nthree\n")
        a, b = document.sections
        assert (a.start_line, a.end_line, a.line_count) == (0, 3, 3)
        assert (b.start_line, b.end_line) == (3, 5)
        assert document.total_lines == 5

    def test_heading_line_and_body(self):
        section = parse("## Setup\nrun it\n").sections[0]
        assert section.heading_line == "## Setup\n"
        assert section.body == "run it\n"

    def test_empty_content(self):
        document = parse("")
        assert document.sections == ()
        assert document.total_lines == 0
        assert document.total_tokens == 0

    def test_headings_inside_fences_ignored(self):
        content = "# A\n```bash\n# just a comment\n```\n~~~\n## also code\n~~~\n# B\n"
        document = parse(content)
        assert [s.name for s in document.sections] == ["A", "B"]

    def test_duplicate_names_made_unique(self):
        document = parse("# Notes\na\n# Notes\nb\n# Notes\nc\n")
        assert [s.name for s in document.sections] == ["Notes", "Notes (2)", "Notes (3)"]
        assert all(s.title == "Notes" for s in document.sections)

    def test_suffixed_name_does_not_collide_with_literal_title(self):
        document = parse("## Notes\na\n## Notes\nb\n## Notes (2)\nc\n")
        names = [s.name for s in document.sections]
        assert names == ["Notes", "Notes (2)", "Notes (2) (2)"]
        assert len(set(names)) == len(names)
        assert document.section("Notes (2)").body == "b\n"

    def test_literal_title_first_pushes_suffix_along(self):
        document = parse("## Notes (2)\na\n## Notes\nb\n## Notes\nc\n")
        assert [s.name for s in document.sections] == ["Notes (2)", "Notes", "Notes (3)"]

    def test_fence_with_info_string_does_not_close(self):
        content = "# A\n```\n```bash\n# not a heading\n```\n# B\n"
        assert [s.name for s in parse(content).sections] == ["A", "B"]

    def test_token_counts(self):
        document = parse("# A\n" + "x" * 36 + "\n")
        assert document.sections[0].tokens == 11  # 41 chars
        assert document.total_tokens == 11

    def test_bytes_decoded(self):
        document = parse("# Café\n".encode("utf-8"))
        assert document.sections[0].name == "Café"

    def test_undecodable_bytes(self):
        with pytest.raises(ParseError):
            parse(b"\xff\xfe\xfa")

    def test_nul_characters(self):
        with pytest.raises(ParseError):
            parse("# A\n\x00\x01")

    def test_non_text(self):
        with pytest.raises(ParseError):
            parse(12345)

    def test_parse_error_is_value_error(self):
        assert issubclass(ParseError, ValueError)


class TestDates:
    def test_formats(self):
        mentions = extract_dates(
            "Released 2024-01-15 and March 2024\n"
            "Q1 2023 plan, 02/30/2024 is not a date\n"
            "Jan 5, 2025 and 12/01/2024\n"
        )
        assert [m.text for m in mentions] == [
            "2024-01-15",
            "March 2024",
            "Q1 2023",
            "Jan 5, 2025",
            "12/01/2024",
        ]
        assert [m.line for m in mentions] == [0, 0, 1, 2, 2]
        assert [m.value for m in mentions] == [
            date(2024, 1, 15),
            date(2024, 3, 31),
            date(2023, 3, 31),
            date(2025, 1, 5),
            date(2024, 12, 1),
        ]

    def test_written_date_not_double_counted(self):
        mentions = extract_dates("Shipped on January 15, 2025.\n")
        assert [m.text for m in mentions] == ["January 15, 2025"]

    def test_invalid_iso_ignored(self):
        assert extract_dates("2023-13-45") == []

    def test_document_dates(self):
        document = parse("# A\n2024-01-01\n# B\nnothing\n")
        assert document.date_strings == ["2024-01-01"]
        a, b = document.sections
        assert len(document.dates_in(a)) == 1
        assert document.dates_in(b) == []


class TestHelpers:
    def test_find_section_case_insensitive(self):
        document = parse("# Active Work\na\n## Q1 2023 Planning\nb\n")
        assert find_section(document, "planning").name == "Q1 2023 Planning"
        assert find_section(document, "missing") is None

    def test_exact_lookup(self):
        document = parse("# Active Work\na\n")
        assert document.section("Active Work") is not None
        assert document.section("active work") is None

    def test_section_stats(self):
        document = parse("# A\n1\n2\n3\n# B\n1\n")
        stats = section_stats(document)
        assert stats["total_sections"] == 2
        assert stats["total_lines"] == 6
        assert stats["largest_section"] == "A"
        assert stats["smallest_section"] == "B"

    def test_section_stats_empty(self):
        assert section_stats(parse(""))["total_sections"] == 0


class TestFences:
    def test_spans(self):
        lines = ["a\n", "```py\n", "x\n", "```\n", "b\n", "~~~~\n", "y\n"]
        assert fence_spans(lines) == [(1, 4), (5, 7)]
        assert fence_mask(lines) == [False, True, True, True, False, True, True]

    def test_closing_fence_must_be_bare(self):
        lines = ["```\n", "```bash\n", "echo 1\n", "```\n", "after\n"]
        assert fence_spans(lines) == [(0, 4)]

    def test_closing_fence_same_char_and_long_enough(self):
        lines = ["````\n", "```\n", "~~~~\n", "`````  \r\n", "after\n"]
        assert fence_spans(lines) == [(0, 4)]

    def test_fenced_blocks(self):
        text = "intro\n```bash\necho 1\n```bash\necho 2\n```\nafter\n"
        assert fenced_blocks(text) == ["```bash\necho 1\n```bash\necho 2\n```\n"]
        assert fenced_blocks("no code here\n") == []
