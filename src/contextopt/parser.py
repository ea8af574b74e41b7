"""Context file parser.

Splits a markdown context file into heading-delimited sections and extracts
date mentions. Sections keep their raw text, original line endings included,
so concatenating them in order reproduces the input exactly.
"""

import calendar
import re
from dataclasses import dataclass
from datetime import date
from typing import Any

from .tokens import DEFAULT_ESTIMATOR, TokenEstimator

PREAMBLE = "(preamble)"

HEADING_PATTERN = re.compile(r"^ {0,3}(#{1,6})[ \t]+(\S.*?)[ \t]*$")
CLOSING_HASHES_PATTERN = re.compile(r"(?:^|[ \t]+)#+$")
FENCE_PATTERN = re.compile(r"^ {0,3}(`{3,}|~{3,})")
# A closing fence carries no info string.
CLOSING_FENCE_PATTERN = re.compile(r"^ {0,3}(`{3,}|~{3,})[ \t]*\r?\n?$")

_MONTHS = (
    r"(Jan(?:uary)?|Feb(?:ruary)?|Mar(?:ch)?|Apr(?:il)?|May|June?|July?|Aug(?:ust)?"
    r"|Sep(?:t(?:ember)?)?|Oct(?:ober)?|Nov(?:ember)?|Dec(?:ember)?)"
)
MONTH_NUMBERS = {
    "jan": 1,
    "feb": 2,
    "mar": 3,
    "apr": 4,
    "may": 5,
    "jun": 6,
    "jul": 7,
    "aug": 8,
    "sep": 9,
    "oct": 10,
    "nov": 11,
    "dec": 12,
}

# Order matters: full dates claim their span before partial forms are tried.
ISO_DATE_PATTERN = re.compile(r"\b(\d{4})-(\d{2})-(\d{2})\b")
WRITTEN_DATE_PATTERN = re.compile(
    rf"\b{_MONTHS}\.?\s+(\d{{1,2}})(?:st|nd|rd|th)?,?\s+(\d{{4}})\b"
)
NUMERIC_DATE_PATTERN = re.compile(r"\b(\d{1,2})([/-])(\d{1,2})\2(\d{4})\b")
MONTH_YEAR_PATTERN = re.compile(rf"\b{_MONTHS}\.?,?\s+(\d{{4}})\b")
QUARTER_PATTERN = re.compile(r"\bQ([1-4])[ \t/-]?(\d{4})\b")

MIN_YEAR = 1970
MAX_YEAR = 2100


class ParseError(ValueError):
    """Raised when content is not decodable text."""


@dataclass(frozen=True)
class DateMention:
    """A date-like substring found in the content."""

    text: str
    line: int  # 0-based line index
    value: date  # latest day the mention covers


@dataclass(frozen=True)
class Section:
    """A contiguous span of the document delimited by headings."""

    name: str
    title: str
    level: int  # heading depth, 0 for the preamble
    index: int
    start_line: int
    end_line: int  # exclusive
    text: str
    tokens: int

    @property
    def line_count(self) -> int:
        return self.end_line - self.start_line

    @property
    def is_preamble(self) -> bool:
        return self.level == 0

    @property
    def heading_line(self) -> str:
        """The heading line including its line ending ('' for the preamble)."""
        if self.is_preamble:
            return ""
        newline = self.text.find("\n")
        return self.text if newline == -1 else self.text[: newline + 1]

    @property
    def body(self) -> str:
        return self.text[len(self.heading_line) :]

    def contains_line(self, line: int) -> bool:
        return self.start_line <= line < self.end_line


@dataclass(frozen=True)
class Document:
    """A parsed context file. Derived fresh on every parse, never mutated."""

    content: str
    total_lines: int
    total_tokens: int
    sections: tuple[Section, ...]
    stale_dates: tuple[DateMention, ...]
    estimator: str

    @property
    def date_strings(self) -> list[str]:
        return [mention.text for mention in self.stale_dates]

    def section(self, name: str) -> Section | None:
        """Get a section by exact name."""
        for section in self.sections:
            if section.name == name:
                return section
        return None

    def dates_in(self, section: Section) -> list[DateMention]:
        return [m for m in self.stale_dates if section.contains_line(m.line)]


def split_lines(content: str) -> list[str]:
    """Split on newlines, keeping each line's ending ('\\r\\n' survives)."""
    if not content:
        return []
    lines = content.split("\n")
    result = [line + "\n" for line in lines[:-1]]
    if lines[-1]:
        result.append(lines[-1])
    return result


def fence_spans(lines: list[str]) -> list[tuple[int, int]]:
    """(start, end) line spans of fenced code blocks, fences included.

    A block closes on a bare fence of the same character that is at least as
    long as the opening one. An unclosed block runs to the end of the lines.
    Every module that needs to know what is code goes through here.
    """
    spans = []
    fence: str | None = None
    start = 0
    for i, line in enumerate(lines):
        if fence is None:
            match = FENCE_PATTERN.match(line)
            if match:
                fence, start = match.group(1), i
            continue
        closing = CLOSING_FENCE_PATTERN.match(line)
        if closing and closing.group(1)[0] == fence[0] and len(closing.group(1)) >= len(fence):
            spans.append((start, i + 1))
            fence = None
    if fence is not None:
        spans.append((start, len(lines)))
    return spans


def fence_mask(lines: list[str]) -> list[bool]:
    """True for lines that belong to a fenced code block, fences included."""
    mask = [False] * len(lines)
    for start, end in fence_spans(lines):
        mask[start:end] = [True] * (end - start)
    return mask


def fenced_blocks(text: str) -> list[str]:
    """The raw text of each fenced code block in text, fences included."""
    lines = split_lines(text)
    return ["".join(lines[start:end]) for start, end in fence_spans(lines)]


def _decode(content: Any) -> str:
    if isinstance(content, bytes | bytearray):
        try:
            content = bytes(content).decode("utf-8")
        except UnicodeDecodeError as e:
            raise ParseError(f"Content is not valid UTF-8: {e}") from e
    if not isinstance(content, str):
        raise ParseError(f"Expected text content, got {type(content).__name__}")
    if "\x00" in content:
        raise ParseError("Content contains NUL characters (binary data?)")
    return content


def parse_heading(line: str) -> tuple[int, str] | None:
    """Return (level, title) if line is an ATX heading, else None."""
    match = HEADING_PATTERN.match(line.rstrip("\r\n"))
    if not match:
        return None
    title = CLOSING_HASHES_PATTERN.sub("", match.group(2)).strip()
    if not title:
        return None
    return len(match.group(1)), title


def _last_day(year: int, month: int) -> date:
    return date(year, month, calendar.monthrange(year, month)[1])


def _to_date(pattern: re.Pattern[str], match: re.Match[str]) -> date | None:
    """Convert a match from one of the date patterns to a date."""
    try:
        if pattern is ISO_DATE_PATTERN:
            year, month, day = (int(g) for g in match.groups())
        elif pattern is WRITTEN_DATE_PATTERN:
            month = MONTH_NUMBERS[match.group(1)[:3].lower()]
            day, year = int(match.group(2)), int(match.group(3))
        elif pattern is NUMERIC_DATE_PATTERN:
            month, day, year = int(match.group(1)), int(match.group(3)), int(match.group(4))
        elif pattern is MONTH_YEAR_PATTERN:
            year = int(match.group(2))
            if not MIN_YEAR <= year <= MAX_YEAR:
                return None
            return _last_day(year, MONTH_NUMBERS[match.group(1)[:3].lower()])
        else:
            quarter, year = int(match.group(1)), int(match.group(2))
            if not MIN_YEAR <= year <= MAX_YEAR:
                return None
            return _last_day(year, quarter * 3)
        if not MIN_YEAR <= year <= MAX_YEAR:
            return None
        return date(year, month, day)
    except ValueError:
        # Not a real calendar date (e.g. 2023-02-30)
        return None


def extract_dates(content: str) -> list[DateMention]:
    """Find date-like substrings anywhere in the content.

    Recognizes ISO dates, written dates ("January 15, 2025", "Jan 15 2025"),
    US numeric dates ("01/15/2025"), month-year ("March 2024") and quarters
    ("Q1 2023"). Overlapping matches on a line are reported once.
    """
    mentions: list[DateMention] = []
    patterns = (
        ISO_DATE_PATTERN,
        WRITTEN_DATE_PATTERN,
        NUMERIC_DATE_PATTERN,
        MONTH_YEAR_PATTERN,
        QUARTER_PATTERN,
    )
    for line_no, line in enumerate(split_lines(content)):
        claimed: list[tuple[int, int]] = []
        found: list[tuple[int, DateMention]] = []
        for pattern in patterns:
            for match in pattern.finditer(line):
                start, end = match.span()
                if any(start < c_end and c_start < end for c_start, c_end in claimed):
                    continue
                value = _to_date(pattern, match)
                if value is None:
                    continue
                claimed.append((start, end))
                found.append((start, DateMention(text=match.group(0), line=line_no, value=value)))
        mentions.extend(mention for _, mention in sorted(found, key=lambda f: f[0]))
    return mentions


def parse(content: str | bytes, estimator: TokenEstimator | None = None) -> Document:
    """Parse raw content into a Document.

    Raises ParseError if content is not decodable text. Empty content parses to
    a document with zero sections.
    """
    text = _decode(content)
    estimator = estimator or DEFAULT_ESTIMATOR
    lines = split_lines(text)

    # (start_line, level, title) for each section boundary
    boundaries: list[tuple[int, int, str]] = []
    for i, (line, in_code) in enumerate(zip(lines, fence_mask(lines))):
        if in_code:
            continue
        heading = parse_heading(line)
        if heading:
            boundaries.append((i, heading[0], heading[1]))

    if lines and (not boundaries or boundaries[0][0] > 0):
        boundaries.insert(0, (0, 0, PREAMBLE))

    sections: list[Section] = []
    used: set[str] = set()
    for idx, (start, level, title) in enumerate(boundaries):
        end = boundaries[idx + 1][0] if idx + 1 < len(boundaries) else len(lines)
        # A suffixed name can collide with a literal title ("Notes (2)").
        name = title
        n = 1
        while name in used:
            n += 1
            name = f"{title} ({n})"
        used.add(name)
        section_text = "".join(lines[start:end])
        sections.append(
            Section(
                name=name,
                title=title,
                level=level,
                index=idx,
                start_line=start,
                end_line=end,
                text=section_text,
                tokens=estimator.count(section_text),
            )
        )

    return Document(
        content=text,
        total_lines=len(lines),
        total_tokens=estimator.count(text),
        sections=tuple(sections),
        stale_dates=tuple(extract_dates(text)),
        estimator=estimator.version,
    )


def find_section(document: Document, name: str) -> Section | None:
    """Get the first section whose name contains name (case-insensitive)."""
    needle = name.lower()
    for section in document.sections:
        if needle in section.name.lower():
            return section
    return None


def section_stats(document: Document) -> dict[str, Any]:
    """Summary statistics over a document's sections."""
    sections = document.sections
    if not sections:
        return {
            "total_sections": 0,
            "total_lines": 0,
            "total_tokens": 0,
            "avg_lines_per_section": 0,
            "avg_tokens_per_section": 0,
            "largest_section": None,
            "smallest_section": None,
        }
    by_size = sorted(sections, key=lambda s: (-s.line_count, s.index))
    total_lines = sum(s.line_count for s in sections)
    total_tokens = sum(s.tokens for s in sections)
    return {
        "total_sections": len(sections),
        "total_lines": total_lines,
        "total_tokens": total_tokens,
        "avg_lines_per_section": round(total_lines / len(sections)),
        "avg_tokens_per_section": round(total_tokens / len(sections)),
        "largest_section": by_size[0].name,
        "smallest_section": by_size[-1].name,
    }
