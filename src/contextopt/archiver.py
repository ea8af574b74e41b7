"""Lossless section archives.

An archived section is cut from the context file and replaced with a stub:
its heading, a blank line and a reference line pointing at the archive::

    ## Q1 2023 Planning

    > **Archived:** See `.claude/archives/CLAUDE-q1-2023-planning-1b2c3d4e.md` (40 lines, ~2000 tokens)

The archive keeps the verbatim section text, so restoring is an exact inverse.
"""

import hashlib
import re
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .classifier import ClassifiedSection
from .parser import Section, parse, split_lines

ARCHIVE_DIR = ".claude/archives"
MAX_SLUG_LENGTH = 50
SUMMARY_BULLETS = 15

SLUG_PATTERN = re.compile(r"[^a-z0-9]+")
REFERENCE_PATTERN = re.compile(r"^> \*\*Archived:\*\* See `([^`]+)`")
BULLET_PATTERN = re.compile(r"^\s*[-*+]\s+(?:\[[ xX]\]\s+)?(.+?)\s*$")


class ArchiveError(LookupError):
    """Raised when an archive reference cannot be found in the content."""


def slugify(name: str) -> str:
    slug = SLUG_PATTERN.sub("-", name.lower()).strip("-")
    return slug[:MAX_SLUG_LENGTH].rstrip("-") or "section"


def archive_ref(section_name: str) -> str:
    """Stable relative path of the archive for a section name.

    The hash keeps names that slugify alike apart; no date is included so
    planning the same document twice yields the same refs.
    """
    digest = hashlib.sha256(section_name.encode("utf-8")).hexdigest()[:8]
    return f"{ARCHIVE_DIR}/CLAUDE-{slugify(section_name)}-{digest}.md"


def reference_line(ref: str, lines: int, tokens: int) -> str:
    return f"> **Archived:** See `{ref}` ({lines} lines, ~{tokens} tokens)"


def archive_stub(section: Section, ref: str) -> str:
    """Text that replaces an archived section, in the section's line-ending style."""
    newline = "\r\n" if section.text.split("\n", 1)[0].endswith("\r") else "\n"
    line = reference_line(ref, section.line_count, section.tokens)
    heading = section.heading_line
    if not heading:
        return f"{line}{newline}"
    if not heading.endswith("\n"):
        heading += newline
    return f"{heading}{newline}{line}{newline}"


def summarize_section(section: Section, max_bullets: int = SUMMARY_BULLETS) -> str:
    """Bullet points of the section, for the archive file header."""
    bullets = []
    for line in split_lines(section.body):
        match = BULLET_PATTERN.match(line.rstrip("\r\n"))
        if match:
            bullets.append(f"- {match.group(1)}")
        if len(bullets) >= max_bullets:
            break
    bullets.append(f"*Original: {section.line_count} lines, ~{section.tokens} tokens*")
    return "\n".join(bullets)


@dataclass(frozen=True)
class ArchiveContent:
    """A write-once record of an archived section."""

    source_file: str
    archive_file: str
    archive_ref: str
    section_name: str
    category: str
    original_lines: int
    original_tokens: int
    reason: str
    archived_at: datetime
    archived_content: str
    summary: str = ""

    def to_markdown(self) -> str:
        """Render the archive file: metadata table, summary, original content."""
        lines = [
            f"# Archive: {self.section_name}",
            "",
            "---",
            "",
            "## Metadata",
            "",
            "| Field | Value |",
            "|-------|-------|",
            f"| Source | {self.source_file} |",
            f"| Section | {self.section_name} |",
            f"| Type | {self.category} |",
            f"| Archived | {self.archived_at.isoformat()} |",
            f"| Original Lines | {self.original_lines} |",
            f"| Original Tokens | ~{self.original_tokens} |",
            f"| Reason | {self.reason} |",
            "",
            "---",
            "",
            "## Summary",
            "",
            self.summary,
            "",
            "---",
            "",
            "## Original Content",
            "",
            self.archived_content,
        ]
        return "\n".join(lines)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["archived_at"] = self.archived_at.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ArchiveContent":
        data = dict(data)
        if isinstance(data["archived_at"], str):
            data["archived_at"] = datetime.fromisoformat(data["archived_at"])
        return cls(**data)


def create_archive(
    classified: ClassifiedSection,
    project_path: str | Path,
    reason: str,
    archived_at: datetime | None = None,
    source_name: str = "CLAUDE.md",
) -> ArchiveContent:
    """Build the archive record for a section. Does not touch the filesystem."""
    section = classified.section
    ref = archive_ref(section.name)
    project = Path(project_path)
    return ArchiveContent(
        source_file=str(project / source_name),
        archive_file=str(project / ref),
        archive_ref=ref,
        section_name=section.name,
        category=classified.category,
        original_lines=section.line_count,
        original_tokens=section.tokens,
        reason=reason,
        archived_at=archived_at or datetime.now(timezone.utc),
        archived_content=section.text,
        summary=summarize_section(section),
    )


@dataclass(frozen=True)
class ArchiveReference:
    archive_ref: str
    line: int  # 0-based
    section_name: str | None


def find_archive_references(content: str) -> list[ArchiveReference]:
    """Locate archive stubs left in a context file."""
    document = parse(content)
    refs = []
    for line_no, line in enumerate(split_lines(document.content)):
        match = REFERENCE_PATTERN.match(line)
        if not match:
            continue
        owner = next((s.name for s in document.sections if s.contains_line(line_no)), None)
        refs.append(ArchiveReference(archive_ref=match.group(1), line=line_no, section_name=owner))
    return refs


def restore_archive(content: str, archive: ArchiveContent) -> str:
    """Put an archived section back in place of its stub.

    Raises ArchiveError if no section in content references the archive.
    """
    document = parse(content)
    for section in document.sections:
        for line in split_lines(section.text):
            match = REFERENCE_PATTERN.match(line)
            if match and match.group(1) == archive.archive_ref:
                return "".join(
                    archive.archived_content if s.index == section.index else s.text
                    for s in document.sections
                )
    raise ArchiveError(f"No reference to {archive.archive_ref} found")


def archive_stats(archives: list[ArchiveContent]) -> dict[str, Any]:
    by_reason: dict[str, int] = {}
    for archive in archives:
        by_reason[archive.reason] = by_reason.get(archive.reason, 0) + 1
    total_lines = sum(a.original_lines for a in archives)
    return {
        "total_archives": len(archives),
        "total_lines": total_lines,
        "total_tokens": sum(a.original_tokens for a in archives),
        "avg_lines_per_archive": round(total_lines / len(archives)) if archives else 0,
        "by_reason": by_reason,
    }
