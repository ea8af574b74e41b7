"""Section classifier.

Assigns each section a category (active, historical, reference, unknown).
Each signal is a named predicate returning the cues it found, so every
classification can be explained and each cue tested on its own.

Precedence:
1. Completion marker in the heading -> historical
2. Forward-looking markers or a recent date -> active
3. Reference-style heading with little temporal language -> reference
4. All dates stale, or completion markers in the body -> historical
5. Otherwise unknown
"""

import re
from collections import Counter
from dataclasses import dataclass
from datetime import date
from typing import Literal

from .config import EngineConfig
from .parser import DateMention, Section

Category = Literal["active", "historical", "reference", "unknown"]
CATEGORIES: tuple[Category, ...] = ("active", "historical", "reference", "unknown")

HEADING_COMPLETION_PATTERN = re.compile(
    r"\b(done|completed?|archived?|resolved|finished|shipped)\b", re.IGNORECASE
)
# Status-style markers only; prose like "what needs to be done" does not count
BODY_COMPLETION_PATTERN = re.compile(
    r"(?:^|[\s*|:(\-])(DONE|Done|COMPLETED|Completed|Archived|ARCHIVED|Resolved|RESOLVED)\b"
    r"|^\s*[-*+]\s+\[[xX]\]"
    r"|✅",
    re.MULTILINE,
)
FORWARD_PATTERNS: dict[str, re.Pattern[str]] = {
    "TODO": re.compile(r"\bTODO\b"),
    "FIXME": re.compile(r"\bFIXME\b"),
    "WIP": re.compile(r"\bWIP\b"),
    "in progress": re.compile(r"\bin[ -]progress\b", re.IGNORECASE),
    "next steps": re.compile(r"\bnext steps?\b", re.IGNORECASE),
    "upcoming": re.compile(r"\bupcoming\b", re.IGNORECASE),
    "open checkbox": re.compile(r"^\s*[-*+]\s+\[ \]", re.MULTILINE),
}
REFERENCE_HEADING_PATTERN = re.compile(
    r"\b(api|reference|glossary|appendix|architecture|conventions?|commands?"
    r"|tech(?:nology)? stack|overview|faq)\b",
    re.IGNORECASE,
)
TEMPORAL_WORDS = frozenset(
    {
        "today",
        "yesterday",
        "tomorrow",
        "currently",
        "now",
        "recently",
        "recent",
        "lately",
        "soon",
        "week",
        "sprint",
        "deadline",
        "yet",
        "planned",
        "scheduled",
        "eta",
    }
)
WORD_PATTERN = re.compile(r"[A-Za-z']+")

# Base confidence per cue kind
HEADING_COMPLETION_CONFIDENCE = 0.9
STALE_DATES_CONFIDENCE = 0.95
BODY_COMPLETION_CONFIDENCE = 0.7
FORWARD_CONFIDENCE = 0.8
RECENT_DATE_CONFIDENCE = 0.85
REFERENCE_CONFIDENCE = 0.75
EXTRA_CUE_BONUS = 0.05


@dataclass(frozen=True)
class ClassifiedSection:
    """A section with its category and the cues that produced it."""

    section: Section
    category: Category
    cues: tuple[str, ...]
    confidence: float
    date_ages: tuple[int, ...] = ()

    @property
    def name(self) -> str:
        return self.section.name

    @property
    def stale_by_dates(self) -> bool:
        """True when the classification came from the date threshold."""
        return any(cue.startswith("stale dates") for cue in self.cues)


def completion_heading_cues(section: Section) -> list[str]:
    return [
        f"heading marker '{m.group(1)}'" for m in HEADING_COMPLETION_PATTERN.finditer(section.title)
    ]


def completion_body_cues(section: Section) -> list[str]:
    found = []
    for match in BODY_COMPLETION_PATTERN.finditer(section.body):
        marker = match.group(1) or ("[x]" if "[" in match.group(0) else "✅")
        cue = f"completion marker '{marker}'"
        if cue not in found:
            found.append(cue)
    return found


def forward_cues(section: Section) -> list[str]:
    text = section.text
    return [f"forward marker '{label}'" for label, p in FORWARD_PATTERNS.items() if p.search(text)]


def date_ages(dates: list[DateMention], today: date) -> list[int]:
    return [(today - mention.value).days for mention in dates]


def recency_cues(ages: list[int], freshness_days: int) -> list[str]:
    recent = [age for age in ages if age <= freshness_days]
    if not recent:
        return []
    return [f"recent date ({min(recent)} days old)"]


def staleness_cues(ages: list[int], freshness_days: int) -> list[str]:
    if not ages or any(age <= freshness_days for age in ages):
        return []
    return [f"stale dates ({len(ages)} older than {freshness_days} days, newest {min(ages)})"]


def temporal_density(text: str) -> float:
    """Fraction of words that are temporal language."""
    words = [w.lower() for w in WORD_PATTERN.findall(text)]
    if not words:
        return 0.0
    counts = Counter(words)
    return sum(counts[w] for w in TEMPORAL_WORDS) / len(words)


def reference_cues(section: Section, max_density: float, has_dates: bool) -> list[str]:
    match = REFERENCE_HEADING_PATTERN.search(section.title)
    if not match or has_dates:
        return []
    density = temporal_density(section.body)
    if density > max_density:
        return []
    return [f"reference heading '{match.group(1)}'", f"temporal density {density:.3f}"]


def _confidence(base: float, cue_count: int) -> float:
    return round(min(1.0, base + EXTRA_CUE_BONUS * max(0, cue_count - 1)), 3)


def classify_section(
    section: Section,
    dates: list[DateMention],
    config: EngineConfig | None = None,
) -> ClassifiedSection:
    """Classify one section from its own text and the dates inside it."""
    config = config or EngineConfig()
    ages = date_ages(dates, config.reference_date())
    freshness = config.freshness_days

    def result(category: Category, cues: list[str], base: float) -> ClassifiedSection:
        return ClassifiedSection(
            section=section,
            category=category,
            cues=tuple(cues),
            confidence=_confidence(base, len(cues)),
            date_ages=tuple(ages),
        )

    heading_done = completion_heading_cues(section)
    if heading_done:
        return result("historical", heading_done, HEADING_COMPLETION_CONFIDENCE)

    forward = forward_cues(section)
    recent = recency_cues(ages, freshness)
    if forward or recent:
        base = RECENT_DATE_CONFIDENCE if recent and not forward else FORWARD_CONFIDENCE
        return result("active", forward + recent, base)

    reference = reference_cues(section, config.reference_max_temporal_density, bool(ages))
    if reference:
        return result("reference", reference, REFERENCE_CONFIDENCE)

    stale = staleness_cues(ages, freshness)
    body_done = completion_body_cues(section)
    if stale:
        return result("historical", stale + body_done, STALE_DATES_CONFIDENCE)
    if body_done:
        return result("historical", body_done, BODY_COMPLETION_CONFIDENCE)

    return ClassifiedSection(
        section=section,
        category="unknown",
        cues=(),
        confidence=0.0,
        date_ages=tuple(ages),
    )


def classify(
    sections: tuple[Section, ...] | list[Section],
    stale_dates: tuple[DateMention, ...] | list[DateMention],
    config: EngineConfig | None = None,
) -> list[ClassifiedSection]:
    """Classify every section.

    Sections are classified independently; they only share the document-level
    date list, from which each takes the mentions inside its own line range.
    """
    config = config or EngineConfig()
    return [
        classify_section(section, [m for m in stale_dates if section.contains_line(m.line)], config)
        for section in sections
    ]


def classification_stats(classified: list[ClassifiedSection]) -> dict[str, object]:
    """Counts per category and mean confidence."""
    by_category = {category: 0 for category in CATEGORIES}
    for c in classified:
        by_category[c.category] += 1
    avg_confidence = (
        sum(c.confidence for c in classified) / len(classified) if classified else 0.0
    )
    return {"by_category": by_category, "avg_confidence": avg_confidence}
