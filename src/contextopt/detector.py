"""Heuristic issue detection.

Finds token waste in classified sections independently of the rule engine:
- outdated: historical sections worth archiving
- bloat: sections far larger (or denser) than the rest of the document
- duplicate: sections whose text is mostly contained in another section
- verbose: low information density (filler phrases, repeated sentence starts)
- stale_dates: many stale date mentions in a live section (flag only)
- excessive_examples: too many fenced code blocks
"""

import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Literal

import numpy as np

from .classifier import ClassifiedSection
from .config import EngineConfig
from .parser import DateMention, fence_mask, fenced_blocks, split_lines

Severity = Literal["high", "medium", "low"]
ActionKind = Literal["archive", "trim", "remove"]

SEVERITY_ORDER: dict[str, int] = {"high": 0, "medium": 1, "low": 2}

OUTDATED = "outdated"
BLOAT = "bloat"
DUPLICATE = "duplicate"
VERBOSE = "verbose"
STALE_DATES = "stale_dates"
EXCESSIVE_EXAMPLES = "excessive_examples"

OUTDATED_BY_DATE_CONFIDENCE = 0.95
BLOAT_CONFIDENCE = 0.6
ABSOLUTE_BLOAT_CONFIDENCE = 0.75
STALE_DATES_CONFIDENCE = 0.85
EXAMPLES_CONFIDENCE = 0.8
KEPT_EXAMPLES = 2

FILLER_PHRASES = (
    "it is important to note that",
    "it should be noted that",
    "for all intents and purposes",
    "at this point in time",
    "due to the fact that",
    "in order to",
    "please note that",
    "note that",
    "as mentioned above",
    "as mentioned before",
    "as previously mentioned",
    "needless to say",
    "basically",
    "essentially",
    "actually",
    "really",
    "very",
    "just",
    "simply",
    "kind of",
    "sort of",
    "a lot of",
    "obviously",
    "of course",
)
FILLER_PATTERN = re.compile(
    r"\b(?:" + "|".join(re.escape(p) for p in FILLER_PHRASES) + r")\b,?", re.IGNORECASE
)
SENTENCE_SPLIT_PATTERN = re.compile(r"(?<=[.!?])\s+|\n+")
NORMALIZE_PATTERN = re.compile(r"[a-z0-9]+")


@dataclass(frozen=True)
class DetectedIssue:
    """An opportunity to reduce token usage. Never mutated after creation."""

    type: str
    severity: Severity
    section_name: str
    description: str
    suggested_action: str
    estimated_savings: int
    confidence: float
    action: ActionKind | None = None  # None for flag-only issues
    source: str = "heuristic"
    details: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        # Read-only copy; the caller's dict stays theirs.
        object.__setattr__(self, "details", MappingProxyType(dict(self.details)))


def severity_for(
    savings: int, total_tokens: int, confidence: float, config: EngineConfig | None = None
) -> Severity:
    """Severity from savings relative to document size, tempered by confidence."""
    config = config or EngineConfig()
    share = savings / total_tokens if total_tokens > 0 else 0.0
    level = 2
    if savings > 0:
        if share >= config.high_severity_share or savings >= config.high_severity_tokens:
            level = 0
        elif share >= config.medium_severity_share or savings >= config.medium_severity_tokens:
            level = 1
    if confidence < 0.5:
        level = min(2, level + 1)
    return ("high", "medium", "low")[level]


def clamp_savings(savings: float, c: ClassifiedSection) -> int:
    """Round savings into [0, section tokens]."""
    return max(0, min(int(round(savings)), c.section.tokens))


def _issue(
    c: ClassifiedSection,
    issue_type: str,
    savings: float,
    confidence: float,
    action: ActionKind | None,
    description: str,
    suggested_action: str,
    total_tokens: int,
    config: EngineConfig,
    **details: Any,
) -> DetectedIssue:
    estimated = clamp_savings(savings, c)
    confidence = round(min(1.0, max(0.0, confidence)), 3)
    return DetectedIssue(
        type=issue_type,
        severity=severity_for(estimated, total_tokens, confidence, config),
        section_name=c.name,
        description=description,
        suggested_action=suggested_action,
        estimated_savings=estimated,
        confidence=confidence,
        action=action,
        details={"category": c.category, "tokens": c.section.tokens, **details},
    )


def detect_outdated(
    classified: list[ClassifiedSection], total_tokens: int, config: EngineConfig
) -> list[DetectedIssue]:
    issues = []
    for c in classified:
        if c.category != "historical" or c.section.tokens < config.outdated_min_tokens:
            continue
        confidence = OUTDATED_BY_DATE_CONFIDENCE if c.stale_by_dates else c.confidence
        issues.append(
            _issue(
                c,
                OUTDATED,
                c.section.tokens - config.retained_summary_tokens,
                confidence,
                "archive",
                f'Section "{c.name}" is historical ({c.section.line_count} lines, '
                f"~{c.section.tokens} tokens)",
                "Archive to a separate file and keep a reference",
                total_tokens,
                config,
                cues=list(c.cues),
            )
        )
    return issues


def detect_bloat(
    classified: list[ClassifiedSection],
    total_tokens: int,
    config: EngineConfig,
    skip: set[str],
) -> list[DetectedIssue]:
    issues = []
    tokens = np.array([c.section.tokens for c in classified], dtype=float)
    for i, c in enumerate(classified):
        if c.name in skip:
            continue
        others = np.delete(tokens, i)
        if others.size:
            limit = max(config.bloat_min_tokens, config.bloat_factor * float(np.median(others)))
            limit = min(limit, config.bloat_max_tokens)
        else:
            limit = config.bloat_max_tokens
        size_excess = c.section.tokens - limit

        density_excess = 0.0
        lines = c.section.line_count
        per_line = c.section.tokens / lines if lines else 0.0
        if per_line > config.dense_line_tokens and c.section.tokens >= config.bloat_min_tokens:
            density_excess = c.section.tokens - lines * config.dense_line_tokens

        savings = max(size_excess, density_excess)
        if savings <= 0:
            continue
        confidence = (
            ABSOLUTE_BLOAT_CONFIDENCE
            if c.section.tokens > config.bloat_max_tokens
            else BLOAT_CONFIDENCE
        )
        issues.append(
            _issue(
                c,
                BLOAT,
                savings,
                confidence,
                "trim",
                f'Section "{c.name}" is ~{c.section.tokens} tokens, '
                f"above the {int(limit)}-token limit for this document",
                "Condense content or split into focused sub-sections",
                total_tokens,
                config,
                limit=int(limit),
                tokens_per_line=round(per_line, 1),
            )
        )
    return issues


def shingles(text: str, size: int) -> set[tuple[str, ...]]:
    """Word n-grams over normalized (lowercase alphanumeric) text."""
    words = NORMALIZE_PATTERN.findall(text.lower())
    return {tuple(words[i : i + size]) for i in range(len(words) - size + 1)}


def containment_matrix(shingle_sets: list[set[tuple[str, ...]]]) -> np.ndarray:
    """Pairwise |A & B| / min(|A|, |B|) via an inverted shingle index.

    Memory is O(n^2) for the result plus the postings; shingles held by a
    single section never touch the overlap matrix.
    """
    n = len(shingle_sets)
    postings: dict[tuple[str, ...], list[int]] = {}
    for row, s in enumerate(shingle_sets):
        for sh in s:
            postings.setdefault(sh, []).append(row)
    overlap = np.zeros((n, n))
    for rows in postings.values():
        if len(rows) > 1:
            idx = np.array(rows)
            overlap[np.ix_(idx, idx)] += 1
    sizes = np.array([len(s) for s in shingle_sets], dtype=float)
    smaller = np.minimum.outer(sizes, sizes)
    with np.errstate(divide="ignore", invalid="ignore"):
        result = np.where(smaller > 0, overlap / smaller, 0.0)
    np.fill_diagonal(result, 0.0)
    return result


def detect_duplicates(
    classified: list[ClassifiedSection], total_tokens: int, config: EngineConfig
) -> list[DetectedIssue]:
    """Flag only the lower-priority copy (smaller, or later on ties) of each pair."""
    sets = [shingles(c.section.body, config.shingle_size) for c in classified]
    eligible = [len(s) >= config.duplicate_min_shingles for s in sets]
    similarity = containment_matrix(sets)

    # victim index -> (similarity, kept index)
    victims: dict[int, tuple[float, int]] = {}
    n = len(classified)
    for i in range(n):
        for j in range(i + 1, n):
            if not (eligible[i] and eligible[j]):
                continue
            score = float(similarity[i, j])
            if score < config.duplicate_similarity:
                continue
            # j is later; it loses unless it is strictly larger
            if classified[j].section.tokens > classified[i].section.tokens:
                victim, kept = i, j
            else:
                victim, kept = j, i
            if victim not in victims or score > victims[victim][0]:
                victims[victim] = (score, kept)

    issues = []
    for victim in sorted(victims):
        score, kept = victims[victim]
        c = classified[victim]
        confirmed = score >= config.confirmed_duplicate_similarity
        issues.append(
            _issue(
                c,
                DUPLICATE,
                c.section.tokens,
                score,
                "remove" if confirmed else "archive",
                f'Section "{c.name}" repeats {round(score * 100)}% of '
                f'"{classified[kept].name}"',
                "Remove the duplicate copy"
                if confirmed
                else "Archive the near-duplicate copy",
                total_tokens,
                config,
                duplicate_of=classified[kept].name,
                similarity=round(score, 3),
            )
        )
    return issues


def strip_code(text: str) -> str:
    lines = split_lines(text)
    return "".join(line for line, in_code in zip(lines, fence_mask(lines)) if not in_code)


def filler_density(text: str) -> float:
    """Fraction of words that belong to filler phrases."""
    words = NORMALIZE_PATTERN.findall(text.lower())
    if not words:
        return 0.0
    filler_words = sum(len(m.group(0).split()) for m in FILLER_PATTERN.finditer(text))
    return filler_words / len(words)


def repeated_start_ratio(text: str, min_sentences: int = 5) -> float:
    """Share of sentences whose first two words already started another sentence."""
    starts = []
    for sentence in SENTENCE_SPLIT_PATTERN.split(text):
        words = NORMALIZE_PATTERN.findall(sentence.lower())
        if len(words) >= 3:
            starts.append(tuple(words[:2]))
    if len(starts) < min_sentences:
        return 0.0
    return (len(starts) - len(set(starts))) / len(starts)


def detect_verbose(
    classified: list[ClassifiedSection],
    total_tokens: int,
    config: EngineConfig,
    skip: set[str],
) -> list[DetectedIssue]:
    issues = []
    for c in classified:
        if c.name in skip or c.section.tokens < config.verbose_min_tokens:
            continue
        prose = strip_code(c.section.body)
        filler = filler_density(prose)
        repeated = repeated_start_ratio(prose)
        filler_hit = filler >= config.verbose_filler_density
        repeated_hit = repeated >= config.verbose_repeated_starts
        if not (filler_hit or repeated_hit):
            continue
        strength = max(filler / (3 * config.verbose_filler_density), repeated)
        ratio = config.verbose_min_ratio + (
            config.verbose_max_ratio - config.verbose_min_ratio
        ) * min(1.0, strength)
        confidence = 0.65 if filler_hit and repeated_hit else 0.5
        issues.append(
            _issue(
                c,
                VERBOSE,
                c.section.tokens * ratio,
                confidence,
                "trim",
                f'Section "{c.name}" has low information density '
                f"(filler {filler:.0%}, repeated starts {repeated:.0%})",
                "Condense wording and remove filler",
                total_tokens,
                config,
                filler_density=round(filler, 3),
                repeated_starts=round(repeated, 3),
            )
        )
    return issues


def detect_stale_dates(
    classified: list[ClassifiedSection],
    stale_dates: list[DateMention],
    total_tokens: int,
    config: EngineConfig,
) -> list[DetectedIssue]:
    today = config.reference_date()
    issues = []
    for c in classified:
        if c.category == "historical":
            continue
        stale = [
            m
            for m in stale_dates
            if c.section.contains_line(m.line) and (today - m.value).days > config.freshness_days
        ]
        if len(stale) < config.stale_dates_count:
            continue
        avg_age = round(sum((today - m.value).days for m in stale) / len(stale))
        issues.append(
            _issue(
                c,
                STALE_DATES,
                0,
                STALE_DATES_CONFIDENCE,
                None,
                f'Section "{c.name}" contains {len(stale)} outdated date references '
                f"(avg {avg_age} days old)",
                "Review and update stale date references",
                total_tokens,
                config,
                examples=[m.text for m in stale[:3]],
                avg_days_old=avg_age,
            )
        )
    return issues


def detect_excessive_examples(
    classified: list[ClassifiedSection],
    total_tokens: int,
    config: EngineConfig,
    skip: set[str],
) -> list[DetectedIssue]:
    issues = []
    for c in classified:
        if c.name in skip:
            continue
        blocks = fenced_blocks(c.section.body)
        if len(blocks) <= config.max_code_blocks:
            continue
        block_tokens = c.section.tokens * sum(len(b) for b in blocks) / max(1, len(c.section.text))
        avg_tokens = block_tokens / len(blocks)
        issues.append(
            _issue(
                c,
                EXCESSIVE_EXAMPLES,
                avg_tokens * (len(blocks) - KEPT_EXAMPLES),
                EXAMPLES_CONFIDENCE,
                "trim",
                f'Section "{c.name}" has {len(blocks)} code examples (~{round(block_tokens)} tokens)',
                f"Keep {KEPT_EXAMPLES} representative examples; move the rest to documentation",
                total_tokens,
                config,
                example_count=len(blocks),
            )
        )
    return issues


def detect_issues(
    classified: list[ClassifiedSection],
    stale_dates: list[DateMention] | tuple[DateMention, ...] = (),
    config: EngineConfig | None = None,
) -> list[DetectedIssue]:
    """Run every heuristic detector.

    Returns issues sorted by severity (high first), then estimated savings.
    """
    config = config or EngineConfig()
    total_tokens = sum(c.section.tokens for c in classified)

    outdated = detect_outdated(classified, total_tokens, config)
    # Archiving subsumes trimming
    archived = {issue.section_name for issue in outdated}
    issues = [
        *outdated,
        *detect_bloat(classified, total_tokens, config, archived),
        *detect_duplicates(classified, total_tokens, config),
        *detect_verbose(classified, total_tokens, config, archived),
        *detect_stale_dates(classified, list(stale_dates), total_tokens, config),
        *detect_excessive_examples(classified, total_tokens, config, archived),
    ]
    return sort_issues(issues)


def sort_issues(issues: list[DetectedIssue]) -> list[DetectedIssue]:
    return sorted(issues, key=lambda i: (SEVERITY_ORDER[i.severity], -i.estimated_savings))


def issues_by_type(issues: list[DetectedIssue], issue_type: str) -> list[DetectedIssue]:
    return [i for i in issues if i.type == issue_type]


def issues_by_severity(issues: list[DetectedIssue], severity: Severity) -> list[DetectedIssue]:
    return [i for i in issues if i.severity == severity]


def total_estimated_savings(issues: list[DetectedIssue]) -> int:
    return sum(i.estimated_savings for i in issues)


def issue_stats(issues: list[DetectedIssue]) -> dict[str, Any]:
    """Counts by severity and type, total savings, mean confidence."""
    by_severity = {"high": 0, "medium": 0, "low": 0}
    by_type: dict[str, int] = {}
    for issue in issues:
        by_severity[issue.severity] += 1
        by_type[issue.type] = by_type.get(issue.type, 0) + 1
    return {
        "total": len(issues),
        "by_severity": by_severity,
        "by_type": by_type,
        "total_savings": total_estimated_savings(issues),
        "avg_confidence": sum(i.confidence for i in issues) / len(issues) if issues else 0.0,
    }
