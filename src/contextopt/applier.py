"""Plan application.

Applies a plan to raw content and measures the result. Sections the plan does
not touch are copied byte for byte.
"""

import logging
import re
from dataclasses import dataclass, field

from .archiver import archive_ref, archive_stub
from .config import EngineConfig
from .detector import FILLER_PATTERN, ActionKind
from .parser import Section, fence_mask, fence_spans, parse, split_lines
from .planner import OptimizationPlan, PlannedAction, Skipped
from .tokens import DEFAULT_ESTIMATOR, TokenEstimator

logger = logging.getLogger("contextopt.applier")

MULTI_SPACE_PATTERN = re.compile(r"[ \t]{2,}")


@dataclass(frozen=True)
class AppliedAction:
    section_name: str
    kind: ActionKind
    reason: str
    lines_before: int
    lines_after: int
    tokens_before: int
    tokens_after: int
    archive_ref: str | None = None

    @property
    def tokens_saved(self) -> int:
        return self.tokens_before - self.tokens_after


@dataclass(frozen=True)
class OptimizationStats:
    original_lines: int
    new_lines: int
    original_tokens: int
    new_tokens: int
    lines_removed: int
    tokens_saved: int
    reduction_percent: float


@dataclass(frozen=True)
class OptimizationResult:
    new_content: str
    applied: tuple[AppliedAction, ...]
    stats: OptimizationStats
    skipped: tuple[Skipped, ...] = field(default_factory=tuple)


def _split_ending(line: str) -> tuple[str, str]:
    stripped = line.rstrip("\r\n")
    return stripped, line[len(stripped) :]


def collapse_whitespace(lines: list[str]) -> list[str]:
    """Strip trailing spaces and squeeze blank runs, outside code blocks."""
    result: list[str] = []
    previous_blank = False
    for line, in_code in zip(lines, fence_mask(lines)):
        if in_code:
            result.append(line)
            previous_blank = False
            continue
        text, ending = _split_ending(line)
        text = text.rstrip()
        if not text:
            if previous_blank:
                continue
            previous_blank = True
        else:
            previous_blank = False
        result.append(text + ending)
    return result


def remove_filler(lines: list[str]) -> list[str]:
    result = []
    for line, in_code in zip(lines, fence_mask(lines)):
        if in_code:
            result.append(line)
            continue
        text, ending = _split_ending(line)
        indent = text[: len(text) - len(text.lstrip(" \t"))]
        rest = MULTI_SPACE_PATTERN.sub(" ", FILLER_PATTERN.sub("", text[len(indent) :])).strip()
        result.append(indent + rest + ending if rest else ending)
    return result


def remove_duplicate_lines(lines: list[str]) -> list[str]:
    result = []
    seen: set[str] = set()
    for line, in_code in zip(lines, fence_mask(lines)):
        key = line.strip()
        if not in_code and key:
            if key in seen:
                continue
            seen.add(key)
        result.append(line)
    return result


def trailing_blocks(lines: list[str]) -> list[tuple[int, int]]:
    """(start, end) spans of droppable units: single lines, or whole fenced blocks."""
    blocks = []
    i = 0
    for start, end in fence_spans(lines):
        blocks.extend((n, n + 1) for n in range(i, start))
        blocks.append((start, end))
        i = end
    blocks.extend((n, n + 1) for n in range(i, len(lines)))
    return blocks


def trim_section(
    section: Section, target: int, estimator: TokenEstimator, config: EngineConfig
) -> str:
    """Shrink a section's body by at most target tokens.

    Edits run cheapest first; each is kept only if the running savings stay
    within target. The heading and trim_min_kept_lines body lines always stay.
    """
    heading = section.heading_line
    body = split_lines(section.body)
    min_lines = min(config.trim_min_kept_lines, len(body))

    def saved(lines: list[str]) -> int:
        return section.tokens - estimator.count(heading + "".join(lines))

    for step in (collapse_whitespace, remove_filler, remove_duplicate_lines):
        candidate = step(body)
        if candidate != body and len(candidate) >= min_lines and 0 <= saved(candidate) <= target:
            body = candidate

    for start, end in reversed(trailing_blocks(body)):
        if start < min_lines:
            break
        candidate = body[:start]
        if saved(candidate) > target:
            break
        body = candidate

    return heading + "".join(body)


def apply_plan(
    plan: OptimizationPlan,
    raw_content: str,
    estimator: TokenEstimator | None = None,
    config: EngineConfig | None = None,
) -> OptimizationResult:
    """Apply plan actions to raw_content.

    Actions naming sections that are not in raw_content are skipped. Output is
    a pure function of (plan, raw_content, estimator, config).
    """
    estimator = estimator or DEFAULT_ESTIMATOR
    config = config or EngineConfig()
    document = parse(raw_content, estimator)

    replacements: dict[int, str] = {}
    applied: list[AppliedAction] = []
    skipped: list[Skipped] = []
    for action in plan.actions:
        section = document.section(action.section_name)
        if section is None:
            logger.warning(f"Skipping {action.kind} for missing section {action.section_name!r}")
            skipped.append(Skipped(action.section_name, "section not in content"))
            continue
        if section.index in replacements:
            skipped.append(Skipped(action.section_name, "section already edited"))
            continue

        new_text = _apply_action(action, section, estimator, config)
        if new_text is None:
            skipped.append(Skipped(action.section_name, f"{action.kind} would not save tokens"))
            continue

        replacements[section.index] = new_text
        ref = None
        if action.kind == "archive":
            ref = action.archive_ref or archive_ref(section.name)
        applied.append(
            AppliedAction(
                section_name=section.name,
                kind=action.kind,
                reason=action.reason,
                lines_before=section.line_count,
                lines_after=len(split_lines(new_text)),
                tokens_before=section.tokens,
                tokens_after=estimator.count(new_text),
                archive_ref=ref,
            )
        )

    new_content = "".join(replacements.get(s.index, s.text) for s in document.sections)
    new_lines = len(split_lines(new_content))
    new_tokens = estimator.count(new_content)
    tokens_saved = document.total_tokens - new_tokens
    stats = OptimizationStats(
        original_lines=document.total_lines,
        new_lines=new_lines,
        original_tokens=document.total_tokens,
        new_tokens=new_tokens,
        lines_removed=document.total_lines - new_lines,
        tokens_saved=tokens_saved,
        reduction_percent=round(tokens_saved / document.total_tokens * 100, 1)
        if document.total_tokens
        else 0.0,
    )
    return OptimizationResult(
        new_content=new_content, applied=tuple(applied), stats=stats, skipped=tuple(skipped)
    )


def _apply_action(
    action: PlannedAction, section: Section, estimator: TokenEstimator, config: EngineConfig
) -> str | None:
    """New section text, or None when the action would not shrink the section."""
    if action.kind == "remove":
        return ""
    if action.kind == "archive":
        stub = archive_stub(section, action.archive_ref or archive_ref(section.name))
        return stub if estimator.count(stub) < section.tokens else None
    trimmed = trim_section(section, action.target_savings, estimator, config)
    return trimmed if trimmed != section.text else None
