"""Configurable optimization rules.

Rules are a tagged union over ``rule_type``. Each variant carries its own
typed parameters and is validated when loaded (regexes are compiled, unknown
fields are rejected), so evaluation never has to second-guess configuration.

Usage:
    rules = load_rules([{"rule_type": "size_limit", "id": "big", "name": "Big",
                         "issue_type": "bloat", "max_lines": 300, "action": "trim"}])
    issues = apply_rules(classified, merge_rules(rules, default_rules()))
"""

import json
import logging
import re
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator

from .classifier import Category, ClassifiedSection
from .config import EngineConfig
from .detector import (
    BLOAT,
    DUPLICATE,
    EXCESSIVE_EXAMPLES,
    OUTDATED,
    STALE_DATES,
    DetectedIssue,
    Severity,
    clamp_savings,
    severity_for,
)
from .parser import fenced_blocks

logger = logging.getLogger("contextopt.rules")

RuleAction = Literal["archive", "trim", "remove", "flag"]

ARCHIVE_RATIO = 0.95
DEFAULT_TRIM_RATIO = 0.3


def _check_pattern(value: str | None) -> str | None:
    if value is not None:
        try:
            re.compile(value)
        except re.error as e:
            raise ValueError(f"invalid regex {value!r}: {e}") from e
    return value


class BaseRule(BaseModel):
    """Fields and evaluation shared by every rule type."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    description: str | None = None
    enabled: bool = True
    priority: int = 50
    issue_type: str = Field(..., min_length=1)
    severity: Severity | None = None  # None: derived from savings
    action: RuleAction = "flag"
    confidence: float = Field(0.85, ge=0.0, le=1.0)
    categories: tuple[Category, ...] = ()
    min_lines: int | None = Field(None, ge=0)
    min_tokens: int | None = Field(None, ge=0)
    keep_lines: int | None = Field(None, ge=0)  # trim target in lines

    def applies_to(self, c: ClassifiedSection) -> bool:
        if self.categories and c.category not in self.categories:
            return False
        if self.min_lines is not None and c.section.line_count < self.min_lines:
            return False
        if self.min_tokens is not None and c.section.tokens < self.min_tokens:
            return False
        return True

    def match(self, c: ClassifiedSection, config: EngineConfig) -> dict[str, Any] | None:
        """Return match details, or None when the rule does not fire."""
        return {}

    def estimate_savings(self, c: ClassifiedSection, details: dict[str, Any]) -> float:
        tokens = c.section.tokens
        if self.action == "archive":
            return tokens * ARCHIVE_RATIO
        if self.action == "remove":
            return tokens
        if self.action == "trim":
            if self.keep_lines is not None and c.section.line_count > 0:
                kept = min(self.keep_lines, c.section.line_count)
                return tokens * (c.section.line_count - kept) / c.section.line_count
            return tokens * DEFAULT_TRIM_RATIO
        return 0

    def action_description(self) -> str:
        if self.action == "archive":
            return "Archive to .claude/archives/ and replace with a reference"
        if self.action == "trim":
            if self.keep_lines is not None:
                return f"Condense to about {self.keep_lines} lines"
            return "Condense content"
        if self.action == "remove":
            return "Remove section entirely"
        return self.description or "Flagged for review"

    def evaluate(
        self, c: ClassifiedSection, total_tokens: int, config: EngineConfig
    ) -> DetectedIssue | None:
        if not self.applies_to(c):
            return None
        details = self.match(c, config)
        if details is None:
            return None
        savings = clamp_savings(self.estimate_savings(c, details), c)
        return DetectedIssue(
            type=self.issue_type,
            severity=self.severity or severity_for(savings, total_tokens, self.confidence, config),
            section_name=c.name,
            description=self.description or f'Rule "{self.name}" matched "{c.name}"',
            suggested_action=self.action_description(),
            estimated_savings=savings,
            confidence=self.confidence,
            action=None if self.action == "flag" else self.action,
            source=f"rule:{self.id}",
            details={"rule_id": self.id, "rule_name": self.name, **details},
        )


class HeadingMatchRule(BaseRule):
    """Fires when the heading (and optionally the body) matches a regex."""

    rule_type: Literal["heading_match"] = "heading_match"
    pattern: str
    content_pattern: str | None = None
    ignore_case: bool = True

    _validate_patterns = field_validator("pattern", "content_pattern")(_check_pattern)

    def match(self, c: ClassifiedSection, config: EngineConfig) -> dict[str, Any] | None:
        flags = re.IGNORECASE if self.ignore_case else 0
        heading = re.search(self.pattern, c.section.title, flags)
        if not heading:
            return None
        if self.content_pattern and not re.search(self.content_pattern, c.section.body, flags):
            return None
        return {"matched": heading.group(0)}


class ContentMatchRule(BaseRule):
    """Fires when the body matches a regex at least min_matches times."""

    rule_type: Literal["content_match"] = "content_match"
    pattern: str
    min_matches: int = Field(1, ge=1)
    ignore_case: bool = False

    _validate_pattern = field_validator("pattern")(_check_pattern)

    def match(self, c: ClassifiedSection, config: EngineConfig) -> dict[str, Any] | None:
        flags = re.MULTILINE | (re.IGNORECASE if self.ignore_case else 0)
        count = len(re.findall(self.pattern, c.section.body, flags))
        if count < self.min_matches:
            return None
        return {"matches": count}


class SizeLimitRule(BaseRule):
    """Fires when a section exceeds a line or token limit."""

    rule_type: Literal["size_limit"] = "size_limit"
    max_lines: int | None = Field(None, ge=1)
    max_tokens: int | None = Field(None, ge=1)

    @model_validator(mode="after")
    def _needs_limit(self) -> "SizeLimitRule":
        if self.max_lines is None and self.max_tokens is None:
            raise ValueError("size_limit rule needs max_lines or max_tokens")
        return self

    def match(self, c: ClassifiedSection, config: EngineConfig) -> dict[str, Any] | None:
        over_lines = self.max_lines is not None and c.section.line_count > self.max_lines
        over_tokens = self.max_tokens is not None and c.section.tokens > self.max_tokens
        if not (over_lines or over_tokens):
            return None
        return {"lines": c.section.line_count, "tokens": c.section.tokens}

    def estimate_savings(self, c: ClassifiedSection, details: dict[str, Any]) -> float:
        if self.action != "trim" or self.keep_lines is not None:
            return super().estimate_savings(c, details)
        excess = 0.0
        if self.max_tokens is not None:
            excess = c.section.tokens - self.max_tokens
        if self.max_lines is not None and c.section.line_count:
            excess = max(
                excess,
                c.section.tokens * (c.section.line_count - self.max_lines) / c.section.line_count,
            )
        return max(0.0, excess)


class CategoryRule(BaseRule):
    """Fires for every section in the configured categories."""

    rule_type: Literal["category"] = "category"

    @model_validator(mode="after")
    def _needs_categories(self) -> "CategoryRule":
        if not self.categories:
            raise ValueError("category rule needs at least one category")
        return self


class CodeBlocksRule(BaseRule):
    """Fires when a section holds more than max_blocks fenced code blocks."""

    rule_type: Literal["code_blocks"] = "code_blocks"
    max_blocks: int = Field(5, ge=0)
    keep_blocks: int = Field(2, ge=0)

    def match(self, c: ClassifiedSection, config: EngineConfig) -> dict[str, Any] | None:
        blocks = fenced_blocks(c.section.body)
        if len(blocks) <= self.max_blocks:
            return None
        return {"blocks": len(blocks), "block_chars": sum(len(b) for b in blocks)}

    def estimate_savings(self, c: ClassifiedSection, details: dict[str, Any]) -> float:
        if self.action != "trim":
            return super().estimate_savings(c, details)
        text_chars = max(1, len(c.section.text))
        per_block = c.section.tokens * details["block_chars"] / text_chars / details["blocks"]
        return per_block * max(0, details["blocks"] - self.keep_blocks)


class StaleDatesRule(BaseRule):
    """Fires when a section mentions at least min_count dates older than age_days."""

    rule_type: Literal["stale_dates"] = "stale_dates"
    min_count: int = Field(1, ge=1)
    age_days: int = Field(60, ge=0)

    def match(self, c: ClassifiedSection, config: EngineConfig) -> dict[str, Any] | None:
        stale = [age for age in c.date_ages if age > self.age_days]
        if len(stale) < self.min_count:
            return None
        return {"stale_dates": len(stale), "oldest_days": max(stale)}


Rule = Annotated[
    HeadingMatchRule | ContentMatchRule | SizeLimitRule | CategoryRule | CodeBlocksRule | StaleDatesRule,
    Field(discriminator="rule_type"),
]
RULE_LIST_ADAPTER = TypeAdapter(list[Rule])


def load_rules(data: str | bytes | list[dict[str, Any]]) -> tuple[BaseRule, ...]:
    """Validate rule configuration (JSON text or a list of dicts).

    Raises pydantic.ValidationError on any invalid rule.
    """
    if isinstance(data, str | bytes):
        return tuple(RULE_LIST_ADAPTER.validate_json(data))
    return tuple(RULE_LIST_ADAPTER.validate_python(data))


def dump_rules(rules: tuple[BaseRule, ...] | list[BaseRule]) -> str:
    """Serialize rules to JSON accepted by load_rules."""
    return json.dumps([rule.model_dump(mode="json") for rule in rules])


def default_rules() -> tuple[BaseRule, ...]:
    """Build the built-in rule set. Returns a new immutable tuple each call."""
    return (
        HeadingMatchRule(
            id="archive-completed-work",
            name="Archive Completed Work",
            description="Archive sections containing completed or historical work",
            pattern=r"^(completed|done|finished|historical|past|previous)\b",
            categories=("historical",),
            min_lines=50,
            action="archive",
            issue_type=OUTDATED,
            priority=100,
        ),
        HeadingMatchRule(
            id="condense-work-sessions",
            name="Condense Work Sessions",
            description="Condense verbose session logs to a short summary",
            pattern=r"\b(work sessions?|session (log|history)|changelog|updates?)\b",
            min_lines=100,
            action="trim",
            keep_lines=10,
            issue_type=BLOAT,
            severity="medium",
            priority=90,
        ),
        HeadingMatchRule(
            id="dedupe-readme-installation",
            name="Dedupe with README (Installation)",
            description="Installation instructions usually duplicate the README",
            pattern=r"^(installation|setup|getting started|quick ?start)\b",
            content_pattern=r"\b(npm|pnpm|yarn|pip|uv|poetry)\s+(install|i|add|sync)\b",
            min_lines=20,
            action="archive",
            issue_type=DUPLICATE,
            severity="medium",
            priority=70,
        ),
        HeadingMatchRule(
            id="dedupe-readme-commands",
            name="Dedupe with README (Commands)",
            description="Command references often duplicate the README",
            pattern=r"^(commands?|scripts?|npm scripts|available commands)\b",
            min_lines=30,
            action="archive",
            issue_type=DUPLICATE,
            severity="low",
            enabled=False,  # commands usually need to stay in the context file
            priority=60,
        ),
        HeadingMatchRule(
            id="condense-testing",
            name="Condense Testing Sections",
            description="Condense verbose testing documentation",
            pattern=r"^(tests?|testing|test plan|test coverage|qa)\b",
            min_lines=150,
            action="trim",
            keep_lines=40,
            issue_type=BLOAT,
            severity="medium",
            priority=55,
        ),
        StaleDatesRule(
            id="flag-stale-dates",
            name="Flag Stale Dates",
            description="Contains potentially outdated date references",
            categories=("active", "reference", "unknown"),
            min_count=1,
            age_days=60,
            issue_type=STALE_DATES,
            severity="low",
            priority=50,
        ),
        HeadingMatchRule(
            id="archive-implementation-details",
            name="Archive Implementation Details",
            description="Archive implementation notes that are no longer current",
            pattern=r"^(implementation|technical details?|design notes?)\b",
            categories=("historical",),
            min_lines=100,
            action="archive",
            issue_type=OUTDATED,
            severity="medium",
            priority=45,
        ),
        HeadingMatchRule(
            id="archive-old-notes",
            name="Archive Old Notes",
            description="Archive notes sections that have gone stale",
            pattern=r"^(notes?|ideas?|thoughts?|considerations?)\b",
            categories=("historical",),
            min_lines=30,
            action="archive",
            issue_type=OUTDATED,
            severity="low",
            priority=40,
        ),
        CodeBlocksRule(
            id="condense-examples",
            name="Condense Excessive Examples",
            description="Reduce the number of code examples",
            max_blocks=5,
            min_tokens=3000,
            action="trim",
            issue_type=EXCESSIVE_EXAMPLES,
            severity="low",
            priority=35,
        ),
        SizeLimitRule(
            id="flag-large-sections",
            name="Flag Large Sections",
            description="Section is over 200 lines; consider splitting or condensing",
            max_lines=200,
            issue_type="oversized_section",
            severity="medium",
            priority=30,
        ),
    )


def enabled_rules(rules: tuple[BaseRule, ...] | list[BaseRule]) -> list[BaseRule]:
    """Enabled rules in evaluation order (priority descending, then id)."""
    return sorted((r for r in rules if r.enabled), key=lambda r: (-r.priority, r.id))


def get_rule(rule_id: str, rules: tuple[BaseRule, ...] | list[BaseRule]) -> BaseRule | None:
    for rule in rules:
        if rule.id == rule_id:
            return rule
    return None


def merge_rules(
    custom: tuple[BaseRule, ...] | list[BaseRule],
    base: tuple[BaseRule, ...] | list[BaseRule],
) -> tuple[BaseRule, ...]:
    """Overlay custom rules on base rules by id; new ids are appended."""
    merged = {rule.id: rule for rule in base}
    for rule in custom:
        merged[rule.id] = rule
    return tuple(sorted(merged.values(), key=lambda r: (-r.priority, r.id)))


def apply_rules(
    classified: list[ClassifiedSection],
    rules: tuple[BaseRule, ...] | list[BaseRule],
    config: EngineConfig | None = None,
) -> list[DetectedIssue]:
    """Evaluate enabled rules against every section.

    A rule that raises is logged and contributes no issues; the remaining
    rules still run.
    """
    config = config or EngineConfig()
    total_tokens = sum(c.section.tokens for c in classified)
    issues: list[DetectedIssue] = []

    for rule in enabled_rules(rules):
        try:
            found = []
            for c in classified:
                issue = rule.evaluate(c, total_tokens, config)
                if issue is not None:
                    found.append(issue)
        except Exception as e:
            logger.warning(f"Rule {rule.id!r} failed and was skipped: {e}")
            continue
        issues.extend(found)

    return issues
