"""Issue merging, optimization score and strategy recommendation."""

from typing import Literal

from .config import EngineConfig
from .detector import DetectedIssue, sort_issues

Strategy = Literal["conservative", "moderate", "aggressive"]
STRATEGIES: tuple[Strategy, ...] = ("conservative", "moderate", "aggressive")


def merge_issues(
    heuristic: list[DetectedIssue], rule_issues: list[DetectedIssue]
) -> list[DetectedIssue]:
    """Deduplicate on (section, type), keeping the larger savings estimate.

    Heuristic issues come first, so on equal savings the heuristic issue wins.
    """
    merged: dict[tuple[str, str], DetectedIssue] = {}
    for issue in [*heuristic, *rule_issues]:
        key = (issue.section_name, issue.type)
        current = merged.get(key)
        if current is None or issue.estimated_savings > current.estimated_savings:
            merged[key] = issue
    return sort_issues(list(merged.values()))


def savings_percent(savings: int, total_tokens: int) -> int:
    if total_tokens <= 0:
        return 0
    return round(savings / total_tokens * 100)


def optimization_score(issues: list[DetectedIssue], total_tokens: int) -> int:
    """100 means nothing to gain; 0 means the whole document is waste."""
    if total_tokens <= 0:
        return 100
    savings = sum(i.estimated_savings for i in issues)
    return max(0, min(100, 100 - savings_percent(savings, total_tokens)))


def recommend_strategy(
    score: int, issues: list[DetectedIssue], config: EngineConfig | None = None
) -> Strategy:
    config = config or EngineConfig()
    high = sum(1 for i in issues if i.severity == "high")
    if score < config.aggressive_below or high >= config.aggressive_high_issues:
        return "aggressive"
    if score >= config.conservative_from and high == 0:
        return "conservative"
    return "moderate"
