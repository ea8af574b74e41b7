"""High-level entry points.

Usage:
    analysis = analyze(Path("CLAUDE.md").read_text())
    output = optimize(analysis, "moderate", project_path=".")
    print(output.result.stats.tokens_saved)
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .applier import OptimizationResult, apply_plan
from .archiver import ArchiveContent, create_archive
from .classifier import ClassifiedSection, classify
from .config import EngineConfig
from .detector import DetectedIssue, detect_issues, total_estimated_savings
from .parser import Document, parse, split_lines
from .planner import OptimizationPlan, generate_plan
from .rules import BaseRule, apply_rules, default_rules
from .scoring import Strategy, merge_issues, optimization_score, recommend_strategy, savings_percent
from .tokens import DEFAULT_ESTIMATOR, TokenEstimator

logger = logging.getLogger("contextopt.engine")


@dataclass(frozen=True)
class AnalysisSummary:
    total_lines: int
    total_tokens: int
    sections_count: int
    issues_count: int
    estimated_savings: int
    savings_percent: int


@dataclass(frozen=True)
class ContextAnalysis:
    document: Document
    classified: tuple[ClassifiedSection, ...]
    issues: tuple[DetectedIssue, ...]
    optimization_score: int
    recommended_strategy: Strategy
    summary: AnalysisSummary
    config: EngineConfig = field(default_factory=EngineConfig)
    estimator: TokenEstimator = DEFAULT_ESTIMATOR


@dataclass(frozen=True)
class OptimizationOutput:
    result: OptimizationResult
    archives: tuple[ArchiveContent, ...]
    plan: OptimizationPlan


def analyze(
    content: str | bytes,
    rules: list[BaseRule] | tuple[BaseRule, ...] | None = None,
    config: EngineConfig | None = None,
    estimator: TokenEstimator | None = None,
) -> ContextAnalysis:
    """Parse, classify, detect, apply rules and score.

    rules=None uses default_rules(). Raises ParseError for undecodable content.
    """
    config = config or EngineConfig()
    estimator = estimator or DEFAULT_ESTIMATOR
    rules = default_rules() if rules is None else rules

    document = parse(content, estimator)
    classified = classify(document.sections, document.stale_dates, config)
    issues = merge_issues(
        detect_issues(classified, document.stale_dates, config),
        apply_rules(classified, rules, config),
    )

    savings = total_estimated_savings(issues)
    score = optimization_score(issues, document.total_tokens)
    logger.debug(
        f"Analyzed {len(document.sections)} sections, {len(issues)} issues, score {score}"
    )
    return ContextAnalysis(
        document=document,
        classified=tuple(classified),
        issues=tuple(issues),
        optimization_score=score,
        recommended_strategy=recommend_strategy(score, issues, config),
        summary=AnalysisSummary(
            total_lines=document.total_lines,
            total_tokens=document.total_tokens,
            sections_count=len(classified),
            issues_count=len(issues),
            estimated_savings=savings,
            savings_percent=savings_percent(savings, document.total_tokens),
        ),
        config=config,
        estimator=estimator,
    )


def optimize(
    analysis: ContextAnalysis,
    strategy: Strategy | None = None,
    project_path: str | Path = ".",
    archived_at: datetime | None = None,
    source_name: str = "CLAUDE.md",
) -> OptimizationOutput:
    """Plan, apply and archive. strategy=None uses the recommended strategy.

    No files are written; callers persist new_content and archives.
    """
    strategy = strategy or analysis.recommended_strategy
    plan = generate_plan(
        analysis.document, list(analysis.classified), list(analysis.issues), strategy, analysis.config
    )
    result = apply_plan(plan, analysis.document.content, analysis.estimator, analysis.config)

    archived_at = archived_at or datetime.now(timezone.utc)
    by_name = {c.name: c for c in analysis.classified}
    archives = []
    for action in result.applied:
        if action.kind != "archive":
            continue
        archives.append(
            create_archive(
                by_name[action.section_name],
                project_path,
                action.reason,
                archived_at=archived_at,
                source_name=source_name,
            )
        )

    logger.info(
        f"Optimized with {strategy}: {len(result.applied)} actions, "
        f"{result.stats.tokens_saved} tokens saved, {len(archives)} archives"
    )
    return OptimizationOutput(result=result, archives=tuple(archives), plan=plan)


def calculate_context_optimization_score(content: str) -> int:
    if not content or not content.strip():
        return 100
    return analyze(content).optimization_score


def needs_optimization(content: str, threshold: int = 70) -> bool:
    return analyze(content).optimization_score < threshold


def get_quick_stats(content: str) -> dict[str, Any]:
    analysis = analyze(content)
    return {
        "lines": len(split_lines(content)),
        "tokens": analysis.document.total_tokens,
        "sections": len(analysis.classified),
        "score": analysis.optimization_score,
    }


def get_recommendations(content: str) -> list[str]:
    """Short, human-readable recommendations for a context file."""
    return recommendations_for(analyze(content))


def recommendations_for(analysis: ContextAnalysis) -> list[str]:
    if not analysis.issues:
        return ["Content is well optimized. No issues detected."]

    recommendations = [
        f"[HIGH] {i.description} → {i.suggested_action}"
        for i in analysis.issues
        if i.severity == "high"
    ]
    medium = [i for i in analysis.issues if i.severity == "medium"]
    recommendations.extend(f"[MEDIUM] {i.description} → {i.suggested_action}" for i in medium[:3])
    if analysis.summary.estimated_savings > 0:
        recommendations.append(
            f"Total potential savings: ~{analysis.summary.estimated_savings} tokens "
            f"({analysis.summary.savings_percent}%)"
        )
    return recommendations
