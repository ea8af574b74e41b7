"""Optimization planning.

Turns detected issues into at most one edit action per section, filtered by
the strategy's policy and ordered by estimated savings.
"""

import logging
from dataclasses import dataclass, field

from .archiver import archive_ref
from .classifier import ClassifiedSection
from .config import EngineConfig
from .detector import ActionKind, DetectedIssue, Severity
from .parser import Document
from .scoring import STRATEGIES, Strategy

logger = logging.getLogger("contextopt.planner")


@dataclass(frozen=True)
class StrategyPolicy:
    severities: frozenset[Severity]
    min_confidence: float
    kinds: frozenset[ActionKind]
    trim_ratio: float  # share of estimated savings a trim may take
    remove_as_archive: bool = False


STRATEGY_POLICIES: dict[Strategy, StrategyPolicy] = {
    "conservative": StrategyPolicy(
        severities=frozenset({"high"}),
        min_confidence=0.8,
        kinds=frozenset({"archive"}),
        trim_ratio=0.0,
        remove_as_archive=True,
    ),
    "moderate": StrategyPolicy(
        severities=frozenset({"high", "medium"}),
        min_confidence=0.0,
        kinds=frozenset({"archive", "trim", "remove"}),
        trim_ratio=0.6,
    ),
    "aggressive": StrategyPolicy(
        severities=frozenset({"high", "medium", "low"}),
        min_confidence=0.0,
        kinds=frozenset({"archive", "trim", "remove"}),
        trim_ratio=1.0,
    ),
}

STRATEGY_DESCRIPTIONS: dict[Strategy, str] = {
    "conservative": "Only archive clearly completed/historical content. Safe, minimal changes.",
    "moderate": "Archive completed work and condense verbose sections. Balanced approach.",
    "aggressive": "Maximize token reduction. Archive, condense, and remove aggressively.",
}


@dataclass(frozen=True)
class Skipped:
    """An issue or action that was not carried out, and why."""

    section_name: str
    reason: str
    issue_type: str | None = None


@dataclass(frozen=True)
class PlannedAction:
    section_name: str
    kind: ActionKind
    issues: tuple[DetectedIssue, ...]
    estimated_savings: int
    target_savings: int
    section_index: int
    category: str = "unknown"
    archive_ref: str | None = None

    @property
    def reason(self) -> str:
        """Type of the issue that carries the most savings."""
        return self.issues[0].type


@dataclass(frozen=True)
class OptimizationPlan:
    strategy: Strategy
    actions: tuple[PlannedAction, ...]
    skipped: tuple[Skipped, ...] = field(default_factory=tuple)

    @property
    def estimated_savings(self) -> int:
        return sum(a.estimated_savings for a in self.actions)


def strategy_description(strategy: Strategy) -> str:
    return STRATEGY_DESCRIPTIONS[strategy]


def generate_plan(
    document: Document,
    classified: list[ClassifiedSection],
    issues: list[DetectedIssue],
    strategy: Strategy,
    config: EngineConfig | None = None,
) -> OptimizationPlan:
    """Build an ordered plan for one strategy.

    Raises ValueError for an unknown strategy. Never references a section that
    is not in the document.
    """
    if strategy not in STRATEGY_POLICIES:
        raise ValueError(f"Unknown strategy {strategy!r}; expected one of {STRATEGIES}")
    policy = STRATEGY_POLICIES[strategy]
    sections = {s.name: s for s in document.sections}
    categories = {c.name: c.category for c in classified}

    skipped: list[Skipped] = []
    candidates: dict[str, list[tuple[ActionKind, DetectedIssue]]] = {}
    for issue in issues:
        name = issue.section_name
        if name not in sections:
            skipped.append(Skipped(name, "section not in document", issue.type))
            continue
        if issue.action is None:
            skipped.append(Skipped(name, "flag only", issue.type))
            continue
        if issue.severity not in policy.severities:
            skipped.append(Skipped(name, f"{issue.severity} severity excluded", issue.type))
            continue
        if issue.confidence < policy.min_confidence:
            skipped.append(Skipped(name, f"confidence {issue.confidence} too low", issue.type))
            continue
        kind = issue.action
        if kind == "remove" and policy.remove_as_archive:
            kind = "archive"
        if kind not in policy.kinds:
            skipped.append(Skipped(name, f"{kind} not allowed by {strategy}", issue.type))
            continue
        candidates.setdefault(name, []).append((kind, issue))

    actions = []
    for name, found in candidates.items():
        lead_kind = max(found, key=lambda f: f[1].estimated_savings)[0]
        chosen = sorted(
            (issue for kind, issue in found if kind == lead_kind),
            key=lambda i: -i.estimated_savings,
        )
        for kind, issue in found:
            if kind != lead_kind:
                skipped.append(Skipped(name, f"{kind} conflicts with {lead_kind}", issue.type))

        section = sections[name]
        estimate = min(section.tokens, sum(i.estimated_savings for i in chosen))
        target = round(estimate * policy.trim_ratio) if lead_kind == "trim" else estimate
        actions.append(
            PlannedAction(
                section_name=name,
                kind=lead_kind,
                issues=tuple(chosen),
                estimated_savings=estimate,
                target_savings=target,
                section_index=section.index,
                category=categories.get(name, "unknown"),
                archive_ref=archive_ref(name) if lead_kind == "archive" else None,
            )
        )

    actions.sort(key=lambda a: (-a.estimated_savings, a.section_index))
    logger.debug(f"Planned {len(actions)} actions ({strategy}), skipped {len(skipped)}")
    return OptimizationPlan(strategy=strategy, actions=tuple(actions), skipped=tuple(skipped))


def describe_plan(plan: OptimizationPlan) -> list[str]:
    """Human-readable preview of a plan, one line per action."""
    lines = [
        f"Strategy: {plan.strategy} - {strategy_description(plan.strategy)}",
        f"Actions: {len(plan.actions)}, estimated savings: ~{plan.estimated_savings} tokens",
    ]
    for n, action in enumerate(plan.actions, 1):
        types = ", ".join(sorted({i.type for i in action.issues}))
        line = f'{n}. {action.kind.upper()} "{action.section_name}" (~{action.estimated_savings} tokens; {types})'
        if action.archive_ref:
            line += f" -> {action.archive_ref}"
        lines.append(line)
    return lines
