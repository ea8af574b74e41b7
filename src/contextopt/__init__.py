"""ContextOpt: analysis and optimization of persistent context files for Claude Code."""

__version__ = "0.1.0"

# Engine entry points
from .applier import OptimizationResult, apply_plan
from .archiver import ArchiveContent, create_archive, restore_archive
from .classifier import ClassifiedSection, classify
from .config import EngineConfig
from .detector import DetectedIssue, detect_issues
from .engine import (
    ContextAnalysis,
    OptimizationOutput,
    analyze,
    calculate_context_optimization_score,
    get_quick_stats,
    get_recommendations,
    needs_optimization,
    optimize,
)
from .parser import Document, ParseError, Section, parse
from .planner import OptimizationPlan, generate_plan

# Rules
from .rules import apply_rules, default_rules, load_rules, merge_rules

__all__ = [
    # Core
    "analyze",
    "optimize",
    "calculate_context_optimization_score",
    "needs_optimization",
    "get_quick_stats",
    "get_recommendations",
    "ContextAnalysis",
    "OptimizationOutput",
    "EngineConfig",
    # Pipeline stages
    "parse",
    "classify",
    "detect_issues",
    "generate_plan",
    "apply_plan",
    "create_archive",
    "restore_archive",
    "Document",
    "Section",
    "ParseError",
    "ClassifiedSection",
    "DetectedIssue",
    "OptimizationPlan",
    "OptimizationResult",
    "ArchiveContent",
    # Rules
    "apply_rules",
    "default_rules",
    "load_rules",
    "merge_rules",
]
