"""Tests for optimization planning."""

from datetime import date

import pytest

from contextopt.archiver import archive_ref
from contextopt.classifier import classify
from contextopt.config import EngineConfig
from contextopt.detector import DetectedIssue
from contextopt.parser import parse
from contextopt.planner import describe_plan, generate_plan, strategy_description

CONFIG = EngineConfig(today=date(2025, 6, 1))
LINE = "a" * 79 + "\n"  # 20 tokens
CONTENT = "## Old Plans\n" + LINE * 20 + "## Guide\n" + LINE * 10 + "## Misc\n" + LINE * 5
DOCUMENT = parse(CONTENT)
CLASSIFIED = classify(DOCUMENT.sections, DOCUMENT.stale_dates, CONFIG)


def issue(section, action, savings, severity="high", confidence=0.9, issue_type="outdated"):
    return DetectedIssue(
        type=issue_type,
        severity=severity,
        section_name=section,
        description="",
        suggested_action="",
        estimated_savings=savings,
        confidence=confidence,
        action=action,
    )


def plan(issues, strategy):
    return generate_plan(DOCUMENT, CLASSIFIED, issues, strategy, CONFIG)


class TestConservative:
    def test_archives_high_confidence_issues(self):
        result = plan([issue("Old Plans", "archive", 380)], "conservative")
        (action,) = result.actions
        assert action.kind == "archive"
        assert action.estimated_savings == 380
        assert action.target_savings == 380
        assert action.archive_ref == archive_ref("Old Plans")
        assert action.section_index == 0
        assert action.reason == "outdated"
        assert result.skipped == ()

    def test_excludes_medium_severity(self):
        result = plan([issue("Old Plans", "archive", 380, severity="medium")], "conservative")
        assert result.actions == ()
        assert result.skipped[0].reason == "medium severity excluded"

    def test_excludes_low_confidence(self):
        result = plan([issue("Old Plans", "archive", 380, confidence=0.6)], "conservative")
        assert result.actions == ()
        assert "too low" in result.skipped[0].reason

    def test_remove_becomes_archive(self):
        result = plan([issue("Misc", "remove", 102, issue_type="duplicate")], "conservative")
        (action,) = result.actions
        assert action.kind == "archive"

    def test_no_trims(self):
        result = plan([issue("Guide", "trim", 100, issue_type="bloat")], "conservative")
        assert result.actions == ()
        assert result.skipped[0].reason == "trim not allowed by conservative"


class TestModerateAndAggressive:
    def test_trim_target_scaled(self):
        result = plan([issue("Guide", "trim", 100, severity="medium", issue_type="bloat")], "moderate")
        (action,) = result.actions
        assert action.kind == "trim"
        assert action.estimated_savings == 100
        assert action.target_savings == 60
        assert action.archive_ref is None

    def test_low_severity_only_aggressive(self):
        issues = [issue("Guide", "trim", 50, severity="low", issue_type="verbose")]
        assert plan(issues, "moderate").actions == ()
        (action,) = plan(issues, "aggressive").actions
        assert action.target_savings == 50

    def test_remove_kept(self):
        result = plan([issue("Misc", "remove", 102, issue_type="duplicate")], "moderate")
        assert result.actions[0].kind == "remove"


class TestGeneratePlan:
    def test_unknown_strategy(self):
        with pytest.raises(ValueError):
            plan([], "reckless")

    def test_empty(self):
        result = plan([], "aggressive")
        assert result.actions == ()
        assert result.estimated_savings == 0

    def test_flag_only_skipped(self):
        result = plan([issue("Guide", None, 0, severity="low")], "aggressive")
        assert result.actions == ()
        assert result.skipped[0].reason == "flag only"

    def test_missing_section_skipped(self):
        result = plan([issue("Nowhere", "archive", 100)], "aggressive")
        assert result.actions == ()
        assert result.skipped[0].reason == "section not in document"

    def test_one_action_per_section(self):
        issues = [
            issue("Old Plans", "archive", 380),
            issue("Old Plans", "trim", 100, issue_type="bloat"),
        ]
        result = plan(issues, "aggressive")
        (action,) = result.actions
        assert action.kind == "archive"
        assert result.skipped[0].reason == "trim conflicts with archive"

    def test_savings_capped_by_section(self):
        issues = [
            issue("Guide", "trim", 150, issue_type="bloat"),
            issue("Guide", "trim", 150, issue_type="verbose"),
        ]
        (action,) = plan(issues, "aggressive").actions
        assert action.estimated_savings == DOCUMENT.section("Guide").tokens
        assert len(action.issues) == 2

    def test_ordered_by_savings(self):
        issues = [
            issue("Misc", "archive", 97),
            issue("Old Plans", "archive", 380),
            issue("Guide", "archive", 190),
        ]
        result = plan(issues, "aggressive")
        assert [a.section_name for a in result.actions] == ["Old Plans", "Guide", "Misc"]
        assert result.estimated_savings == 667

    def test_deterministic(self):
        issues = [issue("Old Plans", "archive", 380), issue("Guide", "trim", 100, issue_type="bloat")]
        assert plan(issues, "moderate") == plan(issues, "moderate")


class TestDescribePlan:
    def test_lines(self):
        result = plan([issue("Old Plans", "archive", 380)], "conservative")
        lines = describe_plan(result)
        assert lines[0] == f"Strategy: conservative - {strategy_description('conservative')}"
        assert "~380 tokens" in lines[1]
        assert lines[2].startswith('1. ARCHIVE "Old Plans"')
        assert lines[2].endswith(archive_ref("Old Plans"))
