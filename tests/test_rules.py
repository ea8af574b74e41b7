"""Tests for the configurable rule engine."""

import logging
from datetime import date

import pytest
from pydantic import ValidationError

from contextopt.classifier import classify
from contextopt.config import EngineConfig
from contextopt.parser import fenced_blocks, parse
from contextopt.rules import (
    CategoryRule,
    CodeBlocksRule,
    ContentMatchRule,
    HeadingMatchRule,
    SizeLimitRule,
    StaleDatesRule,
    apply_rules,
    default_rules,
    dump_rules,
    enabled_rules,
    get_rule,
    load_rules,
    merge_rules,
)

CONFIG = EngineConfig(today=date(2025, 6, 1))
LINE = "a" * 79 + "\n"  # 20 tokens
MISC = "## Misc\n" + LINE * 5  # 102 tokens, 6 lines, unknown


def classified(content: str):
    document = parse(content)
    return classify(document.sections, document.stale_dates, CONFIG)


def category_rule(**kwargs):
    params = {
        "id": "review-unknown",
        "name": "Review unknown",
        "issue_type": "review",
        "categories": ("unknown",),
    }
    params.update(kwargs)
    return CategoryRule(**params)


class ExplodingRule(HeadingMatchRule):
    def match(self, c, config):
        raise RuntimeError("boom")


class TestLoadRules:
    def test_tagged_union(self):
        rules = load_rules(
            [
                {
                    "rule_type": "heading_match",
                    "id": "h",
                    "name": "H",
                    "issue_type": "outdated",
                    "pattern": "^done",
                    "action": "archive",
                },
                {
                    "rule_type": "size_limit",
                    "id": "s",
                    "name": "S",
                    "issue_type": "bloat",
                    "max_lines": 100,
                    "action": "trim",
                },
                {
                    "rule_type": "stale_dates",
                    "id": "d",
                    "name": "D",
                    "issue_type": "stale_dates",
                },
            ]
        )
        assert [type(r) for r in rules] == [HeadingMatchRule, SizeLimitRule, StaleDatesRule]
        assert isinstance(rules, tuple)

    def test_json(self):
        rules = load_rules(
            '[{"rule_type": "category", "id": "c", "name": "C", '
            '"issue_type": "review", "categories": ["historical"]}]'
        )
        assert rules[0].categories == ("historical",)

    def test_dump_then_load(self):
        rules = default_rules()
        assert load_rules(dump_rules(rules)) == rules

    def test_invalid_regex(self):
        with pytest.raises(ValidationError):
            load_rules(
                [
                    {
                        "rule_type": "heading_match",
                        "id": "x",
                        "name": "X",
                        "issue_type": "t",
                        "pattern": "(",
                    }
                ]
            )

    def test_unknown_field(self):
        with pytest.raises(ValidationError):
            load_rules(
                [{"rule_type": "category", "id": "x", "name": "X", "issue_type": "t",
                  "categories": ["unknown"], "bogus": 1}]
            )

    def test_unknown_rule_type(self):
        with pytest.raises(ValidationError):
            load_rules([{"rule_type": "nope", "id": "x", "name": "X", "issue_type": "t"}])

    def test_size_limit_needs_a_limit(self):
        with pytest.raises(ValidationError):
            SizeLimitRule(id="x", name="X", issue_type="bloat")

    def test_category_rule_needs_categories(self):
        with pytest.raises(ValidationError):
            CategoryRule(id="x", name="X", issue_type="t")

    def test_confidence_bounds(self):
        with pytest.raises(ValidationError):
            category_rule(confidence=1.5)

    def test_rules_are_frozen(self):
        rule = category_rule()
        with pytest.raises(ValidationError):
            rule.enabled = False


class TestDefaultRules:
    def test_fresh_tuple_each_call(self):
        first, second = default_rules(), default_rules()
        assert first == second
        assert first is not second
        assert isinstance(first, tuple)

    def test_unique_ids(self):
        ids = [r.id for r in default_rules()]
        assert len(ids) == len(set(ids))

    def test_commands_rule_disabled(self):
        rule = get_rule("dedupe-readme-commands", default_rules())
        assert rule is not None
        assert not rule.enabled
        assert rule not in enabled_rules(default_rules())

    def test_condense_work_sessions(self):
        content = "## Work Sessions\n" + LINE * 120
        (issue,) = apply_rules(classified(content), default_rules(), CONFIG)
        assert issue.source == "rule:condense-work-sessions"
        assert issue.type == "bloat"
        assert issue.action == "trim"
        assert issue.severity == "medium"
        assert issue.estimated_savings == round(2405 * 111 / 121)


class TestApplyRules:
    def test_archive_savings(self):
        (issue,) = apply_rules(classified(MISC), [category_rule(action="archive")], CONFIG)
        assert issue.estimated_savings == 97
        assert issue.action == "archive"
        assert issue.severity == "high"
        assert issue.details["rule_id"] == "review-unknown"

    def test_remove_and_flag_savings(self):
        (removed,) = apply_rules(classified(MISC), [category_rule(action="remove")], CONFIG)
        (flagged,) = apply_rules(classified(MISC), [category_rule(action="flag")], CONFIG)
        assert removed.estimated_savings == 102
        assert flagged.estimated_savings == 0
        assert flagged.action is None

    def test_trim_savings(self):
        (default,) = apply_rules(classified(MISC), [category_rule(action="trim")], CONFIG)
        (kept,) = apply_rules(
            classified(MISC), [category_rule(action="trim", keep_lines=2)], CONFIG
        )
        assert default.estimated_savings == 31
        assert kept.estimated_savings == 68

    def test_severity_override(self):
        (issue,) = apply_rules(
            classified(MISC), [category_rule(action="archive", severity="low")], CONFIG
        )
        assert issue.severity == "low"

    def test_category_filter(self):
        rule = category_rule(categories=("historical",), action="archive")
        assert apply_rules(classified(MISC), [rule], CONFIG) == []

    def test_min_lines_filter(self):
        assert apply_rules(classified(MISC), [category_rule(min_lines=10)], CONFIG) == []

    def test_disabled_rule_never_fires(self):
        rule = category_rule(action="archive")
        sections = classified(MISC)
        on = apply_rules(sections, [rule], CONFIG)
        off = apply_rules(sections, [rule.model_copy(update={"enabled": False})], CONFIG)
        assert len(on) == 1
        assert off == []

    def test_priority_order(self):
        low = category_rule(id="low", issue_type="a", priority=10)
        high = category_rule(id="high", issue_type="b", priority=90)
        issues = apply_rules(classified(MISC), [low, high], CONFIG)
        assert [i.source for i in issues] == ["rule:high", "rule:low"]

    def test_failing_rule_is_skipped(self, caplog):
        caplog.set_level(logging.WARNING, logger="contextopt.rules")
        bad = ExplodingRule(id="boom", name="Boom", issue_type="x", pattern=".*", priority=100)
        issues = apply_rules(classified(MISC), [bad, category_rule()], CONFIG)
        assert [i.source for i in issues] == ["rule:review-unknown"]
        assert "boom" in caplog.text


class TestRuleTypes:
    def test_heading_match_with_content_pattern(self):
        rule = HeadingMatchRule(
            id="install",
            name="Install",
            issue_type="duplicate",
            pattern=r"^install",
            content_pattern=r"pip install",
            action="archive",
        )
        hit = classified("## Installation\nRun pip install contextopt\n")
        miss = classified("## Installation\nDownload the binary\n")
        assert len(apply_rules(hit, [rule], CONFIG)) == 1
        assert apply_rules(miss, [rule], CONFIG) == []

    def test_content_match_min_matches(self):
        rule = ContentMatchRule(
            id="bullets", name="Bullets", issue_type="bloat", pattern=r"^- ", min_matches=3
        )
        three = classified("## List\n- a\n- b\n- c\n")
        two = classified("## List\n- a\n- b\n")
        (issue,) = apply_rules(three, [rule], CONFIG)
        assert issue.details["matches"] == 3
        assert apply_rules(two, [rule], CONFIG) == []

    def test_size_limit_trim_excess(self):
        rule = SizeLimitRule(
            id="cap", name="Cap", issue_type="bloat", max_tokens=50, action="trim"
        )
        (issue,) = apply_rules(classified(MISC), [rule], CONFIG)
        assert issue.estimated_savings == 52

    def test_code_blocks(self):
        rule = CodeBlocksRule(
            id="code", name="Code", issue_type="excessive_examples", max_blocks=1,
            keep_blocks=1, action="trim",
        )
        content = "## Examples\n" + "```\nx = 1\n```\n" * 3
        (issue,) = apply_rules(classified(content), [rule], CONFIG)
        assert issue.details["blocks"] == 3
        assert 0 < issue.estimated_savings < parse(content).total_tokens

    def test_code_blocks_counted_like_the_parser(self):
        rule = CodeBlocksRule(
            id="code", name="Code", issue_type="excessive_examples", max_blocks=1,
            keep_blocks=1, action="trim",
        )
        content = "## Examples\n" + "```\n```bash\necho hi\n```\n" * 2
        (issue,) = apply_rules(classified(content), [rule], CONFIG)
        assert issue.details["blocks"] == len(fenced_blocks(content)) == 2

    def test_stale_dates(self):
        rule = StaleDatesRule(id="old", name="Old", issue_type="stale_dates", min_count=2)
        two = classified("## Roadmap\nTODO: 2023-01-01 and 2023-02-01\n")
        one = classified("## Roadmap\nTODO: 2023-01-01\n")
        (issue,) = apply_rules(two, [rule], CONFIG)
        assert issue.details["stale_dates"] == 2
        assert apply_rules(one, [rule], CONFIG) == []


class TestMergeRules:
    def test_override_by_id(self):
        override = get_rule("condense-testing", default_rules()).model_copy(
            update={"enabled": False}
        )
        merged = merge_rules([override], default_rules())
        assert len(merged) == len(default_rules())
        assert not get_rule("condense-testing", merged).enabled

    def test_new_rules_added(self):
        merged = merge_rules([category_rule(priority=1000)], default_rules())
        assert len(merged) == len(default_rules()) + 1
        assert merged[0].id == "review-unknown"

    def test_get_rule_missing(self):
        assert get_rule("missing", default_rules()) is None
