"""Tests for filter rules and the filter engine."""

import pytest

from calmfeed.feed.filtering import (
    DurationFilterRule, FilterEngine, KeywordFilterRule, SourceTypeFilterRule, build_rules,
)
from calmfeed.models import FilterKeyword, Preferences, SourceType

from conftest import make_item


class TestKeywordFilterRule:
    @pytest.mark.parametrize("title,filtered", [
        ("Ukraine War Update", True),
        ("Star Wars Movie Review", False),
        ("war", True),
        ("WAR: the aftermath", True),
        ("Warhammer painting guide", False),
        ("Post-war architecture", True),
    ])
    def test_whole_word_match(self, title, filtered):
        rule = KeywordFilterRule("war")
        assert rule.matches(make_item("v", title=title)) is filtered

    def test_description_is_searched(self):
        rule = KeywordFilterRule("election")
        item = make_item("v", title="Weekly roundup", description="Election night coverage")
        assert rule.matches(item)

    def test_wildcard_matches_inside_words(self):
        rule = KeywordFilterRule("*war*", is_wildcard=True)
        assert rule.matches(make_item("v", title="Star Wars Movie Review"))
        assert rule.matches(make_item("v", title="Warhammer painting guide"))
        assert not rule.matches(make_item("v", title="Cooking pasta"))

    def test_case_sensitive(self):
        rule = KeywordFilterRule("War", case_sensitive=True)
        assert rule.matches(make_item("v", title="War and Peace"))
        assert not rule.matches(make_item("v", title="a war story"))

    def test_regex_characters_are_literal(self):
        rule = KeywordFilterRule("c++")
        assert not rule.matches(make_item("v", title="ccc"))

    @pytest.mark.parametrize("keyword,title,filtered", [
        ("c++", "Learn C++ today", True),
        ("c++", "c++", True),
        ("c++", "c++20 modules", False),
        ("c#", "Why C# wins", True),
        (".net", "Porting to .NET 8", True),
        ("#shorts", "Funny cat #shorts", True),
        ("#shorts", "Funny cat #shortstack", False),
    ])
    def test_keywords_with_symbols_match_whole_tokens(self, keyword, title, filtered):
        rule = KeywordFilterRule(keyword)
        assert rule.matches(make_item("v", title=title)) is filtered

    @pytest.mark.parametrize("keyword", ["", "   ", "*", "**"])
    def test_empty_keyword_never_matches(self, keyword):
        rule = KeywordFilterRule(keyword, is_wildcard="*" in keyword)
        assert not rule.matches(make_item("v", title="Anything at all"))

    def test_reason(self):
        assert KeywordFilterRule("war").reason() == "Keyword: war"


class TestDurationFilterRule:
    def test_unknown_duration_always_passes(self):
        item = make_item("v", duration=None)
        for rule in [
            DurationFilterRule(min_seconds=60),
            DurationFilterRule(max_seconds=60),
            DurationFilterRule(min_seconds=60, max_seconds=120),
        ]:
            assert not rule.matches(item)

    def test_keep_range_is_inclusive(self):
        rule = DurationFilterRule(min_seconds=60, max_seconds=600)
        assert rule.matches(make_item("v", duration=59))
        assert not rule.matches(make_item("v", duration=60))
        assert not rule.matches(make_item("v", duration=600))
        assert rule.matches(make_item("v", duration=601))

    def test_open_bounds(self):
        assert not DurationFilterRule(min_seconds=60).matches(make_item("v", duration=10_000))
        assert not DurationFilterRule(max_seconds=600).matches(make_item("v", duration=0))
        assert not DurationFilterRule().matches(make_item("v", duration=5))

    def test_reasons(self):
        assert DurationFilterRule(120, 600).reason() == "Duration not between 2m and 10m"
        assert DurationFilterRule(min_seconds=120).reason() == "Duration less than 2m"
        assert DurationFilterRule(max_seconds=600).reason() == "Duration more than 10m"


class TestFilterEngine:
    def test_evaluate_reports_all_matches(self):
        engine = FilterEngine([
            KeywordFilterRule("war"),
            DurationFilterRule(max_seconds=60),
        ])
        result = engine.evaluate(make_item("v", title="War diary", duration=120))
        assert result.is_filtered
        assert len(result.matched_rules) == 2
        assert result.matched_rule is engine.rules[0]
        assert result.reasons == ["Keyword: war", "Duration more than 1m"]

    def test_evaluate_clean_item(self):
        result = FilterEngine([KeywordFilterRule("war")]).evaluate(make_item("v"))
        assert not result.is_filtered
        assert result.matched_rule is None

    def test_evaluate_batch_preserves_order(self):
        items = [
            make_item("1", title="Peaceful gardens"),
            make_item("2", title="Ukraine War Update"),
            make_item("3", title="Star Wars Movie Review"),
            make_item("4", title="Short", duration=None),
        ]
        engine = FilterEngine([KeywordFilterRule("war")])
        assert [i.original_id for i in engine.evaluate_batch(items)] == ["1", "3", "4"]

    def test_no_rules_passes_everything(self):
        items = [make_item("1"), make_item("2")]
        assert FilterEngine().evaluate_batch(items) == items

    def test_source_type_rule(self):
        engine = FilterEngine([SourceTypeFilterRule([SourceType.YOUTUBE])])
        items = [make_item("1"), make_item("2", source_type=SourceType.RSS)]
        assert [i.original_id for i in engine.evaluate_batch(items)] == ["1"]


class TestBuildRules:
    def test_keywords_and_duration(self):
        keywords = [
            FilterKeyword(id="1", user_id="u", keyword="war"),
            FilterKeyword(id="2", user_id="u", keyword="*elect*", is_wildcard=True),
        ]
        prefs = Preferences(user_id="u", min_duration=60)
        rules = build_rules(keywords, prefs)

        assert len(rules) == 3
        assert isinstance(rules[0], KeywordFilterRule)
        assert rules[1].is_wildcard
        assert isinstance(rules[2], DurationFilterRule)
        assert rules[2].min_seconds == 60

    def test_no_duration_rule_without_bounds(self):
        rules = build_rules([], Preferences(user_id="u"))
        assert rules == []
