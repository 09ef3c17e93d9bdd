"""Tests for the synchronous pre-check filter and its local block verdicts."""

from nexusmod.services.precheck import (
    PrecheckRule,
    count_urls,
    precheck,
    rule_verdict,
    verdict_for,
)


class TestPrecheck:
    def test_clean_content_is_safe(self):
        result = precheck("Looking forward to the next live session!")
        assert result.safe is True
        assert result.reason is None

    def test_banned_term_is_case_insensitive_substring(self):
        result = precheck("This is a SCAMMER alert")
        assert result.safe is False
        assert result.reason == "Contains inappropriate language"
        assert result.rule is PrecheckRule.banned_term

    def test_too_long(self):
        result = precheck("a" * 5001)
        assert result.safe is False
        assert result.reason == "Content too long"

    def test_exactly_max_length_is_safe(self):
        assert precheck("a" * 5000).safe is True

    def test_too_many_urls(self):
        content = "buy now " + " ".join(f"http://{c}" for c in "abcdef")
        result = precheck(content)
        assert result.safe is False
        assert result.reason == "Too many URLs"
        assert result.rule is PrecheckRule.too_many_urls

    def test_five_urls_is_safe(self):
        content = " ".join(f"https://x{i}.example" for i in range(5))
        assert precheck(content).safe is True

    def test_keyword_rule_wins_over_length(self):
        """Rules are ordered; the first match decides the reason."""
        result = precheck("scam " + "a" * 6000)
        assert result.reason == "Contains inappropriate language"

    def test_length_rule_wins_over_urls(self):
        result = precheck("http://a " * 700)
        assert result.reason == "Content too long"

    def test_custom_term_list(self):
        assert precheck("totally fine", banned_terms=["fine"]).safe is False
        assert precheck("scam", banned_terms=[]).safe is True

    def test_count_urls_counts_both_schemes(self):
        assert count_urls("http://a https://b ftp://c") == 2


class TestRuleVerdict:
    def test_safe_content_has_no_local_verdict(self):
        assert rule_verdict("hello there") is None

    def test_url_flood_verdict(self):
        """6 URLs > 5: blocked locally with the spam verdict."""
        verdict = rule_verdict(
            "buy now http://a http://b http://c http://d http://e http://f"
        )
        assert verdict is not None
        assert verdict.allowed is False
        assert verdict.action == "block"
        assert verdict.reason == "Too many URLs (possible spam)"
        assert verdict.severity == "MEDIUM"
        assert verdict.confidence == 0.9
        assert verdict.categories == ["spam"]

    def test_keyword_verdict(self):
        verdict = rule_verdict("scam alert")
        assert verdict.allowed is False
        assert verdict.action == "block"
        assert verdict.severity == "HIGH"
        assert verdict.confidence == 1.0
        assert verdict.categories == ["harassment"]

    def test_keyword_categories_are_configurable(self):
        verdict = verdict_for(precheck("scam alert"), keyword_categories=["fraud"])
        assert verdict.categories == ["fraud"]

    def test_too_long_verdict(self):
        verdict = rule_verdict("a" * 6000)
        assert verdict.allowed is False
        assert verdict.reason == "Content too long"
