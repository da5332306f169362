from geolink.schemas import RuleSnapshot
from geolink.services.rule_matcher import normalize_url, select_redirect

RULES = [
    RuleSnapshot(id=1, redirect_url="https://shop.example/dach", countries=["DE", "AT", "CH"]),
    RuleSnapshot(id=2, redirect_url="https://shop.example/de", countries=["DE"]),
    RuleSnapshot(id=3, redirect_url="https://shop.example/fr", countries=["FR", "BE"]),
]

def test_first_matching_rule_wins_over_later_overlap():
    assert select_redirect(RULES, "DE", "https://shop.example") == ("https://shop.example/dach", 1)

def test_reordering_changes_winner():
    reordered = [RULES[1], RULES[0], RULES[2]]
    assert select_redirect(reordered, "DE", "https://shop.example") == ("https://shop.example/de", 2)

def test_later_rule_matches_when_earlier_ones_do_not():
    assert select_redirect(RULES, "BE", "https://shop.example") == ("https://shop.example/fr", 3)

def test_no_match_falls_back():
    assert select_redirect(RULES, "US", "https://shop.example") == ("https://shop.example", None)

def test_empty_rules_fall_back():
    assert select_redirect([], "DE", "https://shop.example") == ("https://shop.example", None)

def test_unknown_country_never_matches():
    rules = [RuleSnapshot(id=9, redirect_url="https://trap.example", countries=["UNKNOWN"])]
    assert select_redirect(rules, "UNKNOWN", "https://shop.example") == ("https://shop.example", None)

def test_schemeless_urls_get_https():
    rules = [RuleSnapshot(id=1, redirect_url="example.com/x", countries=["DE"])]
    assert select_redirect(rules, "DE", "fallback.com") == ("https://example.com/x", 1)
    assert select_redirect(rules, "FR", "fallback.com") == ("https://fallback.com", None)

def test_explicit_scheme_is_kept():
    rules = [RuleSnapshot(id=1, redirect_url="http://example.com/x", countries=["DE"])]
    assert select_redirect(rules, "DE", "https://fallback.com") == ("http://example.com/x", 1)

def test_normalize_url():
    assert normalize_url("example.com/x") == "https://example.com/x"
    assert normalize_url("HTTPS://example.com") == "HTTPS://example.com"
    assert normalize_url("  example.com  ") == "https://example.com"
    assert normalize_url("//example.com") == "https://example.com"
