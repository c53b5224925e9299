import pytest

from budgetbuddy.classifiers.rules import RuleSet, build_regex, check_pattern
from budgetbuddy.classifiers.special import SpecialCaseDetector
from budgetbuddy.domain.errors import InvalidPattern
from budgetbuddy.models import PatternType, TargetField
from conftest import make_rule, make_tx


def test_lower_priority_number_wins_regardless_of_input_order() -> None:
    first = make_rule("r1", pattern="AMAZON", category_id="cat-1", priority=1)
    second = make_rule("r2", pattern="AMAZON MARKET", category_id="cat-2", priority=2)
    tx = make_tx(payee="AMAZON MARKETPLACE")

    assert RuleSet.from_rules([first, second]).match(tx).category_id == "cat-1"
    assert RuleSet.from_rules([second, first]).match(tx).category_id == "cat-1"


def test_disabled_rules_are_ignored() -> None:
    disabled = make_rule("r1", pattern="REWE", priority=1, enabled=False)
    rule_set = RuleSet.from_rules([disabled])
    assert len(rule_set) == 0
    assert rule_set.match(make_tx(payee="REWE Markt")) is None


def test_contains_is_case_insensitive() -> None:
    rule = make_rule(pattern="rewe", target_field=TargetField.PAYEE)
    assert RuleSet.from_rules([rule]).match(make_tx(payee="REWE Markt 123")) is not None


def test_exact_requires_whole_field() -> None:
    rule = make_rule(pattern="rewe", pattern_type=PatternType.EXACT, target_field=TargetField.PAYEE)
    rule_set = RuleSet.from_rules([rule])
    assert rule_set.match(make_tx(payee="REWE")) is not None
    assert rule_set.match(make_tx(payee="REWE Markt")) is None


def test_exact_rejects_trailing_newline() -> None:
    regex = build_regex("Spotify", PatternType.EXACT)
    assert regex.search("spotify")
    assert not regex.search("Spotify\n")


def test_memo_target_ignores_payee() -> None:
    rule = make_rule(pattern="Miete", target_field=TargetField.MEMO)
    rule_set = RuleSet.from_rules([rule])
    assert rule_set.match(make_tx(payee="Miete GmbH", memo="Januar")) is None
    assert rule_set.match(make_tx(payee="Vermieter", memo="Miete Januar")) is not None


def test_combined_tries_each_field_separately() -> None:
    anchored = make_rule(pattern="^Groceries", pattern_type=PatternType.REGEX)
    rule_set = RuleSet.from_rules([anchored])
    assert rule_set.match(make_tx(payee="Shop", memo="Groceries weekly")) is not None

    spanning = make_rule(pattern="Shop Groceries", pattern_type=PatternType.REGEX)
    assert RuleSet.from_rules([spanning]).match(make_tx(payee="Shop", memo="Groceries")) is None


def test_match_without_payee_uses_memo() -> None:
    rule = make_rule(pattern="Lastschrift")
    assert RuleSet.from_rules([rule]).match(make_tx(payee=None, memo="SEPA Lastschrift")) is not None


def test_invalid_regex_is_rejected() -> None:
    with pytest.raises(InvalidPattern):
        build_regex("([unclosed", PatternType.REGEX)
    with pytest.raises(InvalidPattern):
        check_pattern("([unclosed", PatternType.REGEX, TargetField.PAYEE, payee="x")


def test_regex_characters_are_literal_for_contains() -> None:
    assert build_regex("a.b", PatternType.CONTAINS).search("axb") is None
    assert build_regex("a.b", PatternType.CONTAINS).search("a.b") is not None


@pytest.mark.parametrize(
    ("pattern", "pattern_type", "target_field", "payee", "memo", "expected"),
    [
        ("^AMZ.*", PatternType.REGEX, TargetField.PAYEE, "AMZ Purchase", "", True),
        ("^AMZ.*", PatternType.REGEX, TargetField.PAYEE, "Paid AMZ", "", False),
        ("netflix", PatternType.CONTAINS, TargetField.COMBINED, "PayPal", "NETFLIX.COM", True),
        ("Spotify", PatternType.EXACT, TargetField.PAYEE, "spotify", "", True),
        ("Spotify", PatternType.EXACT, TargetField.MEMO, "Spotify", "Spotify AB", False),
    ],
)
def test_single_pattern_check_agrees_with_batch_matching(
    pattern: str,
    pattern_type: PatternType,
    target_field: TargetField,
    payee: str,
    memo: str,
    expected: bool,
) -> None:
    rule = make_rule(pattern=pattern, pattern_type=pattern_type, target_field=target_field)
    batch = RuleSet.from_rules([rule]).match(make_tx(payee=payee, memo=memo)) is not None

    assert check_pattern(pattern, pattern_type, target_field, payee=payee, memo=memo) is expected
    assert batch is expected


def test_amazon_order_id_gives_deep_link() -> None:
    links = SpecialCaseDetector().detect(make_tx(payee="AMAZON EU S.A.R.L.", memo="01302-1234567-7654321 Amazon.de"))
    assert len(links) == 1
    assert links[0].label == "Bestellung 302-1234567-7654321"
    assert links[0].url.endswith("orderID=302-1234567-7654321")


def test_amazon_without_order_id_links_history() -> None:
    links = SpecialCaseDetector().detect(make_tx(payee="AMZN Mktp DE", memo="Danke"))
    assert [link.label for link in links] == ["Amazon Orders"]


def test_paypal_detected() -> None:
    links = SpecialCaseDetector().detect(make_tx(payee="PayPal Europe S.a.r.l.", memo="PP.1234.PP Spotify"))
    assert [link.label for link in links] == ["PayPal Activity"]


def test_ordinary_payee_has_no_links() -> None:
    assert SpecialCaseDetector().detect(make_tx(payee="REWE Markt", memo="Einkauf")) == []
