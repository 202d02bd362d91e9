from ire.domain.models import Ingredient
from ire.services.matching_service import match_ingredient


def _catalog(*names: str) -> list[Ingredient]:
    return [Ingredient(id=i + 1, branch_id="b1", name=n, unit="ea", current_qty=0.0) for i, n in enumerate(names)]


def test_exact_case_sensitive_match_wins_over_earlier_case_insensitive_one():
    catalog = _catalog("MILK", "Milk")
    assert match_ingredient("Milk", catalog).id == 2


def test_case_insensitive_match_takes_first_in_catalog_order():
    catalog = _catalog("MILK", "Milk")
    assert match_ingredient("milk", catalog).id == 1


def test_exact_match_beats_earlier_substring_candidate():
    catalog = _catalog("Milk Powder", "milk")
    assert match_ingredient("Milk", catalog).id == 2


def test_substring_matches_in_both_directions():
    catalog = _catalog("Milk", "Green Onion")
    assert match_ingredient("Whole milk 1L", catalog).name == "Milk"
    assert match_ingredient("onion", catalog).name == "Green Onion"


def test_input_is_trimmed_before_matching():
    catalog = _catalog("Sugar")
    assert match_ingredient("  Sugar  ", catalog).id == 1


def test_no_match_blank_input_and_empty_catalog_return_none():
    catalog = _catalog("Salt", "Pepper")
    assert match_ingredient("Vinegar", catalog) is None
    assert match_ingredient("   ", catalog) is None
    assert match_ingredient(None, catalog) is None
    assert match_ingredient("Salt", []) is None
