import pytest

from disruption_etl.streets import MatchType, find_best_match, levenshtein_distance


@pytest.mark.parametrize(
    "a,b,expected",
    [
        ("kitten", "sitting", 3),
        ("", "abc", 3),
        ("abc", "", 3),
        ("bloor st w", "bloor st w", 0),
        ("flaw", "lawn", 2),
    ],
)
def test_levenshtein_distance(a, b, expected):
    assert levenshtein_distance(a, b) == expected
    assert levenshtein_distance(b, a) == expected


def test_exact_match_on_normalized_names():
    match = find_best_match("Bloor St W", ["Bloor Street West", "Dundas Street West"], max_fuzzy_distance=3)

    assert match.match_type is MatchType.EXACT
    assert match.matched_name == "Bloor Street West"
    assert match.score == 0
    assert match.confidence == 1.0


def test_exact_match_wins_over_lexically_closer_name():
    # "Maine St" is one edit away from the raw input, "Main Street" only matches once normalized
    match = find_best_match("Main St", ["Maine St", "Main Street"], max_fuzzy_distance=3)

    assert match.match_type is MatchType.EXACT
    assert match.matched_name == "Main Street"


def test_fuzzy_match_within_threshold():
    match = find_best_match("Dundas St W", ["Bloor Street West", "Dundass Street West"], max_fuzzy_distance=3)

    assert match.match_type is MatchType.FUZZY
    assert match.matched_name == "Dundass Street West"
    assert match.score == 1
    assert match.confidence == pytest.approx(0.9)


def test_fuzzy_tie_goes_to_first_reference_name():
    match = find_best_match("Kent St", ["Kant St", "Kint St"], max_fuzzy_distance=3)

    assert match.matched_name == "Kant St"
    assert match.score == 1


def test_no_match_beyond_threshold():
    match = find_best_match("Yonge St", ["Bathurst St"], max_fuzzy_distance=3)

    assert match.match_type is MatchType.NONE
    assert match.matched_name is None
    assert match.confidence == 0
    assert not match.is_match()


def test_threshold_is_configurable():
    strict = find_best_match("Dundas St W", ["Dundass Street West"], max_fuzzy_distance=0)
    assert strict.match_type is MatchType.NONE


def test_empty_reference_list():
    match = find_best_match("Bloor St W", [])
    assert match.match_type is MatchType.NONE
    assert match.score is None
