import pandas as pd
import pytest

from disruption_etl.streets import (
    StreetNormalizer,
    extract_street_names,
    normalize_street_name,
)


def test_extracts_street_with_abbreviated_suffix_and_direction():
    names = extract_street_names("Major watermain repairs on Bloor Street West near Jane")
    assert names == ["Bloor St W"]


def test_stop_words_and_suffixless_words_are_not_streets():
    names = extract_street_names("Major watermain repairs on Bloor Street West near Jane")
    assert "Jane" not in names
    assert not any(n.startswith(("Major", "Watermain")) for n in names)


def test_extracts_several_streets_in_order():
    text = "Road closure on Queen Street East between Yonge St and Bay Street"
    assert extract_street_names(text) == ["Queen St E", "Yonge St", "Bay St"]


def test_repeated_mentions_are_returned_once():
    text = "King St W closed. King Street West reopening tomorrow"
    assert extract_street_names(text) == ["King St W"]


def test_leading_stop_word_is_skipped():
    assert extract_street_names("Hydro Work on Main Street") == ["Main St"]


def test_multi_word_names_are_kept():
    assert extract_street_names("Paving on Don Mills Road") == ["Don Mills Rd"]


@pytest.mark.parametrize("text", ["", "No streets mentioned here", "lowercase bloor street west"])
def test_text_without_streets_yields_nothing(text):
    assert extract_street_names(text) == []


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("Bloor Street West", "bloor st w"),
        ("  Spadina   Avenue ", "spadina ave"),
        ("Eglinton Ave E", "eglinton ave e"),
        ("Don Valley Parkway", "don valley pkwy"),
        ("Lakeshore Boulevard West", "lakeshore blvd w"),
        ("Sunnyside Court", "sunnyside crt"),
        ("Kingsway Crescent North", "kingsway cres n"),
        ("", ""),
    ],
)
def test_normalize_street_name(raw, expected):
    assert normalize_street_name(raw) == expected


@pytest.mark.parametrize(
    "raw",
    ["Bloor Street West", "St Clair Avenue East", "  Queen   St  W ", "Lane Way Drive South", "Yonge"],
)
def test_normalization_is_idempotent(raw):
    once = normalize_street_name(raw)
    assert normalize_street_name(once) == once


def test_normalizer_handles_series_like_single_values():
    normalizer = StreetNormalizer()
    values = pd.Series(["Bloor Street West", None, "Dundas  Street   East"])

    result = normalizer.normalize_series(values)

    assert result.tolist() == ["bloor st w", "", "dundas st e"]
    assert normalizer.normalize_batch(["Bloor Street West"]) == ["bloor st w"]
