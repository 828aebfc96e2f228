import pytest

from discogs_atlas.core.countries import normalize_country


@pytest.mark.parametrize("raw", [None, "", "   ", "\t\n"])
def test_normalize_country_treats_blank_as_unknown(raw: str | None) -> None:
    assert normalize_country(raw) == "Unknown"


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("UK", "GB"),
        ("U.K.", "GB"),
        ("United Kingdom", "GB"),
        (" United Kingdom ", "GB"),
        ("USA", "US"),
        ("U.S.A.", "US"),
        ("United States", "US"),
    ],
)
def test_normalize_country_maps_synonyms(raw: str, expected: str) -> None:
    assert normalize_country(raw) == expected


@pytest.mark.parametrize("raw", ["Europe", "Worldwide"])
def test_normalize_country_buckets_regions_as_unmapped(raw: str) -> None:
    assert normalize_country(raw) == "Unmapped"


def test_normalize_country_keeps_other_values_trimmed() -> None:
    assert normalize_country("  Germany ") == "Germany"
    assert normalize_country("UK & Europe") == "UK & Europe"


def test_normalize_country_synonyms_are_case_sensitive() -> None:
    assert normalize_country("uk") == "uk"
