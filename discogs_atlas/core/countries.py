from __future__ import annotations

UNKNOWN_COUNTRY = "Unknown"
UNMAPPED_COUNTRY = "Unmapped"

# Exact matches only, applied after trimming.
COUNTRY_SYNONYMS: dict[str, str] = {
    "UK": "GB",
    "U.K.": "GB",
    "United Kingdom": "GB",
    "USA": "US",
    "U.S.A.": "US",
    "United States": "US",
    "Europe": UNMAPPED_COUNTRY,
    "Worldwide": UNMAPPED_COUNTRY,
}


def normalize_country(raw: str | None) -> str:
    """Map a raw release country onto the bucket used for aggregation.

    Values outside the synonym table are kept as-is (trimmed); any string is a
    valid bucket.
    """
    if not isinstance(raw, str):
        return UNKNOWN_COUNTRY
    cleaned = raw.strip()
    if not cleaned:
        return UNKNOWN_COUNTRY
    return COUNTRY_SYNONYMS.get(cleaned, cleaned)
