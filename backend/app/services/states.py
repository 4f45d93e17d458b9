from __future__ import annotations

from app.services.normalize import strip_accents

US_STATES: dict[str, str] = {
    "AL": "Alabama",
    "AK": "Alaska",
    "AZ": "Arizona",
    "AR": "Arkansas",
    "CA": "California",
    "CO": "Colorado",
    "CT": "Connecticut",
    "DE": "Delaware",
    "DC": "District of Columbia",
    "FL": "Florida",
    "GA": "Georgia",
    "HI": "Hawaii",
    "ID": "Idaho",
    "IL": "Illinois",
    "IN": "Indiana",
    "IA": "Iowa",
    "KS": "Kansas",
    "KY": "Kentucky",
    "LA": "Louisiana",
    "ME": "Maine",
    "MD": "Maryland",
    "MA": "Massachusetts",
    "MI": "Michigan",
    "MN": "Minnesota",
    "MS": "Mississippi",
    "MO": "Missouri",
    "MT": "Montana",
    "NE": "Nebraska",
    "NV": "Nevada",
    "NH": "New Hampshire",
    "NJ": "New Jersey",
    "NM": "New Mexico",
    "NY": "New York",
    "NC": "North Carolina",
    "ND": "North Dakota",
    "OH": "Ohio",
    "OK": "Oklahoma",
    "OR": "Oregon",
    "PA": "Pennsylvania",
    "PR": "Puerto Rico",
    "RI": "Rhode Island",
    "SC": "South Carolina",
    "SD": "South Dakota",
    "TN": "Tennessee",
    "TX": "Texas",
    "UT": "Utah",
    "VT": "Vermont",
    "VA": "Virginia",
    "WA": "Washington",
    "WV": "West Virginia",
    "WI": "Wisconsin",
    "WY": "Wyoming",
}

# Spanish spellings seen on the Spanish-language intake forms.
SPANISH_STATE_NAMES: dict[str, str] = {
    "carolina del norte": "NC",
    "carolina del sur": "SC",
    "dakota del norte": "ND",
    "dakota del sur": "SD",
    "nueva york": "NY",
    "nueva jersey": "NJ",
    "nuevo mexico": "NM",
    "nuevo hampshire": "NH",
    "pensilvania": "PA",
    "luisiana": "LA",
    "misisipi": "MS",
    "misuri": "MO",
    "tennesse": "TN",
    "virginia occidental": "WV",
    "hawai": "HI",
    "distrito de columbia": "DC",
    "washington dc": "DC",
    "washington d.c.": "DC",
}

_NAME_TO_CODE = {name.lower(): code for code, name in US_STATES.items()}


def abbreviate_state(value: str | None) -> str | None:
    """Return the two-letter code for a state name, code or Spanish name.

    Unrecognised values are returned unchanged (trimmed) so nothing is lost.
    """
    if value is None:
        return None
    cleaned = " ".join(str(value).split())
    if not cleaned:
        return None
    upper = cleaned.upper().replace(".", "")
    if upper in US_STATES:
        return upper
    key = strip_accents(cleaned).lower()
    if key in _NAME_TO_CODE:
        return _NAME_TO_CODE[key]
    if key in SPANISH_STATE_NAMES:
        return SPANISH_STATE_NAMES[key]
    return cleaned
