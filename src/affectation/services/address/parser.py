"""Free-text address parsing and degraded query builders for fallback geocoding.

``parse_address`` never raises: whatever the input, it returns a
``ParsedAddress`` whose ``quality`` and ``issues`` describe what could be
recovered. Country detection follows a small decision table:

* an explicit trailing country keyword ("..., France") wins;
* an ``L-`` prefixed code means Luxembourg;
* a 5-digit code means France;
* a bare 4-digit code means Luxembourg.

The last rule misreads any other 4-digit token (a long house number, a
Belgian or Swiss code without its keyword) as a Luxembourg postal code.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from ..hashing import strip_accents


class Country(str, Enum):
    FR = "FR"
    LU = "LU"
    BE = "BE"
    DE = "DE"
    CH = "CH"


class AddressQuality(str, Enum):
    COMPLETE = "complete"
    PARTIAL = "partial"
    MINIMAL = "minimal"
    INVALID = "invalid"


class AddressIssue(str, Enum):
    EMPTY = "empty_address"
    MISSING_STREET = "missing_street"
    MISSING_HOUSE_NUMBER = "missing_house_number"
    MISSING_CITY = "missing_city"
    MISSING_POSTAL_CODE = "missing_postal_code"


COUNTRY_NAMES = {
    Country.FR: "France",
    Country.LU: "Luxembourg",
    Country.BE: "Belgique",
    Country.DE: "Deutschland",
    Country.CH: "Suisse",
}

COUNTRY_KEYWORDS = {
    "france": Country.FR,
    "luxembourg": Country.LU,
    "grand-duche de luxembourg": Country.LU,
    "belgique": Country.BE,
    "belgium": Country.BE,
    "belgie": Country.BE,
    "allemagne": Country.DE,
    "deutschland": Country.DE,
    "germany": Country.DE,
    "suisse": Country.CH,
    "schweiz": Country.CH,
    "switzerland": Country.CH,
}

_POSTAL_DIGITS = {
    Country.FR: r"\d{5}",
    Country.DE: r"\d{5}",
    Country.LU: r"\d{4}",
    Country.BE: r"\d{4}",
    Country.CH: r"\d{4}",
}

_POSTAL_PREFIX = {
    Country.FR: "",
    Country.DE: r"(?:D\s*-\s*)?",
    Country.LU: r"(?:L\s*-\s*)?",
    Country.BE: r"(?:B\s*-\s*)?",
    Country.CH: r"(?:CH\s*-\s*)?",
}

_WORD_CHARS = r"[^\W\d_]"
_CITY = rf"{_WORD_CHARS}+(?:[\s'’\-]+{_WORD_CHARS}+)*"
_CITY_LAZY = rf"{_WORD_CHARS}+?(?:[\s'’\-]+{_WORD_CHARS}+?)*?"

_WHITESPACE = re.compile(r"\s+")
_WORD = re.compile(rf"{_WORD_CHARS}+")
_CITY_SUFFIX = re.compile(r"\s+(?:cedex(?:\s*\d+)?|bp\s*\d+)\s*$", re.IGNORECASE)
_POSTAL_BOX = re.compile(r",?\s*\b(?:bp|cs)\s*\d+\b", re.IGNORECASE)
_HOUSE_NUMBER = re.compile(r"^\s*(\d+(?:\s*(?:bis|ter|quater|[a-d])\b)?)[\s,]+", re.IGNORECASE)
_LU_PREFIXED = re.compile(r"(?<![\w])L\s*-\s*\d{4}(?!\w)", re.IGNORECASE)
_FIVE_DIGITS = re.compile(r"(?<![\w-])\d{5}(?!\w)")
_FOUR_DIGITS = re.compile(r"(?<![\w-])\d{4}(?!\w)")

_LOWERCASE_WORDS = frozenset(
    {"de", "du", "des", "le", "la", "les", "sur", "sous", "en", "et", "l", "d", "aux", "au", "lès", "lez"}
)
_CITY_MAX_LENGTH = 50


@dataclass(slots=True)
class ParsedAddress:
    full_address: str
    street: Optional[str] = None
    house_number: Optional[str] = None
    postal_code: Optional[str] = None
    city: Optional[str] = None
    country: Optional[Country] = None
    quality: AddressQuality = AddressQuality.INVALID
    issues: list[AddressIssue] = field(default_factory=list)

    @property
    def has_locality(self) -> bool:
        """True when a city or a postal code was recovered."""
        return bool(self.city or self.postal_code)


def _fold(value: str) -> str:
    return _WHITESPACE.sub(" ", strip_accents(value).lower()).strip()


def _postal_pattern(country: Country) -> str:
    return rf"{_POSTAL_PREFIX[country]}(?P<postal>{_POSTAL_DIGITS[country]})"


def _split_country_keyword(text: str) -> tuple[str, Optional[Country]]:
    """Detach a trailing ", <country>" segment.

    The segment is only removed when something else can still carry the
    locality, so "2 rue Neuve, Luxembourg" keeps Luxembourg as the city.
    """
    segments = [segment.strip() for segment in text.split(",")]
    if len(segments) < 2:
        return text, None
    country = COUNTRY_KEYWORDS.get(_fold(segments[-1]))
    if country is None:
        return text, None
    remainder = ", ".join(segments[:-1]).strip()
    if len(segments) > 2 or re.search(r"\d{4}", remainder):
        return remainder, country
    return text, country


def detect_country(text: str, keyword_country: Optional[Country] = None) -> Optional[Country]:
    if keyword_country is not None:
        return keyword_country
    if _LU_PREFIXED.search(text):
        return Country.LU
    if _FIVE_DIGITS.search(text):
        return Country.FR
    if _FOUR_DIGITS.search(text):
        return Country.LU
    return None


def clean_city_name(city: str) -> str:
    """Tidy a city name: collapse spaces, drop cedex/BP suffixes, fix the casing.

    Accents are kept; linking words (de, la, sur, lès...) stay lowercase
    unless they open the name.
    """
    value = _WHITESPACE.sub(" ", city.strip())
    value = _CITY_SUFFIX.sub("", value).strip()
    value = re.sub(r"\s*-\s*", "-", value)

    def _case(match: re.Match[str]) -> str:
        lower = match.group(0).lower()
        if match.start() > 0 and lower in _LOWERCASE_WORDS:
            return lower
        return lower[:1].upper() + lower[1:]

    return _WORD.sub(_case, value)


def _strip_keyword_from_city(city: str, parsed: ParsedAddress) -> str:
    words = city.split(" ")
    if len(words) > 1:
        country = COUNTRY_KEYWORDS.get(_fold(words[-1]))
        if country is not None:
            parsed.country = parsed.country or country
            return " ".join(words[:-1])
    return city


def _street_before(text: str, end: int) -> Optional[str]:
    street = text[:end].strip().rstrip(",").strip()
    return street or None


def _match_locality(text: str, country: Country, parsed: ParsedAddress) -> bool:
    postal = _postal_pattern(country)
    patterns = (
        rf"(?:,\s*)?{postal}\s+(?P<city>{_CITY})$",
        rf"(?P<city>{_CITY})\s*\(\s*{postal}\s*\)$",
        rf"(?:,\s*)?(?P<city>{_CITY_LAZY})\s+{postal}$",
    )
    for pattern in patterns:
        match = re.search(pattern, text)
        if match:
            parsed.postal_code = match.group("postal")
            parsed.city = clean_city_name(_strip_keyword_from_city(match.group("city"), parsed))
            parsed.street = _street_before(text, match.start())
            return True

    match = re.search(rf"(?<![\w-]){postal}(?!\w)", text)
    if match:
        parsed.postal_code = match.group("postal")
        after = text[match.end():]
        trailing = re.match(rf"^\s*(?P<city>{_CITY})\s*(?:,|$)", after)
        if trailing:
            parsed.city = clean_city_name(_strip_keyword_from_city(trailing.group("city"), parsed))
            parsed.street = _street_before(text, match.start())
        elif not after.strip(" ,"):
            before = text[:match.start()].rstrip(" ,")
            head, _, candidate = before.rpartition(",")
            candidate = candidate.strip()
            if head and candidate and not re.search(r"\d", candidate) and len(candidate) <= _CITY_MAX_LENGTH:
                parsed.city = clean_city_name(candidate)
                parsed.street = head.strip() or None
            else:
                parsed.street = before.strip() or None
        else:
            parsed.street = _street_before(text, match.start())
        return True
    return False


def _match_comma_segments(text: str, parsed: ParsedAddress) -> None:
    head, separator, last = text.rpartition(",")
    if not separator:
        parsed.street = text or None
        return
    last = last.strip()
    if last and not re.search(r"\d", last) and len(last) <= _CITY_MAX_LENGTH:
        parsed.city = clean_city_name(_strip_keyword_from_city(last, parsed))
        parsed.street = head.strip() or None
    else:
        parsed.street = text or None


def _classify(parsed: ParsedAddress) -> None:
    recovered = {
        AddressIssue.MISSING_STREET: parsed.street,
        AddressIssue.MISSING_HOUSE_NUMBER: parsed.house_number,
        AddressIssue.MISSING_CITY: parsed.city,
        AddressIssue.MISSING_POSTAL_CODE: parsed.postal_code,
    }
    parsed.issues = [issue for issue, value in recovered.items() if not value]
    if not parsed.issues:
        parsed.quality = AddressQuality.COMPLETE
    elif parsed.street and parsed.has_locality:
        parsed.quality = AddressQuality.PARTIAL
    elif any(recovered.values()):
        parsed.quality = AddressQuality.MINIMAL
    else:
        parsed.quality = AddressQuality.INVALID


def parse_address(raw: str | None) -> ParsedAddress:
    """Split a free-text address into street, house number, postal code, city and country."""
    if not raw or not isinstance(raw, str) or not raw.strip():
        return ParsedAddress(full_address="", issues=[AddressIssue.EMPTY])

    full_address = _WHITESPACE.sub(" ", raw.strip())
    parsed = ParsedAddress(full_address=full_address)

    text, keyword_country = _split_country_keyword(full_address)
    text = _POSTAL_BOX.sub("", text)
    text = _CITY_SUFFIX.sub("", text).strip().rstrip(",").strip()

    parsed.country = detect_country(text, keyword_country)
    matched = parsed.country is not None and _match_locality(text, parsed.country, parsed)
    if not matched:
        _match_comma_segments(text, parsed)

    if parsed.street:
        number = _HOUSE_NUMBER.match(parsed.street)
        if number and number.end() < len(parsed.street):
            parsed.house_number = _WHITESPACE.sub("", number.group(1)).lower()

    _classify(parsed)
    return parsed


def _format_postal(parsed: ParsedAddress) -> Optional[str]:
    if not parsed.postal_code:
        return None
    if parsed.country is Country.LU:
        return f"L-{parsed.postal_code}"
    return parsed.postal_code


def _with_country(query: str, parsed: ParsedAddress) -> str:
    if parsed.country is None or parsed.country is Country.FR:
        return query
    return f"{query}, {COUNTRY_NAMES[parsed.country]}"


def build_city_query(parsed: ParsedAddress) -> Optional[str]:
    """"57190 Florange", or whichever of city / postal code is known."""
    parts = [part for part in (_format_postal(parsed), parsed.city) if part]
    if not parts:
        return None
    return _with_country(" ".join(parts), parsed)


def build_townhall_query(parsed: ParsedAddress) -> Optional[str]:
    if not parsed.city:
        return None
    if _fold(parsed.city[:1]) in {"a", "e", "i", "o", "u", "y", "h"}:
        query = f"Mairie d'{parsed.city}"
    else:
        query = f"Mairie de {parsed.city}"
    return _with_country(query, parsed)


def street_without_number(parsed: ParsedAddress) -> Optional[str]:
    if not parsed.street:
        return None
    if not parsed.house_number:
        return parsed.street
    match = _HOUSE_NUMBER.match(parsed.street)
    if not match:
        return parsed.street
    return parsed.street[match.end():].strip() or None


def build_variant_queries(parsed: ParsedAddress) -> list[str]:
    """Extra relaxed queries tried after the city and town hall tiers."""
    locality = build_city_query(parsed)
    candidates: list[Optional[str]] = []

    bare_street = street_without_number(parsed)
    if bare_street and locality and parsed.house_number:
        candidates.append(f"{bare_street}, {locality}")
    if parsed.street and parsed.city and parsed.postal_code:
        candidates.append(_with_country(f"{parsed.street}, {parsed.city}", parsed))
    if bare_street and parsed.city and parsed.house_number:
        candidates.append(_with_country(f"{bare_street}, {parsed.city}", parsed))
    if parsed.city and parsed.postal_code:
        candidates.append(_with_country(parsed.city, parsed))

    excluded = {_fold(value) for value in (parsed.full_address, locality, build_townhall_query(parsed)) if value}
    variants: list[str] = []
    seen: set[str] = set()
    for candidate in candidates:
        if not candidate:
            continue
        key = _fold(candidate)
        if key in excluded or key in seen:
            continue
        seen.add(key)
        variants.append(candidate)
    return variants
