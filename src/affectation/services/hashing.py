"""Stable keys for the geocode and route caches."""

from __future__ import annotations

import re
import unicodedata

FNV_OFFSET_BASIS = 2166136261
FNV_PRIME = 16777619
ROUTE_COORD_PRECISION = 5

_PUNCTUATION = re.compile(r"[^\w\s,\-]")
_WHITESPACE = re.compile(r"\s+")


def strip_accents(value: str) -> str:
    decomposed = unicodedata.normalize("NFD", value)
    return "".join(char for char in decomposed if not unicodedata.combining(char))


def normalize_address(address: str | None) -> str:
    """Lowercase, drop accents and punctuation (except commas and hyphens), collapse spaces."""
    if not address:
        return ""
    value = strip_accents(address.lower())
    value = _PUNCTUATION.sub("", value)
    return _WHITESPACE.sub(" ", value).strip()


def fnv1a_32(value: str) -> int:
    # FNV-1a over UTF-16 code units.
    digest = FNV_OFFSET_BASIS
    for unit in _utf16_units(value):
        digest ^= unit
        digest = (digest * FNV_PRIME) & 0xFFFFFFFF
    return digest


def _utf16_units(value: str):
    encoded = value.encode("utf-16-le")
    for index in range(0, len(encoded), 2):
        yield encoded[index] | (encoded[index + 1] << 8)


def hash_address(address: str | None) -> str:
    return f"addr_{fnv1a_32(normalize_address(address)):08x}"


def round_coord(value: float, precision: int = ROUTE_COORD_PRECISION) -> float:
    return round(value, precision)


def _format_coord(value: float) -> str:
    text = repr(round_coord(value))
    return text[:-2] if text.endswith(".0") else text


def hash_route_key(from_lat: float, from_lon: float, to_lat: float, to_lon: float, provider: str) -> str:
    """Key for a directed route, rounded to 5 decimals (~1 m)."""
    key = "|".join(
        [provider, _format_coord(from_lat), _format_coord(from_lon), _format_coord(to_lat), _format_coord(to_lon)]
    )
    return f"route_{provider}_{fnv1a_32(key):08x}"
