"""Organization name normalization shared by verification and identity history."""

from __future__ import annotations

import re

_WHITESPACE = re.compile(r"\s+")
_NAME_PUNCTUATION = re.compile(r"[^\w\s&]")
_ORG_SUFFIXES = ("inc", "incorporated", "corp", "corporation", "llc", "ltd", "co")


def normalize_org_name(name: str | None) -> str:
    """Comparable organization token: casefolded, punctuation stripped, spaces collapsed."""
    if not name:
        return ""
    cleaned = _NAME_PUNCTUATION.sub(" ", name.casefold())
    return _WHITESPACE.sub(" ", cleaned).strip()


def strip_org_suffixes(name: str | None) -> str:
    """Normalized name without a leading ``the`` or trailing corporate suffixes."""
    tokens = normalize_org_name(name).split()
    if tokens and tokens[0] == "the":
        tokens = tokens[1:]
    while tokens and tokens[-1] in _ORG_SUFFIXES:
        tokens = tokens[:-1]
    return " ".join(tokens)
