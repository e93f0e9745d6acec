"""Normalization helpers shared by deduplication, history and verification."""

from __future__ import annotations

import re
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

SLUG_PATTERN = re.compile(r"[^a-z0-9]+")
_WHITESPACE = re.compile(r"\s+")
_TRACKING_PREFIXES = ("utm_", "fbclid", "gclid", "mc_")
_SENSITIVE_TOKENS = ("key", "token", "signature")


def slugify(name: str) -> str:
    """Create a URL/filesystem friendly slug."""
    slug = SLUG_PATTERN.sub("-", name.lower()).strip("-")
    return slug or "item"


def normalize_text(value: str | None) -> str:
    """Casefold and collapse whitespace for similarity comparisons."""
    if not value:
        return ""
    return _WHITESPACE.sub(" ", value.casefold()).strip()


def canonicalize_url(url: str | None) -> str | None:
    """Normalize URLs so that tracking noise does not defeat identity checks."""
    if not url:
        return None
    candidate = url.strip()
    if not candidate:
        return None
    parsed = urlparse(candidate if "://" in candidate else f"https://{candidate}")
    if not parsed.netloc:
        return None
    filtered_query = [
        (key, value)
        for key, value in parse_qsl(parsed.query, keep_blank_values=True)
        if not key.lower().startswith(_TRACKING_PREFIXES)
        and not any(token in key.lower() for token in _SENSITIVE_TOKENS)
    ]
    path = parsed.path.rstrip("/") if parsed.path not in ("", "/") else ""
    sanitized = parsed._replace(
        scheme=parsed.scheme.lower(),
        netloc=parsed.netloc.lower(),
        path=path,
        query=urlencode(filtered_query, doseq=True),
        fragment="",
    )
    return urlunparse(sanitized)


def normalize_host(value: str | None) -> str:
    """Lowercased host without port or leading ``www.``."""
    if not value:
        return ""
    parsed = urlparse(value if "://" in value else f"https://{value}")
    host = (parsed.netloc or parsed.path).lower()
    if ":" in host:
        host = host.split(":", 1)[0]
    if host.startswith("www."):
        host = host[4:]
    return host
