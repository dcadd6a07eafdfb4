"""Content normalization and fingerprinting.

The same normalized text always yields the same SHA-256 fingerprint, which is
what duplicate detection groups articles by. Everything here is pure.
"""

import hashlib
import re

from bs4 import BeautifulSoup

_WHITESPACE = re.compile(r"\s+")

# Phrases that mark an article as a stub (normalized form)
PLACEHOLDER_PHRASES = (
    "conteúdo em construção",
    "em construção",
    "em breve",
    "a definir",
    "preencher aqui",
    "inserir aqui",
    "colocar aqui",
    "under construction",
    "coming soon",
    "to be defined",
    "lorem ipsum",
    "[todo]",
    "todo:",
)


def normalize(text: str | None) -> str:
    """Trim, lower-case and collapse whitespace runs to a single space."""
    if not text:
        return ""
    return _WHITESPACE.sub(" ", text).strip().lower()


def content_hash(normalized: str | None) -> str | None:
    """SHA-256 hex digest of non-empty normalized text, None for empty input."""
    if not normalized:
        return None
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


def fingerprint(text: str | None) -> str | None:
    """Normalize and hash in one step."""
    return content_hash(normalize(text))


def clean_length(text: str | None) -> int:
    return len(normalize(text))


def html_to_text(html: str | None, separator: str = " ") -> str:
    """Visible text of an HTML fragment."""
    if not html or not html.strip():
        return ""
    soup = BeautifulSoup(html, "html.parser")
    for element in soup(["script", "style"]):
        element.decompose()
    return soup.get_text(separator=separator)


def article_fingerprint(content_text: str | None, content_html: str | None) -> str | None:
    """Fingerprint an article, preferring its plain-text variant when it has content.

    Without a text variant the visible text of the HTML is hashed, so an
    article that is only markup has no fingerprint.
    """
    if content_text and content_text.strip():
        return fingerprint(content_text)
    return fingerprint(html_to_text(content_html))


def is_effectively_empty(content_text: str | None, content_html: str | None) -> bool:
    """True when neither variant has visible text, even if markup is present."""
    return clean_length(content_text) == 0 and clean_length(html_to_text(content_html)) == 0


def has_placeholder(normalized: str) -> bool:
    """True if normalized text contains a stub marker."""
    return any(phrase in normalized for phrase in PLACEHOLDER_PHRASES)
