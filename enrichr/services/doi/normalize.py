from __future__ import annotations

from collections.abc import Iterable
import re
from urllib.parse import unquote

DOI_RE = re.compile(r"10\.\d{4,9}/[-._;()/:A-Z0-9<>\[\]]+", re.I)
_TRAILING_PUNCTUATION = " .;,)]"


def normalize_doi(value: str | None) -> str | None:
    if not value:
        return None
    match = DOI_RE.search(unquote(value))
    if not match:
        return None
    return match.group(0).rstrip(_TRAILING_PUNCTUATION).lower() or None


def normalize_dois(values: Iterable[str | None]) -> list[str]:
    """Normalize and de-duplicate DOIs, keeping first-seen order."""
    seen: set[str] = set()
    ordered: list[str] = []
    for value in values:
        doi = normalize_doi(value)
        if doi and doi not in seen:
            seen.add(doi)
            ordered.append(doi)
    return ordered
