from __future__ import annotations

import re
import unicodedata
from typing import Iterable

_WHITESPACE = re.compile(r"\s+")
_APOSTROPHES = re.compile(r"['’`]")


def strip_accents(value: str) -> str:
    value = value.replace("ñ", "n").replace("Ñ", "N")
    decomposed = unicodedata.normalize("NFD", value)
    return "".join(ch for ch in decomposed if unicodedata.category(ch) != "Mn")


def normalize_name(value: str | None) -> str:
    """Title-case a person name with accents and apostrophes removed.

    ``"JOSÉ o'neil"`` becomes ``"Jose Oneil"``.
    """
    if not value:
        return ""
    cleaned = _APOSTROPHES.sub("", strip_accents(str(value)))
    words = _WHITESPACE.split(cleaned.strip())
    return " ".join(word[:1].upper() + word[1:].lower() for word in words if word)


def normalize_email(value: str | None) -> str | None:
    if value is None:
        return None
    cleaned = str(value).strip().lower()
    return cleaned or None


def normalize_hashtag(value: str | None) -> str:
    if not value:
        return ""
    return _WHITESPACE.sub("", str(value)).lstrip("#").lower()


def merge_hashtags(existing: Iterable[str] | None, incoming: Iterable[str] | None) -> list[str]:
    merged: list[str] = []
    for tag in list(existing or []) + list(incoming or []):
        normalized = normalize_hashtag(tag)
        if normalized and normalized not in merged:
            merged.append(normalized)
    return merged
