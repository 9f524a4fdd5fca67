from __future__ import annotations

import keyword
import re
import unicodedata

from .selector_rules import clean_name

_MAX_NAME_LENGTH = 50
_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])|(?<=[A-Z])(?=[A-Z][a-z])")


def _to_ascii(value: str) -> str:
    decomposed = unicodedata.normalize("NFKD", value)
    return "".join(char for char in decomposed if not unicodedata.combining(char))


def split_words(value: str | None) -> list[str]:
    text = _to_ascii(clean_name(value))
    words: list[str] = []
    for chunk in re.split(r"[^A-Za-z0-9]+", text):
        if not chunk:
            continue
        words.extend(part for part in _CAMEL_BOUNDARY.split(chunk) if part)
    return words


def to_camel_case(value: str | None, fallback: str = "field", max_length: int = _MAX_NAME_LENGTH) -> str:
    words = split_words(value)
    if not words:
        return fallback
    head, *rest = words
    result = head.lower() + "".join(word[:1].upper() + word[1:].lower() for word in rest)
    return make_safe_identifier(result[:max_length], fallback=fallback)


def to_pascal_case(value: str | None, fallback: str = "Flow") -> str:
    words = split_words(value)
    if not words:
        return fallback
    return make_safe_identifier("".join(word[:1].upper() + word[1:].lower() for word in words), fallback=fallback)


def to_snake_case(value: str | None, fallback: str = "flow") -> str:
    words = split_words(value)
    if not words:
        return fallback
    return make_safe_identifier("_".join(word.lower() for word in words), fallback=fallback)


def make_safe_identifier(value: str, fallback: str = "field") -> str:
    cleaned = re.sub(r"[^A-Za-z0-9_]", "", value)
    if not cleaned:
        cleaned = fallback
    if cleaned[0].isdigit():
        cleaned = f"_{cleaned}"
    if keyword.iskeyword(cleaned) or cleaned in {"row", "page", "id"}:
        cleaned = f"{cleaned}Value"
    return cleaned


def humanize(value: str | None) -> str:
    """Turn a control name such as ``CustomerAccount`` into ``Customer account``."""
    words = split_words(value)
    if not words:
        return ""
    first, *rest = words
    return " ".join([first[:1].upper() + first[1:].lower(), *(word.lower() for word in rest)])


def dedupe_name(name: str, taken: set[str]) -> str:
    if name not in taken:
        return name
    suffix = 2
    while f"{name}{suffix}" in taken:
        suffix += 1
    return f"{name}{suffix}"
