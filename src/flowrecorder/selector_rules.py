from __future__ import annotations

import re
from math import log2

CONTROL_NAME_ATTR = "data-dyn-controlname"
MENU_TEXT_ATTRS = ("data-dyn-menutext", "data-dyn-title")

ROOT_ID_BLOCKLIST = {"root", "app", "body", "shell", "maincontent"}

_HOTKEY_HINT_PATTERN = re.compile(r"\s*\((?:alt|ctrl|shift)\s*\+\s*[^)]{1,12}\)", re.IGNORECASE)
_PRIVATE_USE_PATTERN = re.compile("[\ue000-\uf8ff]")
_ZERO_WIDTH_PATTERN = re.compile("[\u200b-\u200f\u2060\ufeff]")

_DYNAMIC_VALUE_PATTERNS = (
    re.compile(r"^[0-9]{4,}$"),
    re.compile(r"^[a-f0-9]{8}-[a-f0-9]{4}-[a-f0-9]{4}-[a-f0-9]{4}-[a-f0-9]{12}$", re.IGNORECASE),
    re.compile(r"[_:-]\d{3,}$"),
    re.compile(r".*\d{5,}.*"),
)

_DYNAMIC_CLASS_PATTERNS = (
    re.compile(r"^css-[a-z0-9_-]{4,}$", re.IGNORECASE),
    re.compile(r"^jss\d+$", re.IGNORECASE),
    re.compile(r"^[a-f0-9]{8,}$", re.IGNORECASE),
)


def normalize_space(value: str | None, limit: int = 200) -> str:
    if not value:
        return ""
    compact = re.sub(r"\s+", " ", str(value)).strip()
    return compact[:limit] if compact else ""


def strip_hotkey_hints(value: str) -> str:
    return _HOTKEY_HINT_PATTERN.sub("", value)


def strip_glyphs(value: str) -> str:
    return _ZERO_WIDTH_PATTERN.sub("", _PRIVATE_USE_PATTERN.sub("", value))


def clean_name(value: str | None, limit: int = 200) -> str:
    """Visible name with hotkey hints, icon-font glyphs and extra whitespace removed."""
    if not value:
        return ""
    return normalize_space(strip_glyphs(strip_hotkey_hints(str(value))), limit=limit)


def shannon_entropy(value: str) -> float:
    text = value.strip()
    if not text:
        return 0.0
    total = len(text)
    frequencies: dict[str, int] = {}
    for char in text:
        frequencies[char] = frequencies.get(char, 0) + 1

    entropy = 0.0
    for count in frequencies.values():
        probability = count / total
        entropy -= probability * log2(probability)
    return entropy


def digit_ratio(value: str) -> float:
    text = value.strip()
    if not text:
        return 0.0
    digits = sum(1 for char in text if char.isdigit())
    return digits / len(text)


def has_hash_like_pattern(value: str) -> bool:
    text = value.strip()
    if not text:
        return False
    if re.fullmatch(r"[a-f0-9]{8,}", text, flags=re.IGNORECASE):
        return True
    # camel-case names like "SystemDefinedNewButton" never contain ten hex chars in a row
    return bool(re.search(r"[a-f0-9]{10,}", text, flags=re.IGNORECASE))


def is_dynamic_value(value: str) -> bool:
    text = normalize_space(value)
    if not text:
        return True
    if digit_ratio(text) > 0.4:
        return True
    if has_hash_like_pattern(text):
        return True
    if shannon_entropy(text) >= 4.2 and len(text) >= 8 and digit_ratio(text) > 0.15:
        return True
    return any(pattern.search(text) for pattern in _DYNAMIC_VALUE_PATTERNS)


def is_dynamic_id_value(id_value: str) -> bool:
    value = id_value.strip()
    if not value or value.lower() in ROOT_ID_BLOCKLIST:
        return True
    if "_" in value and re.search(r"_\d+(_|$)", value):
        return True
    return is_dynamic_value(value)


def is_dynamic_class_token(token: str) -> bool:
    value = token.strip()
    if not value:
        return True
    return any(pattern.match(value) for pattern in _DYNAMIC_CLASS_PATTERNS)


def escape_css_string(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


def escape_css_identifier(value: str) -> str:
    escaped: list[str] = []
    for char in value:
        if char.isalnum() or char in ("-", "_"):
            escaped.append(char)
        else:
            escaped.append(f"\\{ord(char):x} ")
    return "".join(escaped)


def xpath_literal(value: str) -> str:
    if "'" not in value:
        return f"'{value}'"
    if '"' not in value:
        return f'"{value}"'
    pieces = value.split("'")
    quoted = [f"'{piece}'" for piece in pieces]
    return "concat(" + ", \"'\", ".join(quoted) + ")"


def attribute_selector(attribute: str, value: str) -> str:
    return f'[{attribute}="{escape_css_string(value)}"]'


def role_selector(role: str, name: str) -> str:
    return f'role={role}[name="{escape_css_string(name)}"]'
