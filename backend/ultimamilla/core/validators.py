"""RUT, plate and slug helpers shared by the stores and state machines."""
from __future__ import annotations

import re
import unicodedata

PLATE_PATTERNS = (
    re.compile(r"^[A-Z]{2}\d{4}$"),
    re.compile(r"^[A-Z]{4}\d{2}$"),
)

SLUG_STOPWORDS = {
    "sa", "s", "a", "ltda", "spa", "limitada", "ltd", "srl", "eirl", "inc", "corp",
    "cia", "compania", "y", "de", "del", "la", "el", "los", "las",
}


def clean_rut(value: str | None) -> str:
    return re.sub(r"[.\-\s]", "", str(value or "")).upper()


def rut_check_digit(body: str) -> str:
    """Modulo-11 check digit for the numeric body of a RUT."""
    total = 0
    factor = 2
    for char in reversed(body):
        total += int(char) * factor
        factor = 2 if factor == 7 else factor + 1
    expected = 11 - (total % 11)
    if expected == 11:
        return "0"
    if expected == 10:
        return "K"
    return str(expected)


def is_valid_rut(value: str | None) -> bool:
    cleaned = clean_rut(value)
    if len(cleaned) < 2:
        return False
    body, digit = cleaned[:-1], cleaned[-1]
    if not body.isdigit():
        return False
    return rut_check_digit(body) == digit


def format_rut(value: str | None) -> str:
    """Render a RUT as `12.345.678-5`."""
    cleaned = clean_rut(value)
    if len(cleaned) < 2:
        return cleaned
    body, digit = cleaned[:-1], cleaned[-1]
    grouped = f"{int(body):,}".replace(",", ".") if body.isdigit() else body
    return f"{grouped}-{digit}"


def normalize_plate(value: str | None) -> str:
    return re.sub(r"[\s\-]", "", str(value or "")).upper()


def is_valid_plate(value: str | None) -> bool:
    plate = normalize_plate(value)
    return any(pattern.match(plate) for pattern in PLATE_PATTERNS)


def slugify_carrier(name: str | None) -> str:
    text = unicodedata.normalize("NFD", str(name or ""))
    text = "".join(char for char in text if unicodedata.category(char) != "Mn").lower()
    text = re.sub(r"[^a-z0-9\s]", " ", text)
    words = [word for word in text.split() if word and word not in SLUG_STOPWORDS]
    return "".join(words)
