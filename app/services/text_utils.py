from __future__ import annotations

import re
import unicodedata

_WS_RE = re.compile(r'\s+')
_ISO_DATE_RE = re.compile(r'^\d{4}-\d{2}-\d{2}$')
_BR_DATE_RE = re.compile(r'^(\d{2})/(\d{2})/(\d{4})$')


def normalize_text(value: object | None) -> str:
    """Uppercase, accent-free and trimmed; used for project and sheet names."""
    if value is None:
        return ''
    decomposed = unicodedata.normalize('NFD', str(value))
    stripped = ''.join(char for char in decomposed if not unicodedata.combining(char))
    return _WS_RE.sub(' ', stripped).upper().strip()


def is_blank(value: object | None) -> bool:
    return value is None or not str(value).strip()


def clean_optional(value: object | None) -> str | None:
    if is_blank(value):
        return None
    return str(value).strip()


def parse_date(value: str | None) -> str | None:
    if not value:
        return None
    value = value.strip()
    if _ISO_DATE_RE.match(value):
        return value
    match = _BR_DATE_RE.match(value)
    if match:
        day, month, year = match.groups()
        return f'{year}-{month}-{day}'
    return None
