"""Line-targeted helpers for TOML fragments the user may hand-edit.

Values are located and replaced with regular expressions so that every other
byte of the fragment (comments, spacing, key order) is left untouched. Full
parsing through ``tomllib`` is only used for validation.
"""

from __future__ import annotations

import json
import re
import tomllib
from typing import Optional

from provswitch.utils.log import get_logger

logger = get_logger()

_DOUBLE_QUOTES = re.compile("[“”„‟＂]")
_SINGLE_QUOTES = re.compile("[‘’＇]")
_TABLE_HEADER = re.compile(r"^[ \t]*\[\[?[^\[\]\n]*\]\]?[ \t]*(?:#.*)?$", re.MULTILINE)


def normalize_quotes(text: str) -> str:
    """Replace curly and full-width quotes with their ASCII equivalents."""
    if not text:
        return text
    return _SINGLE_QUOTES.sub("'", _DOUBLE_QUOTES.sub('"', text))


def validate_toml(text: str) -> str:
    """Return an empty string for valid TOML, otherwise the parser message."""
    if not text.strip():
        return ""
    try:
        tomllib.loads(normalize_quotes(text))
    except tomllib.TOMLDecodeError as exc:
        return str(exc) or "parse error"
    return ""


def _key_pattern(key: str) -> re.Pattern[str]:
    return re.compile(
        r"^(?P<prefix>[ \t]*" + re.escape(key) + r"[ \t]*=[ \t]*)"
        r"(?:\"(?P<basic>(?:[^\"\\\n]|\\.)*)\"|'(?P<literal>[^'\n]*)')",
        re.MULTILINE,
    )


def _decode_basic(raw: str) -> str:
    if "\\" not in raw:
        return raw
    try:
        return json.loads(f'"{raw}"')
    except ValueError:
        return raw


def _encode_basic(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


def _table_name(header: re.Match[str]) -> str:
    return header.group(0).strip().lstrip("[").split("]", 1)[0].strip()


def _key_regions(text: str, section_prefix: Optional[str]) -> list[tuple[int, int]]:
    """Spans to search for a key: matching tables first, then the top level."""
    headers = list(_TABLE_HEADER.finditer(text))
    regions: list[tuple[int, int]] = []
    if section_prefix:
        for index, header in enumerate(headers):
            if _table_name(header).startswith(section_prefix):
                end = headers[index + 1].start() if index + 1 < len(headers) else len(text)
                regions.append((header.end(), end))
    regions.append((0, headers[0].start() if headers else len(text)))
    return regions


def _find_key(text: str, key: str, section_prefix: Optional[str]) -> Optional[re.Match[str]]:
    """Locate ``key`` on the quote-normalized text.

    Every quote replaced by ``normalize_quotes`` is a single code point, so the
    match offsets are valid for the original text as well.
    """
    normalized = normalize_quotes(text)
    pattern = _key_pattern(key)
    for start, end in _key_regions(normalized, section_prefix):
        match = pattern.search(normalized, start, end)
        if match is not None:
            return match
    return None


def extract_string_value(
    text: Optional[str],
    key: str,
    *,
    section_prefix: Optional[str] = None,
) -> Optional[str]:
    """Return the string value assigned to ``key``, or None.

    With ``section_prefix`` the tables whose name starts with it are searched
    before the top level; other tables are never searched.
    """
    if not text:
        return None
    match = _find_key(text, key, section_prefix)
    if match is None:
        return None
    if match.group("basic") is not None:
        return _decode_basic(match.group("basic"))
    return match.group("literal")


def _insertion_offset(text: str, section_prefix: Optional[str]) -> int:
    """Where to insert a missing key: under the matching table, else top level."""
    headers = list(_TABLE_HEADER.finditer(text))
    if section_prefix:
        for header in headers:
            if _table_name(header).startswith(section_prefix):
                end = header.end()
                return end + 1 if end < len(text) else end
    if headers:
        return headers[0].start()
    return len(text)


def set_string_value(
    text: Optional[str],
    key: str,
    value: str,
    *,
    section_prefix: Optional[str] = None,
) -> str:
    """Set ``key = "value"`` in a fragment, touching only the affected value.

    The replaced value is always written with ASCII quotes.
    """
    source = text or ""
    match = _find_key(source, key, section_prefix)
    if match is not None:
        if match.group("literal") is not None and "'" not in value:
            quoted = f"'{value}'"
        else:
            quoted = f'"{_encode_basic(value)}"'
        return source[: match.end("prefix")] + quoted + source[match.end() :]

    line = f'{key} = "{_encode_basic(value)}"\n'
    offset = _insertion_offset(source, section_prefix)
    before, after = source[:offset], source[offset:]
    if before and not before.endswith("\n"):
        before += "\n"
    logger.debug(
        "[toml_text] Inserted missing key",
        extra={"key": key, "section_prefix": section_prefix, "offset": offset},
    )
    return before + line + after


def remove_key(text: Optional[str], key: str, *, section_prefix: Optional[str] = None) -> str:
    """Drop the line assigning ``key``."""
    source = text or ""
    match = _find_key(source, key, section_prefix)
    if match is None:
        return source
    line_start = match.start()
    line_end = source.find("\n", match.end())
    line_end = len(source) if line_end == -1 else line_end + 1
    return source[:line_start] + source[line_end:]
