"""Mangle branch names into identifiers that are safe on disk and in URLs.

Names that are short and made only of ASCII letters, digits and ``-`` are
kept as they are. Everything else is rewritten:

- ``/``, ``\\``, space, ``.`` and ``_`` fold to ``-``
- any other character becomes ``_`` followed by its hex code
- a hash of the original name is attached, separated by ``.``

The output of :func:`mangle` names existing children on disk, so the
transformation must never change for a given input.
"""

from __future__ import annotations

import hashlib
from urllib.parse import unquote

from .constants import (
    MAX_HASH_LENGTH,
    MAX_SAFE_LENGTH,
    MIN_HASH_LENGTH,
    RESERVED_NAMES,
    SEPARATOR_CHARS,
)

_DIGITS = "0123456789abcdefghijklmnopqrstuv"
_SEPARATOR_UNITS = frozenset(ord(c) for c in SEPARATOR_CHARS)


def _is_safe(unit: int) -> bool:
    return (
        0x61 <= unit <= 0x7A  # a-z
        or 0x41 <= unit <= 0x5A  # A-Z
        or 0x30 <= unit <= 0x39  # 0-9
        or unit == 0x2D  # -
    )


def _code_units(name: str) -> list[int]:
    """Split a name into UTF-16 code units."""
    data = name.encode("utf-16-le", "surrogatepass")
    return [data[i] | (data[i + 1] << 8) for i in range(0, len(data), 2)]


def _is_unmangled(name: str, units: list[int]) -> bool:
    if len(units) > MAX_SAFE_LENGTH or not units:
        return False
    if units[0] == 0x2D:
        return False
    if not all(_is_safe(u) for u in units):
        return False
    if name.lower() in RESERVED_NAMES:
        return False
    return not name.endswith(".")


def name_digest(name: str) -> str:
    """Render the SHA-1 of ``name`` five bits per character, low bits first.

    The trailing partial group is dropped.
    """
    raw = hashlib.sha1(name.encode("utf-8", "replace")).digest()
    bits = 0
    data = 0
    out: list[str] = []
    for byte in raw:
        while bits >= 5:
            out.append(_DIGITS[data & 0x1F])
            bits -= 5
            data >>= 5
        data |= byte << bits
        bits += 8
    return "".join(out)


def _rewrite(units: list[int]) -> str:
    buf = ""
    for unit in units:
        if _is_safe(unit):
            buf += chr(unit)
        elif unit in _SEPARATOR_UNITS:
            buf += "0-" if not buf else "-"
        elif unit <= 0xFF:
            buf += ("0_" if not buf else "_") + f"{unit:02x}"
        else:
            buf += ("0_" if not buf else "_") + f"{unit & 0xFF:02x}_{(unit >> 8) & 0xFF:02x}"
    return buf


def mangle(name: str) -> str:
    """Return the safe, collision-resistant identifier for ``name``.

    Total and deterministic: every string maps to exactly one identifier of
    at most ``MAX_SAFE_LENGTH`` characters (for mangled names) drawn from
    letters, digits, ``-``, ``_`` and ``.``.
    """
    units = _code_units(name)
    if _is_unmangled(name, units):
        return name

    buf = _rewrite(units)
    digest = name_digest(name)

    if len(buf) <= MAX_SAFE_LENGTH - MIN_HASH_LENGTH - 1:
        return f"{buf}.{digest[-MIN_HASH_LENGTH:]}"

    # Too long: splice the hash into the middle so the result fits exactly
    overage = len(buf) - MAX_SAFE_LENGTH
    if overage <= MIN_HASH_LENGTH:
        size = MIN_HASH_LENGTH
    elif overage > MAX_HASH_LENGTH:
        size = MAX_HASH_LENGTH
    else:
        size = overage
    hash_part = f".{digest[-size:]}."
    start = (MAX_SAFE_LENGTH - len(hash_part)) // 2
    return buf[:start] + hash_part + buf[start + len(hash_part) + overage:]


def raw_decode(name: str) -> str:
    """Undo URL percent-encoding of a child name, keeping undecodable input as is."""
    if "%" not in name or not _is_valid_percent(name):
        return name
    try:
        return unquote(name, errors="strict")
    except UnicodeDecodeError:
        return name


def _is_valid_percent(name: str) -> bool:
    i = name.find("%")
    while i != -1:
        chunk = name[i + 1:i + 3]
        if len(chunk) != 2 or any(c not in "0123456789abcdefABCDEF" for c in chunk):
            return False
        i = name.find("%", i + 3)
    return True
