"""
Identifier sanitization — the only path by which a table or column name
reaches generated SQL text.

Values never go through here; they are always bound parameters. Builders
accept ``SafeIdentifier`` for names and refuse plain strings, so the two
paths cannot be mixed.
"""

from __future__ import annotations

import re
from typing import Union

from sqlalchemy.engine import Dialect

_UNSAFE = re.compile(r"[^A-Za-z0-9_]")

FIELD_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
MAX_IDENTIFIER_LENGTH = 64


class SafeIdentifier(str):
    """A table/column name that has already been reduced to ``[A-Za-z0-9_]``.

    Only ``sanitize_identifier`` should construct one.
    """

    __slots__ = ()

    def quoted(self, dialect: Dialect) -> str:
        # quotes only reserved words and names that need it
        return dialect.identifier_preparer.quote(str(self))


def sanitize_identifier(name: Union[str, SafeIdentifier]) -> SafeIdentifier:
    """Strip every character outside ``[A-Za-z0-9_]``.

    >>> sanitize_identifier("users; DROP TABLE x--")
    'usersDROPTABLEx'

    Raises ValueError when nothing survives.
    """
    if isinstance(name, SafeIdentifier):
        return name
    cleaned = _UNSAFE.sub("", str(name))
    if not cleaned:
        raise ValueError(f"identifier {name!r} has no usable characters")
    return SafeIdentifier(cleaned)


def quote(name: Union[str, SafeIdentifier], dialect: Dialect) -> str:
    """Sanitize then quote for the given dialect."""
    return sanitize_identifier(name).quoted(dialect)


def is_valid_field_name(name: str) -> bool:
    """True for names usable verbatim as a column (no sanitization loss)."""
    return bool(FIELD_NAME_PATTERN.match(name)) and len(name) <= MAX_IDENTIFIER_LENGTH
