"""
Row normalization for enrollment imports.

Turns one heterogeneous spreadsheet record into an ``ImportRow`` using the
alias table from ``crm_app.importer.contracts``. Normalization is pure: a value
that cannot be read is treated as absent, never as a fatal error.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Sequence

from crm_app.importer.contracts import ENROLLMENT_CANONICAL_FIELDS, get_enrollment_field_aliases, normalize_header

_PLAIN_INT_RE = re.compile(r"^[+-]?\d+$")
_THOUSANDS_RE = re.compile(r"^\d{1,3}(?:([.,])\d{3})(?:\1\d{3})*$")
_ZERO_FRACTION_RE = re.compile(r"^([+-]?\d+)[.,]0+$")
_SPACED_DIGITS_RE = re.compile(r"(?<=\d)\s+(?=\d)")

_DEFAULT_ALIASES = get_enrollment_field_aliases()


def coerce_int(value: object | None) -> int | None:
    """
    Tolerantly parse an integer from spreadsheet input.

    Accepts ints, integral floats, and strings such as ``" 30 "``, ``"1.234"``,
    ``"1,234"``, ``"1 234"``, ``"30,0"`` or ``"30.00"``. Everything else yields
    ``None``.
    """

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value) or not value.is_integer():
            return None
        return int(value)

    token = str(value).strip()
    if not token:
        return None
    token = _SPACED_DIGITS_RE.sub("", token)

    if _PLAIN_INT_RE.match(token):
        return int(token)
    if _THOUSANDS_RE.match(token):
        return int(token.replace(".", "").replace(",", ""))
    match = _ZERO_FRACTION_RE.match(token)
    if match:
        return int(match.group(1))
    return None


def _clean_text(value: object | None) -> str | None:
    if value is None:
        return None
    token = str(value).strip()
    return token or None


def _is_blank(value: object | None) -> bool:
    if value is None:
        return True
    if isinstance(value, float) and math.isnan(value):
        return True
    return isinstance(value, str) and value.strip() == ""


@dataclass(frozen=True)
class ImportRow:
    """One logical enrollment record after alias resolution and coercion."""

    row_index: int
    year: int | None = None
    org_code: int | None = None
    org_name: str | None = None
    org_id: str | None = None
    level_raw: str | None = None
    level_code: int | None = None
    headcount: int | None = None
    headcount_raw: object | None = None
    subject: str | None = None
    order: int | None = None
    section: str | None = None
    education: str | None = None
    raw: Mapping[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @property
    def is_identifiable(self) -> bool:
        return bool(self.org_id or self.org_code is not None or self.org_name)

    @property
    def has_headcount_value(self) -> bool:
        """True when the source carried something in the headcount column, parseable or not."""

        return not _is_blank(self.headcount_raw)


def _index_raw(raw: Mapping[str, Any]) -> dict[str, Any]:
    indexed: dict[str, Any] = {}
    for key, value in raw.items():
        token = normalize_header(key)
        if _is_blank(value):
            indexed.setdefault(token, None)
            continue
        if indexed.get(token) is None:
            indexed[token] = value
    return indexed


def _pick(indexed: Mapping[str, Any], tokens: Sequence[str]) -> Any:
    for token in tokens:
        value = indexed.get(token)
        if not _is_blank(value):
            return value
    return None


def normalize_row(
    raw: Mapping[str, Any],
    row_index: int,
    aliases: Mapping[str, Sequence[str]] | None = None,
) -> ImportRow:
    """Resolve aliases in ``raw`` and return the canonical ``ImportRow``."""

    aliases = aliases or _DEFAULT_ALIASES
    indexed = _index_raw(raw)
    values: dict[str, Any] = {}
    for spec in ENROLLMENT_CANONICAL_FIELDS:
        value = _pick(indexed, aliases.get(spec.name, ()))
        values[spec.name] = coerce_int(value) if spec.numeric else _clean_text(value)
    return ImportRow(
        row_index=row_index,
        headcount_raw=_pick(indexed, aliases.get("headcount", ())),
        raw=dict(raw),
        **values,
    )


def normalize_rows(
    raw_rows: Iterable[Mapping[str, Any]],
    aliases: Mapping[str, Sequence[str]] | None = None,
    *,
    start: int = 1,
) -> list[ImportRow]:
    return [normalize_row(raw, index, aliases) for index, raw in enumerate(raw_rows, start=start)]
