"""
Level classification for enrollment rows.

Maps a ministry level code (``ID_NIVEL``) or free text such as ``"5° Básico"``
or ``"II Medio"`` to a canonical ``(Stage, grade)`` pair. Codes win over text.
"""

from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass
from typing import Literal

from crm_app.importer.errors import ClassificationFailure
from crm_app.importer.records import CanonicalLevel, Stage


LevelSource = Literal["code", "text", "fallback"]


@dataclass(frozen=True)
class LevelClassification:
    """
    Result of classifying a row's level.

    Attributes:
        level: The canonical level used for course matching.
        source: ``"code"`` when derived from the level code, ``"text"`` when
            derived from free text, ``"fallback"`` when neither was recognized.
        grade_guessed: True when the text named a stage but no grade, so grade 1
            was assumed.
    """

    level: CanonicalLevel
    source: LevelSource
    grade_guessed: bool = False

    @property
    def fallback(self) -> bool:
        return self.source == "fallback"


# Two disjoint code ranges: 4..11 are primary grades 1..8, 12..15 secondary grades 1..4.
PRIMARY_CODE_RANGE = range(4, 12)
SECONDARY_CODE_RANGE = range(12, 16)

FALLBACK_LEVEL = CanonicalLevel(Stage.PRIMARY, 1)

_ROMAN_VALUES = {"i": 1, "ii": 2, "iii": 3, "iv": 4, "v": 5, "vi": 6, "vii": 7, "viii": 8}
_SECONDARY_MARKER_RE = re.compile(r"\bmedi[oa]\b")
_SECONDARY_ROMAN_RE = re.compile(r"\b([ivx]+)\s*(?:°|º|o\b)?\s*(?:ano\s+)?medi[oa]\b")
_PRIMARY_MARKER_RE = re.compile(r"\bbasic[oa]\b")
_DIGIT_RE = re.compile(r"\d+")
_ORDINAL_RE = re.compile(r"\b(primer|segund|tercer|cuart|quint|sext|septim|setim|octav)[oa]?\b")
_ORDINAL_VALUES = {
    "primer": 1,
    "segund": 2,
    "tercer": 3,
    "cuart": 4,
    "quint": 5,
    "sext": 6,
    "septim": 7,
    "setim": 7,
    "octav": 8,
}


def _fold(text: str) -> str:
    token = unicodedata.normalize("NFD", text.strip().lower())
    return "".join(char for char in token if not unicodedata.combining(char))


def _clamp(value: int, upper: int) -> int:
    return max(1, min(value, upper))


def level_from_code(level_code: int | None) -> CanonicalLevel | None:
    """Translate a ministry level code, returning ``None`` outside the known ranges."""

    if level_code is None:
        return None
    if level_code in SECONDARY_CODE_RANGE:
        return CanonicalLevel(Stage.SECONDARY, level_code - 11)
    if level_code in PRIMARY_CODE_RANGE:
        return CanonicalLevel(Stage.PRIMARY, level_code - 3)
    return None


def _grade_in(text: str, *, roman: bool) -> int | None:
    if roman:
        match = _SECONDARY_ROMAN_RE.search(text)
        if match and match.group(1) in _ROMAN_VALUES:
            return _ROMAN_VALUES[match.group(1)]
    digit = _DIGIT_RE.search(text)
    if digit:
        return int(digit.group(0))
    ordinal = _ORDINAL_RE.search(text)
    if ordinal:
        return _ORDINAL_VALUES[ordinal.group(1)]
    return None


def _parse_text(level_raw: str | None) -> tuple[CanonicalLevel, bool] | None:
    # Returns the level and whether its grade had to be assumed.
    if not level_raw:
        return None
    text = _fold(level_raw)

    if _SECONDARY_MARKER_RE.search(text):
        stage, upper, grade = Stage.SECONDARY, 4, _grade_in(text, roman=True)
    elif _PRIMARY_MARKER_RE.search(text):
        stage, upper, grade = Stage.PRIMARY, 8, _grade_in(text, roman=False)
    else:
        return None

    if grade is None:
        return CanonicalLevel(stage, 1), True
    return CanonicalLevel(stage, _clamp(grade, upper)), False


def level_from_text(level_raw: str | None) -> CanonicalLevel | None:
    """
    Classify free-text levels; returns ``None`` when no stage marker is present.

    Grades may be digits (``"5° Básico"``), roman numerals before ``Medio``
    (``"II Medio"``) or Spanish ordinals (``"Segundo Medio"``). A stage with
    no readable grade yields grade 1.
    """

    parsed = _parse_text(level_raw)
    return parsed[0] if parsed else None


def classify_level(
    level_raw: str | None,
    level_code: int | None,
    *,
    strict: bool = False,
) -> LevelClassification:
    """
    Classify a row's level, preferring the coded taxonomy over free text.

    Unrecognized input falls back to ``(Primary, 1)`` unless ``strict`` is set,
    in which case ``ClassificationFailure`` is raised.
    """

    level = level_from_code(level_code)
    if level is not None:
        return LevelClassification(level=level, source="code")

    parsed = _parse_text(level_raw)
    if parsed is not None:
        level, grade_guessed = parsed
        return LevelClassification(level=level, source="text", grade_guessed=grade_guessed)

    if strict:
        raise ClassificationFailure(level_raw, level_code)
    return LevelClassification(level=FALLBACK_LEVEL, source="fallback")
