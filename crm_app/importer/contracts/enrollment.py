"""Canonical enrollment ingest contract definitions.

Spreadsheet exports spell the same column many ways (``RBD``/``rbd``,
``AGNO``/``AÑO``/``ano``). Each canonical field lists its known aliases in
priority order; the row normalizer takes the first alias holding a non-empty
value.
"""

from __future__ import annotations

import unicodedata
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Sequence, Tuple

import yaml


class AliasMappingError(RuntimeError):
    """Raised when an alias override file cannot be loaded or validated."""


@dataclass(frozen=True)
class FieldSpec:
    """Metadata describing a canonical enrollment field."""

    name: str
    description: str
    aliases: Tuple[str, ...] = ()
    numeric: bool = False

    def headers(self) -> Tuple[str, ...]:
        """Return the canonical header plus aliases, in lookup order."""

        return (self.name, *self.aliases)


ENROLLMENT_CANONICAL_FIELDS: Tuple[FieldSpec, ...] = (
    FieldSpec(
        name="org_id",
        description="Opaque id of the organization in the remote store, when already known.",
        aliases=("colegio_id", "id_colegio", "colegioid", "document_id", "id"),
    ),
    FieldSpec(
        name="org_code",
        description="External numeric code of the organization (RBD).",
        aliases=("rbd", "codigo_rbd", "codigo", "code"),
        numeric=True,
    ),
    FieldSpec(
        name="org_name",
        description="Organization display name.",
        aliases=("colegio_nombre", "nombre_colegio", "nom_rbd", "colegio", "nombre", "name"),
    ),
    FieldSpec(
        name="year",
        description="Academic year the row refers to.",
        aliases=("agno", "año", "ano", "anio", "year"),
        numeric=True,
    ),
    FieldSpec(
        name="level_code",
        description="Level code from the ministry taxonomy (ID_NIVEL).",
        aliases=("id_nivel", "idnivel", "cod_nivel", "codigo_nivel"),
        numeric=True,
    ),
    FieldSpec(
        name="level_raw",
        description="Free-text level such as '5° Básico' or 'II Medio'.",
        aliases=("nivel", "curso", "nombre_curso", "level"),
    ),
    FieldSpec(
        name="headcount",
        description="Number of enrolled students.",
        aliases=("n_alu", "cantidad_alumnos", "matriculados", "matricula", "alumnos"),
        numeric=True,
    ),
    FieldSpec(
        name="education",
        description="Education type (Básica, Media).",
        aliases=("educacion", "ens_bas_med", "tipo_ensenanza", "ciclo"),
    ),
    FieldSpec(
        name="subject",
        description="Subject name, passed through untouched.",
        aliases=("asignatura", "nom_subsector"),
    ),
    FieldSpec(
        name="order",
        description="Ordering hint, passed through untouched.",
        aliases=("orden",),
        numeric=True,
    ),
    FieldSpec(
        name="section",
        description="Course section letter (A, B, ...).",
        aliases=("letra", "seccion", "letra_curso"),
    ),
)


def get_enrollment_field_specs() -> Tuple[FieldSpec, ...]:
    """Return the canonical enrollment field definitions."""

    return ENROLLMENT_CANONICAL_FIELDS


def get_enrollment_supported_headers() -> Tuple[str, ...]:
    return tuple(field.name for field in ENROLLMENT_CANONICAL_FIELDS)


def normalize_header(header: object) -> str:
    """Normalize a header for comparison (case, accent, space and punctuation agnostic)."""

    token = str(header or "").strip().lstrip("\ufeff").lower()
    token = unicodedata.normalize("NFD", token)
    token = "".join(char for char in token if not unicodedata.combining(char))
    for char in (" ", "-", "."):
        token = token.replace(char, "_")
    return token


def get_enrollment_field_aliases(
    overrides: Mapping[str, Sequence[str]] | None = None,
) -> dict[str, Tuple[str, ...]]:
    """
    Map each canonical field to its normalized header tokens, in priority order.

    Override aliases are appended after the built-in ones.
    """

    aliases: dict[str, Tuple[str, ...]] = {}
    for spec in ENROLLMENT_CANONICAL_FIELDS:
        tokens = [normalize_header(header) for header in spec.headers()]
        for extra in (overrides or {}).get(spec.name, ()):
            tokens.append(normalize_header(extra))
        aliases[spec.name] = tuple(dict.fromkeys(tokens))
    return aliases


def get_enrollment_alias_map(
    overrides: Mapping[str, Sequence[str]] | None = None,
) -> Mapping[str, str]:
    """Map normalized header tokens to canonical names (includes aliases)."""

    mapping: dict[str, str] = {}
    for canonical, tokens in get_enrollment_field_aliases(overrides).items():
        for token in tokens:
            mapping.setdefault(token, canonical)
    return mapping


def load_alias_overrides(path: str | Path) -> dict[str, Tuple[str, ...]]:
    """
    Load extra header aliases from a YAML file.

    Expected layout::

        fields:
          org_code: ["cod_establecimiento"]
          headcount: ["total_alumnos"]
    """

    path = Path(path)
    if not path.exists():
        raise AliasMappingError(f"Alias mapping file not found at {path}")

    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise AliasMappingError(f"Failed to parse alias mapping YAML at {path}: {exc}") from exc

    fields = raw.get("fields") if isinstance(raw, Mapping) else None
    if not isinstance(fields, Mapping):
        raise AliasMappingError(f"Alias mapping at {path} must define a 'fields' mapping.")

    known = set(get_enrollment_supported_headers())
    unknown = sorted(str(name) for name in fields if name not in known)
    if unknown:
        raise AliasMappingError(f"Unknown canonical fields in {path}: {', '.join(unknown)}")

    overrides: dict[str, Tuple[str, ...]] = {}
    for name, values in fields.items():
        if isinstance(values, str):
            values = [values]
        if not isinstance(values, Sequence):
            raise AliasMappingError(f"Aliases for '{name}' must be a list of strings.")
        overrides[str(name)] = tuple(str(value) for value in values if str(value).strip())
    return overrides
