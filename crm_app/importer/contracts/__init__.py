"""Canonical ingest contract helpers for importer adapters."""

from __future__ import annotations

from .enrollment import (
    ENROLLMENT_CANONICAL_FIELDS,
    AliasMappingError,
    FieldSpec,
    get_enrollment_alias_map,
    get_enrollment_field_aliases,
    get_enrollment_field_specs,
    get_enrollment_supported_headers,
    load_alias_overrides,
    normalize_header,
)

__all__ = [
    "AliasMappingError",
    "FieldSpec",
    "ENROLLMENT_CANONICAL_FIELDS",
    "get_enrollment_field_specs",
    "get_enrollment_supported_headers",
    "get_enrollment_field_aliases",
    "get_enrollment_alias_map",
    "load_alias_overrides",
    "normalize_header",
]
