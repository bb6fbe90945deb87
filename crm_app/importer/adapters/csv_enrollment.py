"""CSV adapter for enrollment and course-definition imports.

Reads spreadsheet exports into raw key/value rows for the row normalizer.
Headers keep their original spelling; alias resolution happens later. Only a
sanity check runs here: at least one organization identifier column must be
recognizable.
"""

from __future__ import annotations

import csv
from dataclasses import dataclass
from typing import IO, Iterator, Mapping, Sequence

from crm_app.importer.contracts import get_enrollment_field_aliases, normalize_header

IDENTIFYING_FIELDS = ("org_id", "org_code", "org_name")
DELIMITERS = ",;\t"


class CSVAdapterError(Exception):
    """Base exception for CSV adapter failures."""


class CSVHeaderError(CSVAdapterError):
    """Raised when the header row cannot identify organizations."""

    def __init__(self, headers: Sequence[str]) -> None:
        preview = ", ".join(headers) if headers else "none"
        super().__init__(
            "CSV header validation failed. No organization identifier column found "
            f"(expected one of RBD, colegio_id or colegio_nombre). Headers: {preview}."
        )
        self.headers = tuple(headers)


@dataclass
class EnrollmentCSVStatistics:
    rows_read: int = 0
    rows_skipped_blank: int = 0


def _sanitize_header(header: str | None) -> str:
    token = (header or "").strip()
    return token.lstrip("\ufeff")


def _row_is_blank(row: Mapping[str, object | None]) -> bool:
    return all((value is None or (isinstance(value, str) and value.strip() == "")) for value in row.values())


def _sniff_dialect(sample: str) -> type[csv.Dialect] | csv.Dialect:
    try:
        return csv.Sniffer().sniff(sample, delimiters=DELIMITERS)
    except csv.Error:
        return csv.excel


class EnrollmentCSVAdapter:
    """CSV reader yielding raw rows keyed by the file's own headers."""

    def __init__(
        self,
        file_obj: IO[str],
        *,
        aliases: Mapping[str, Sequence[str]] | None = None,
        skip_blank_rows: bool = True,
    ) -> None:
        self._file_obj = file_obj
        self.skip_blank_rows = skip_blank_rows
        self.statistics = EnrollmentCSVStatistics()
        self._aliases = aliases or get_enrollment_field_aliases()
        self.headers: tuple[str, ...] = ()

    def _prepare_reader(self) -> csv.DictReader:
        self._file_obj.seek(0)
        sample = self._file_obj.read(4096)
        self._file_obj.seek(0)
        reader = csv.DictReader(self._file_obj, dialect=_sniff_dialect(sample))
        if reader.fieldnames is None:
            raise CSVHeaderError(())

        headers = [_sanitize_header(header) for header in reader.fieldnames]
        identifying_tokens = {token for name in IDENTIFYING_FIELDS for token in self._aliases.get(name, ())}
        if not any(normalize_header(header) in identifying_tokens for header in headers):
            raise CSVHeaderError(headers)

        reader.fieldnames = headers
        self.headers = tuple(headers)
        return reader

    def iter_rows(self) -> Iterator[dict[str, object | None]]:
        reader = self._prepare_reader()
        for raw_row in reader:
            row = {key: value for key, value in raw_row.items() if key is not None}
            if self.skip_blank_rows and _row_is_blank(row):
                self.statistics.rows_skipped_blank += 1
                continue
            self.statistics.rows_read += 1
            yield row

    def read_all(self) -> list[dict[str, object | None]]:
        return list(self.iter_rows())
