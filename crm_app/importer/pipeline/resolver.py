"""
Organization resolution for enrollment rows.

Each row is matched against the job's ``EntityIndex`` with a fixed fallback
chain: direct id, then code, then normalized name. A newly seen code creates
the organization; rows without a code are never allowed to create one.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Literal, Mapping, Sequence

from crm_app.importer.errors import ConflictError, ResolutionError
from crm_app.importer.metrics import record_org_conflict_recovered, record_org_created
from crm_app.importer.pipeline.index import EntityIndex
from crm_app.importer.pipeline.names import suggest_similar_names
from crm_app.importer.pipeline.rows import ImportRow
from crm_app.importer.records import OrgRecord
from crm_app.importer.store.base import EntityStore

logger = logging.getLogger(__name__)

ResolutionVia = Literal["id", "code", "name", "created", "conflict"]


def placeholder_org_name(code: int) -> str:
    return f"Colegio RBD {code}"


def collect_org_names(rows: Iterable[ImportRow]) -> dict[int, str]:
    """Map each organization code to the first non-empty name given for it, in row order."""

    names: dict[int, str] = {}
    for row in rows:
        if row.org_code is not None and row.org_name:
            names.setdefault(row.org_code, row.org_name)
    return names


@dataclass(frozen=True)
class OrgResolution:
    """
    Outcome of resolving a row to an organization.

    Attributes:
        org_id: Id of the matched or created organization.
        created: True only when this call created the organization remotely.
        via: Which step of the chain produced the match.
        messages: Non-fatal notes to attach to the row result.
    """

    org_id: str
    created: bool
    via: ResolutionVia
    messages: tuple[str, ...] = ()


class OrgResolver:
    """
    Resolve rows to organizations, creating new ones by code when allowed.

    ``known_names`` maps codes to the name a new organization should get when
    the row that happens to create it carries none (see ``collect_org_names``).
    """

    def __init__(
        self,
        store: EntityStore,
        *,
        allow_create: bool = True,
        suggest_names: bool = True,
        known_names: Mapping[int, str] | None = None,
    ) -> None:
        self.store = store
        self.allow_create = allow_create
        self.suggest_names = suggest_names
        self.known_names: Mapping[int, str] = dict(known_names or {})

    def resolve(self, row: ImportRow, index: EntityIndex) -> OrgResolution:
        notes: list[str] = []

        if row.org_id:
            org = index.get_org(row.org_id)
            if org is not None:
                return OrgResolution(org_id=org.id, created=False, via="id")
            notes.append(f"Organization id {row.org_id} not found in snapshot; trying code and name.")

        if row.org_code is not None:
            org = index.find_by_code(row.org_code)
            if org is not None:
                return OrgResolution(org_id=org.id, created=False, via="code", messages=tuple(notes))

        if row.org_name:
            org = index.find_by_name(row.org_name)
            if org is not None:
                if row.org_code is not None:
                    notes.append(
                        f"Organization code {row.org_code} is not mapped; organization {org.id} "
                        f"matched by name could be backfilled with it."
                    )
                return OrgResolution(org_id=org.id, created=False, via="name", messages=tuple(notes))

        if row.org_code is not None:
            if not self.allow_create:
                raise ResolutionError(
                    self._with_notes(
                        f"Organization code {row.org_code} not found and organization creation is disabled.",
                        notes,
                    )
                )
            return self._create(row.org_code, row.org_name, index, notes)

        if row.org_name:
            message = f"Cannot resolve organization '{row.org_name}': no match by name and no code to create it with."
            if self.suggest_names:
                suggestions = suggest_similar_names(row.org_name, index.name_keys())
                if suggestions:
                    message += " Similar names: " + ", ".join(suggestions) + "."
            raise ResolutionError(self._with_notes(message, notes))

        raise ResolutionError(self._with_notes("Cannot resolve organization.", notes))

    def _create(
        self,
        code: int,
        name: str | None,
        index: EntityIndex,
        notes: list[str],
    ) -> OrgResolution:
        with index.org_creation_lock(code):
            # Another worker may have created it while this one waited.
            org = index.find_by_code(code)
            if org is not None:
                return OrgResolution(org_id=org.id, created=False, via="code", messages=tuple(notes))

            name = name or self.known_names.get(code)
            org_name = name or placeholder_org_name(code)
            try:
                org = self.store.create_org(org_name, code)
            except ConflictError:
                existing = self.store.find_org_by_code(code)
                if existing is None:
                    raise ResolutionError(
                        f"Organization code {code} was rejected as a duplicate but could not be re-fetched."
                    )
                existing = _with_code(existing, code)
                index.insert_org(existing)
                record_org_conflict_recovered()
                logger.info(
                    "Organization creation conflict recovered by re-fetch",
                    extra={"importer_org_code": code, "importer_org_id": existing.id},
                )
                notes.append(f"Organization code {code} already existed remotely; reused organization {existing.id}.")
                return OrgResolution(org_id=existing.id, created=False, via="conflict", messages=tuple(notes))

            org = _with_code(org, code)
            index.insert_org(org)

        record_org_created()
        logger.info(
            "Organization created",
            extra={"importer_org_code": code, "importer_org_id": org.id, "importer_org_name": org_name},
        )
        notes.append(f"Created organization {org.id} for code {code}.")
        if not name:
            notes.append(f"Organization name missing; created as '{org_name}'.")
        return OrgResolution(org_id=org.id, created=True, via="created", messages=tuple(notes))

    @staticmethod
    def _with_notes(message: str, notes: Sequence[str]) -> str:
        if not notes:
            return message
        return " ".join((*notes, message))


def _with_code(org: OrgRecord, code: int) -> OrgRecord:
    if org.code == code:
        return org
    return OrgRecord(id=org.id, code=code, name=org.name)
