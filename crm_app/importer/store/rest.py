"""
REST client for the headless content store holding organizations and courses.

Talks to a Strapi-style API (``/api/colegios``, ``/api/cursos``). Payloads may
arrive flat or wrapped in ``attributes``; relations may arrive as a bare id or
as ``{"data": {"id": ...}}``.
"""

from __future__ import annotations

import logging
from typing import Any, Iterator, List, Mapping, Sequence

import requests

from crm_app.importer.errors import ConflictError, RemoteError
from crm_app.importer.pipeline.rows import coerce_int
from crm_app.importer.records import CourseRecord, OrgRecord, Stage

ORGS_PATH = "/api/colegios"
COURSES_PATH = "/api/cursos"

DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_PAGE_SIZE = 100

# Stage labels used by the store's ``nivel`` field.
STAGE_LABELS = {Stage.PRIMARY: "Basica", Stage.SECONDARY: "Media"}
_STAGE_BY_LABEL = {
    "basica": Stage.PRIMARY,
    "básica": Stage.PRIMARY,
    "basico": Stage.PRIMARY,
    "básico": Stage.PRIMARY,
    "media": Stage.SECONDARY,
    "medio": Stage.SECONDARY,
}


class RemoteStoreNotConfigured(RuntimeError):
    """Raised when the remote store URL is missing from configuration."""


def _attributes(entity: Mapping[str, Any]) -> Mapping[str, Any]:
    attrs = entity.get("attributes")
    return attrs if isinstance(attrs, Mapping) else entity


def _entity_id(entity: Mapping[str, Any]) -> str | None:
    value = entity.get("id")
    if value is None or value == "":
        value = entity.get("documentId")
    if value is None or value == "":
        return None
    return str(value)


def _relation_id(value: Any) -> str | None:
    if value is None or value == "":
        return None
    if isinstance(value, Mapping):
        inner = value.get("data", value)
        if isinstance(inner, Mapping):
            return _entity_id(inner)
        if inner is None:
            return None
        return str(inner)
    return str(value)


def parse_stage(value: Any) -> Stage | None:
    if value is None:
        return None
    return _STAGE_BY_LABEL.get(str(value).strip().lower())


def org_from_payload(entity: Mapping[str, Any]) -> OrgRecord | None:
    """Build an ``OrgRecord`` from a store payload; ``None`` when it carries no id."""

    entity_id = _entity_id(entity)
    if entity_id is None:
        return None
    attrs = _attributes(entity)
    name = attrs.get("colegio_nombre") or attrs.get("nombre") or ""
    return OrgRecord(id=entity_id, code=coerce_int(attrs.get("rbd")), name=str(name).strip())


def course_from_payload(entity: Mapping[str, Any]) -> CourseRecord | None:
    """Build a ``CourseRecord`` from a store payload; ``None`` when it carries no id."""

    entity_id = _entity_id(entity)
    if entity_id is None:
        return None
    attrs = _attributes(entity)
    year_value = attrs.get("anio")
    if year_value is None:
        year_value = attrs.get("año", attrs.get("ano"))
    name = attrs.get("nombre_curso")
    section = attrs.get("letra")
    return CourseRecord(
        id=entity_id,
        org_id=_relation_id(attrs.get("colegio")),
        stage=parse_stage(attrs.get("nivel")),
        grade=coerce_int(attrs.get("grado")),
        year=coerce_int(year_value),
        section=str(section).strip() if section not in (None, "") else None,
        headcount=coerce_int(attrs.get("cantidad_alumnos")),
        name=str(name) if name not in (None, "") else None,
    )


def _is_unique_code_violation(payload: Any) -> bool:
    """Detect the store's ``400 ValidationError`` for a duplicate ``rbd``."""

    if not isinstance(payload, Mapping):
        return False
    error = payload.get("error")
    if not isinstance(error, Mapping):
        return False
    details = error.get("details")
    errors = details.get("errors") if isinstance(details, Mapping) else None
    if not isinstance(errors, list):
        return False
    for item in errors:
        if not isinstance(item, Mapping):
            continue
        path = item.get("path") or ()
        message = str(item.get("message") or "").lower()
        if "rbd" in path and "unique" in message:
            return True
    return False


def _error_message(response: requests.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return (response.text or "").strip()[:200] or f"HTTP {response.status_code}"
    if isinstance(payload, Mapping):
        error = payload.get("error")
        if isinstance(error, Mapping) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str):
            return error
    return f"HTTP {response.status_code}"


class RestEntityStore:
    """``EntityStore`` implementation backed by ``requests``."""

    def __init__(
        self,
        base_url: str,
        *,
        token: str | None = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        page_size: int = DEFAULT_PAGE_SIZE,
        year_field: str = "anio",
        session: requests.Session | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.page_size = max(1, int(page_size))
        self.year_field = year_field
        self.session = session or requests.Session()
        self.logger = logger or logging.getLogger(__name__)
        self._headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if token:
            self._headers["Authorization"] = f"Bearer {token}"

    @classmethod
    def from_config(cls, config: Mapping[str, Any], **kwargs: Any) -> "RestEntityStore":
        base_url = config.get("REMOTE_STORE_URL")
        if not base_url:
            raise RemoteStoreNotConfigured("REMOTE_STORE_URL is not configured; cannot reach the remote store.")
        return cls(
            base_url,
            token=config.get("REMOTE_STORE_TOKEN") or None,
            timeout=float(config.get("REMOTE_STORE_TIMEOUT", DEFAULT_TIMEOUT_SECONDS)),
            page_size=int(config.get("REMOTE_STORE_PAGE_SIZE", DEFAULT_PAGE_SIZE)),
            year_field=config.get("REMOTE_STORE_COURSE_YEAR_FIELD", "anio"),
            **kwargs,
        )

    # Public API -----------------------------------------------------------------

    def fetch_all_orgs(self) -> List[OrgRecord]:
        orgs: List[OrgRecord] = []
        for entity in self._iter_collection(ORGS_PATH, operation="fetch_all_orgs"):
            record = org_from_payload(entity)
            if record is not None:
                orgs.append(record)
        self.logger.debug("Fetched organization snapshot", extra={"importer_orgs_fetched": len(orgs)})
        return orgs

    def fetch_all_courses(self) -> List[CourseRecord]:
        courses: List[CourseRecord] = []
        for entity in self._iter_collection(
            COURSES_PATH,
            operation="fetch_all_courses",
            params={"populate[colegio]": "true"},
        ):
            record = course_from_payload(entity)
            if record is not None:
                courses.append(record)
        self.logger.debug("Fetched course snapshot", extra={"importer_courses_fetched": len(courses)})
        return courses

    def create_org(self, name: str, code: int) -> OrgRecord:
        response = self._send(
            "POST",
            ORGS_PATH,
            operation="create_org",
            json={"data": {"colegio_nombre": name, "rbd": code}},
            check=False,
        )
        if response.status_code == 409:
            raise ConflictError(code)
        if response.status_code == 400 and _is_unique_code_violation(self._json_or_none(response)):
            raise ConflictError(code, f"organization code {code} already exists (unique constraint)")
        self._raise_for_status(response, "create_org")

        record = org_from_payload(self._data(response, "create_org"))
        if record is None:
            raise RemoteError("create_org", "response did not include an organization id")
        if record.code is None:
            record = OrgRecord(id=record.id, code=code, name=record.name or name)
        return record

    def find_org_by_code(self, code: int) -> OrgRecord | None:
        response = self._send(
            "GET",
            ORGS_PATH,
            operation="find_org_by_code",
            params={"filters[rbd][$eq]": code, "publicationState": "preview"},
        )
        payload = self._json_or_none(response)
        data = payload.get("data") if isinstance(payload, Mapping) else None
        for entity in data or ():
            if isinstance(entity, Mapping):
                record = org_from_payload(entity)
                if record is not None:
                    return record
        return None

    def update_course_headcount(self, course_id: str, headcount: int) -> None:
        self._send(
            "PUT",
            f"{COURSES_PATH}/{course_id}",
            operation="update_course_headcount",
            json={"data": {"cantidad_alumnos": headcount}},
        )

    def create_course(
        self,
        *,
        org_id: str,
        stage: Stage,
        grade: int,
        year: int | None,
        name: str,
    ) -> CourseRecord:
        data: dict[str, Any] = {
            "nombre_curso": name,
            "nivel": STAGE_LABELS[stage],
            "grado": grade,
            "colegio": org_id,
            "activo": True,
        }
        if year is not None:
            data[self.year_field] = year
        response = self._send("POST", COURSES_PATH, operation="create_course", json={"data": data})
        record = course_from_payload(self._data(response, "create_course"))
        if record is None:
            raise RemoteError("create_course", "response did not include a course id")
        return CourseRecord(
            id=record.id,
            org_id=record.org_id or org_id,
            stage=record.stage or stage,
            grade=record.grade or grade,
            year=record.year if record.year is not None else year,
            section=record.section,
            headcount=record.headcount,
            name=record.name or name,
        )

    def close(self) -> None:
        self.session.close()

    # Internal helpers -----------------------------------------------------------

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    def _send(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        params: Mapping[str, Any] | None = None,
        json: Any = None,
        check: bool = True,
    ) -> requests.Response:
        try:
            response = self.session.request(
                method,
                self._url(path),
                headers=self._headers,
                params=params,
                json=json,
                timeout=self.timeout,
            )
        except requests.Timeout as exc:
            raise RemoteError(operation, f"timed out after {self.timeout}s") from exc
        except requests.RequestException as exc:
            raise RemoteError(operation, str(exc)) from exc
        if check:
            self._raise_for_status(response, operation)
        return response

    def _raise_for_status(self, response: requests.Response, operation: str) -> None:
        if response.ok:
            return
        message = _error_message(response)
        self.logger.warning(
            "Remote store call failed",
            extra={
                "importer_operation": operation,
                "importer_status_code": response.status_code,
                "importer_error": message,
            },
        )
        raise RemoteError(operation, f"HTTP {response.status_code}: {message}", status_code=response.status_code)

    @staticmethod
    def _json_or_none(response: requests.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return None

    def _data(self, response: requests.Response, operation: str) -> Mapping[str, Any]:
        payload = self._json_or_none(response)
        data = payload.get("data") if isinstance(payload, Mapping) else None
        if isinstance(data, list):
            data = data[0] if data else None
        if not isinstance(data, Mapping):
            raise RemoteError(operation, "response did not include a data object")
        return data

    def _iter_collection(
        self,
        path: str,
        *,
        operation: str,
        params: Mapping[str, Any] | None = None,
    ) -> Iterator[Mapping[str, Any]]:
        page = 1
        while True:
            query = {
                **(params or {}),
                "pagination[page]": page,
                "pagination[pageSize]": self.page_size,
                "publicationState": "preview",
            }
            response = self._send("GET", path, operation=operation, params=query)
            payload = self._json_or_none(response)
            if not isinstance(payload, Mapping):
                raise RemoteError(operation, "response was not a JSON object")
            data: Sequence[Any] = payload.get("data") or ()
            for entity in data:
                if isinstance(entity, Mapping):
                    yield entity

            meta = payload.get("meta")
            pagination = meta.get("pagination") if isinstance(meta, Mapping) else None
            page_count = coerce_int(pagination.get("pageCount")) if isinstance(pagination, Mapping) else None
            if not data or page_count is None or page >= page_count:
                break
            page += 1
