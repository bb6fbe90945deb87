"""Remote entity store collaborators."""

from __future__ import annotations

from .base import EntityStore
from .rest import RemoteStoreNotConfigured, RestEntityStore, course_from_payload, org_from_payload

__all__ = [
    "EntityStore",
    "RestEntityStore",
    "RemoteStoreNotConfigured",
    "course_from_payload",
    "org_from_payload",
]
