"""Initiative business logic shared by the API, the MCP server and the CLI."""
from __future__ import annotations

import logging
from typing import Any

from stagegate.errors import InvalidInput, NotFound, VersionConflict
from stagegate.schemas import (
    EventOut,
    InitiativeOut,
    InitiativeRecord,
    InitiativeWriteModel,
    default_stage_state_map,
    sanitize_stage_map,
)
from stagegate.store import InitiativeStore, UpdateOutcome
from stagegate.totals import compute_totals
from stagegate.utils import new_id, sanitize_optional_string, sanitize_string, strict_int

log = logging.getLogger(__name__)


def initiative_response(record: InitiativeRecord) -> InitiativeOut:
    """Merge a stored record with freshly computed totals."""
    return InitiativeOut(**record.model_dump(), totals=compute_totals(record.stages))


def sanitize_model(payload: Any, initiative_id: str | None = None) -> InitiativeWriteModel:
    """Turn a loosely-typed payload into a write model.

    Strings are trimmed, months outside 1..12 and non-finite numbers are
    dropped. ``name`` and ``workstream_id`` must be non-empty. The stage
    workflow fields always start fresh: ``l0`` and every gate in draft.
    """
    if not isinstance(payload, dict):
        raise InvalidInput()
    name = sanitize_string(payload.get("name"))
    workstream_id = sanitize_string(payload.get("workstream_id"))
    if not name:
        raise InvalidInput("Initiative name is required.")
    if not workstream_id:
        raise InvalidInput("Workstream is required.")

    stages = sanitize_stage_map(payload.get("stages"))
    return InitiativeWriteModel(
        id=initiative_id or sanitize_optional_string(payload.get("id")) or new_id(),
        workstream_id=workstream_id,
        name=name,
        description=sanitize_string(payload.get("description")),
        owner_account_id=sanitize_optional_string(payload.get("owner_account_id")),
        owner_name=sanitize_optional_string(payload.get("owner_name")),
        current_status=sanitize_optional_string(payload.get("current_status")) or "draft",
        active_stage="l0",
        l4_date=sanitize_optional_string(payload.get("l4_date")) or stages["l4"].l4_date,
        stages=stages,
        stage_state=default_stage_state_map(),
    )


class InitiativeService:
    def __init__(self, store: InitiativeStore):
        self.store = store

    def create_initiative(self, payload: Any, actor_account_id: str | None = None) -> InitiativeOut:
        model = sanitize_model(payload)
        record = self.store.create(model, actor_account_id=actor_account_id)
        log.info("created initiative %s in workstream %s", record.id, record.workstream_id)
        return initiative_response(record)

    def update_initiative(
        self, initiative_id: str, payload: Any, expected_version: Any, actor_account_id: str | None = None,
    ) -> InitiativeOut:
        """Full replace of the editable fields and stage map, guarded by ``expected_version``.

        ``active_stage`` and ``stage_state`` keep their stored values; only the
        workflow engine moves them.
        """
        version = strict_int(expected_version)
        if version is None:
            raise InvalidInput("expected_version must be an integer.")
        model = sanitize_model(payload, initiative_id=initiative_id)
        result = self.store.update(model, version, actor_account_id=actor_account_id)
        if result is UpdateOutcome.NOT_FOUND:
            raise NotFound()
        if result is UpdateOutcome.VERSION_CONFLICT:
            log.warning("version conflict updating %s (expected %d)", initiative_id, version)
            raise VersionConflict()
        log.info("updated initiative %s to version %d", initiative_id, result.version)
        return initiative_response(result)

    def remove_initiative(self, initiative_id: str) -> str:
        if not self.store.delete(initiative_id):
            raise NotFound()
        log.info("removed initiative %s", initiative_id)
        return initiative_id

    def get_initiative(self, initiative_id: str) -> InitiativeOut:
        record = self.store.get(initiative_id)
        if record is None:
            raise NotFound()
        return initiative_response(record)

    def list_initiatives(self) -> list[InitiativeOut]:
        return [initiative_response(r) for r in self.store.list()]

    def list_events(self, initiative_id: str) -> list[EventOut]:
        if self.store.get(initiative_id) is None:
            raise NotFound()
        return self.store.list_events(initiative_id)
