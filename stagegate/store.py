"""Durable, race-safe persistence for initiatives, approval rows and events.

Every public method runs in its own transaction. Version-checked writes return
an :class:`UpdateOutcome` instead of raising when the row is gone or stale, so
callers decide which domain error to surface.
"""
from __future__ import annotations

import enum
import logging
from collections import Counter
from collections.abc import Callable, Iterable
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Generator

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session, sessionmaker

from stagegate.db import session_scope
from stagegate.errors import DuplicateId, StageGateError, StorageError
from stagegate.models import Initiative, InitiativeApproval, InitiativeEvent
from stagegate.schemas import (
    STAGE_KEYS,
    ApprovalRecord,
    EventOut,
    InitiativeRecord,
    InitiativeWriteModel,
    StageState,
    sanitize_stage_map,
    sanitize_stage_state_map,
)
from stagegate.utils import json_parse, new_id, to_json, utc_now

log = logging.getLogger(__name__)

# Fields an edit may change; active_stage and stage_state belong to the workflow.
EDITABLE_FIELDS = (
    "workstream_id", "name", "description", "owner_account_id", "owner_name",
    "current_status", "l4_date",
)


class UpdateOutcome(enum.Enum):
    NOT_FOUND = "not-found"
    VERSION_CONFLICT = "version-conflict"
    ALREADY_DECIDED = "already-decided"
    ROUND_CLOSED = "round-closed"


@dataclass(frozen=True)
class NewApproval:
    stage_key: str
    round_index: int
    role: str


RoundResolver = Callable[[list[ApprovalRecord], StageState, ApprovalRecord], StageState]


# ---------------------------------------------------------------------------
# Row conversion
# ---------------------------------------------------------------------------


def _aware(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _dump_stages(stages: dict) -> str:
    return to_json({key: stages[key].model_dump() for key in STAGE_KEYS if key in stages})


def _dump_stage_state(state: dict[str, StageState]) -> str:
    return to_json({key: state[key].model_dump() for key in STAGE_KEYS if key in state})


def record_from_row(row: Initiative) -> InitiativeRecord:
    return InitiativeRecord(
        id=row.id,
        workstream_id=row.workstream_id,
        name=row.name,
        description=row.description or "",
        owner_account_id=row.owner_account_id,
        owner_name=row.owner_name,
        current_status=row.current_status or "draft",
        active_stage=row.active_stage if row.active_stage in STAGE_KEYS else "l0",
        l4_date=row.l4_date,
        stages=sanitize_stage_map(json_parse(row.stage_payload_json)),
        stage_state=sanitize_stage_state_map(json_parse(row.stage_state_json)),
        version=row.version,
        created_at=_aware(row.created_at),
        updated_at=_aware(row.updated_at),
    )


def approval_from_row(row: InitiativeApproval) -> ApprovalRecord:
    return ApprovalRecord(
        id=row.id,
        initiative_id=row.initiative_id,
        stage_key=row.stage_key,
        round_index=row.round_index,
        role=row.role,
        status=row.status,
        comment=row.comment,
        decided_by_account_id=row.decided_by_account_id,
        created_at=_aware(row.created_at),
        decided_at=_aware(row.decided_at),
    )


def event_from_row(row: InitiativeEvent) -> EventOut:
    return EventOut(
        id=row.id,
        event_id=row.event_id,
        initiative_id=row.initiative_id,
        event_type=row.event_type,
        field=row.field,
        previous_value=json_parse(row.previous_value_json, None),
        next_value=json_parse(row.next_value_json, None),
        actor_account_id=row.actor_account_id,
        created_at=_aware(row.created_at),
    )


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class InitiativeStore:
    def __init__(self, session_factory: sessionmaker[Session]):
        self._session_factory = session_factory

    @contextmanager
    def _transaction(self) -> Generator[Session, None, None]:
        try:
            with session_scope(self._session_factory) as session:
                yield session
        except StageGateError:
            raise
        except (OperationalError, PoolTimeoutError) as exc:
            log.warning("storage unavailable: %s", exc)
            raise StorageError("Storage temporarily unavailable.", retryable=True) from exc
        except SQLAlchemyError as exc:
            log.error("storage failure: %s", exc)
            raise StorageError() from exc

    # -- initiatives ---------------------------------------------------------

    def create(self, model: InitiativeWriteModel, actor_account_id: str | None = None) -> InitiativeRecord:
        now = utc_now()
        row = Initiative(
            id=model.id,
            active_stage=model.active_stage,
            stage_payload_json=_dump_stages(model.stages),
            stage_state_json=_dump_stage_state(model.stage_state),
            version=1,
            created_at=now,
            updated_at=now,
            **{f: getattr(model, f) for f in EDITABLE_FIELDS},
        )
        with self._transaction() as session:
            if session.get(Initiative, model.id) is not None:
                raise DuplicateId()
            session.add(row)
            try:
                session.flush()
            except IntegrityError as exc:
                raise DuplicateId() from exc
            event_id = new_id()
            self._add_event(session, row.id, event_id, "create", "name", None, row.name, actor_account_id)
            return record_from_row(row)

    def get(self, initiative_id: str) -> InitiativeRecord | None:
        with self._transaction() as session:
            row = session.get(Initiative, initiative_id)
            return record_from_row(row) if row is not None else None

    def get_many(self, initiative_ids: Iterable[str]) -> dict[str, InitiativeRecord]:
        ids = sorted(set(initiative_ids))
        if not ids:
            return {}
        with self._transaction() as session:
            rows = session.scalars(select(Initiative).where(Initiative.id.in_(ids))).all()
            return {r.id: record_from_row(r) for r in rows}

    def list(self) -> list[InitiativeRecord]:
        with self._transaction() as session:
            rows = session.scalars(
                select(Initiative).order_by(Initiative.updated_at.desc(), Initiative.id)
            ).all()
            return [record_from_row(r) for r in rows]

    def update(
        self, model: InitiativeWriteModel, expected_version: int, actor_account_id: str | None = None,
    ) -> InitiativeRecord | UpdateOutcome:
        """Conditional full replace of the editable fields and the stage map.

        Zero affected rows are told apart by an existence probe: an absent row
        (including one deleted concurrently) is ``NOT_FOUND``, anything else is
        ``VERSION_CONFLICT``.
        """
        values: dict[str, Any] = {f: getattr(model, f) for f in EDITABLE_FIELDS}
        values["stage_payload_json"] = _dump_stages(model.stages)
        with self._transaction() as session:
            previous = session.get(Initiative, model.id)
            before = (
                {f: getattr(previous, f) for f in values}
                if previous is not None and previous.version == expected_version else None
            )
            result = session.execute(
                update(Initiative)
                .where(Initiative.id == model.id, Initiative.version == expected_version)
                .values(**values, version=Initiative.version + 1, updated_at=utc_now())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                exists = session.scalar(select(Initiative.id).where(Initiative.id == model.id))
                return UpdateOutcome.NOT_FOUND if exists is None else UpdateOutcome.VERSION_CONFLICT
            session.expire_all()
            row = session.get(Initiative, model.id)
            if before is not None:
                event_id = new_id()
                for field, old in before.items():
                    new = values[field]
                    if old == new:
                        continue
                    if field == "stage_payload_json":
                        field, old, new = "stages", json_parse(old, None), json_parse(new, None)
                    self._add_event(session, row.id, event_id, "update", field, old, new, actor_account_id)
            return record_from_row(row)

    def delete(self, initiative_id: str) -> bool:
        with self._transaction() as session:
            row = session.get(Initiative, initiative_id)
            if row is None:
                return False
            session.delete(row)
            return True

    def update_stage_state(
        self, initiative_id: str, state_map: dict[str, StageState], expected_version: int,
    ) -> InitiativeRecord | UpdateOutcome:
        return self.commit_stage_change(initiative_id, expected_version, stage_state=state_map)

    def commit_stage_change(
        self,
        initiative_id: str,
        expected_version: int,
        *,
        stage_state: dict[str, StageState] | None = None,
        active_stage: str | None = None,
        approvals: Iterable[NewApproval] = (),
        event_type: str = "stage-update",
        actor_account_id: str | None = None,
    ) -> InitiativeRecord | UpdateOutcome:
        """Apply a workflow change and its approval batch in one transaction.

        The initiative row is locked, its version checked, the approvals
        inserted (existing tuples are skipped), the stage fields written and
        the version bumped. Opening round N of a gate closes the rows still
        pending from its earlier rounds as ``returned``. Any failure rolls
        back the whole change.
        """
        with self._transaction() as session:
            row = self._lock_initiative(session, initiative_id)
            if row is None:
                return UpdateOutcome.NOT_FOUND
            if row.version != expected_version:
                return UpdateOutcome.VERSION_CONFLICT
            self._add_approvals(session, initiative_id, approvals)
            event_id = new_id()
            for key, state in (stage_state or {}).items():
                if state.status == "pending" and state.round_index > 0:
                    superseded = session.scalars(
                        select(InitiativeApproval).where(
                            InitiativeApproval.initiative_id == initiative_id,
                            InitiativeApproval.stage_key == key,
                            InitiativeApproval.round_index < state.round_index,
                            InitiativeApproval.status == "pending",
                        )
                    ).all()
                    self._close_rows(
                        session, row, superseded, "returned", f"Superseded by round {state.round_index}.",
                        event_id, event_type, actor_account_id,
                    )
            if stage_state is not None:
                self._write_stage_state(session, row, stage_state, event_id, event_type, actor_account_id)
            if active_stage is not None and active_stage != row.active_stage:
                self._add_event(
                    session, row.id, event_id, event_type, "active_stage",
                    row.active_stage, active_stage, actor_account_id,
                )
                row.active_stage = active_stage
            row.version += 1
            row.updated_at = utc_now()
            session.flush()
            return record_from_row(row)

    # -- approvals -----------------------------------------------------------

    def insert_approvals(self, initiative_id: str, batch: Iterable[NewApproval]) -> list[ApprovalRecord]:
        """Insert approval rows as one set. Tuples that already exist are kept as they are."""
        with self._transaction() as session:
            self._lock_initiative(session, initiative_id)
            rows = self._add_approvals(session, initiative_id, batch)
            return [approval_from_row(r) for r in rows]

    def update_approval_status(
        self, approval_id: str, status: str, comment: str | None, decided_by: str | None = None,
    ) -> ApprovalRecord | None:
        with self._transaction() as session:
            row = session.get(InitiativeApproval, approval_id)
            if row is None:
                return None
            row.status = status
            row.comment = comment
            row.decided_by_account_id = decided_by
            row.decided_at = utc_now()
            session.flush()
            return approval_from_row(row)

    def find_approval(self, approval_id: str) -> ApprovalRecord | None:
        with self._transaction() as session:
            row = session.get(InitiativeApproval, approval_id)
            return approval_from_row(row) if row is not None else None

    def list_approvals_for_stage(
        self, initiative_id: str, stage_key: str, round_index: int,
    ) -> list[ApprovalRecord]:
        with self._transaction() as session:
            return [approval_from_row(r) for r in self._round_rows(session, initiative_id, stage_key, round_index)]

    def list_approvals(self, status: str | None = None) -> list[ApprovalRecord]:
        stmt = select(InitiativeApproval).order_by(
            InitiativeApproval.created_at, InitiativeApproval.initiative_id, InitiativeApproval.role,
        )
        if status:
            stmt = stmt.where(InitiativeApproval.status == status)
        with self._transaction() as session:
            return [approval_from_row(r) for r in session.scalars(stmt).all()]

    def round_status_counts(self, initiative_ids: Iterable[str]) -> dict[tuple[str, str, int], Counter]:
        """Approval row counts per status, keyed by ``(initiative_id, stage_key, round_index)``."""
        ids = sorted(set(initiative_ids))
        if not ids:
            return {}
        stmt = (
            select(
                InitiativeApproval.initiative_id,
                InitiativeApproval.stage_key,
                InitiativeApproval.round_index,
                InitiativeApproval.status,
                func.count(),
            )
            .where(InitiativeApproval.initiative_id.in_(ids))
            .group_by(
                InitiativeApproval.initiative_id,
                InitiativeApproval.stage_key,
                InitiativeApproval.round_index,
                InitiativeApproval.status,
            )
        )
        counts: dict[tuple[str, str, int], Counter] = {}
        with self._transaction() as session:
            for initiative_id, stage_key, round_index, status, total in session.execute(stmt):
                counts.setdefault((initiative_id, stage_key, round_index), Counter())[status] = total
        return counts

    def apply_decision(
        self,
        approval_id: str,
        status: str,
        comment: str | None,
        decided_by: str | None,
        resolve: RoundResolver,
    ) -> InitiativeRecord | UpdateOutcome:
        """Record one approver's decision and recompute the gate state.

        Runs under the initiative row lock: the approval row is written, the
        whole round is re-read, *resolve* derives the gate state from it, and
        the initiative version is bumped. Concurrent decisions on the same
        initiative therefore apply one after the other.

        Only rows of the gate's open round can be decided; anything else is
        ``ROUND_CLOSED``. When the round resolves to ``rejected`` its
        remaining pending rows are closed as ``rejected``.
        """
        with self._transaction() as session:
            initiative_id = session.scalar(
                select(InitiativeApproval.initiative_id).where(InitiativeApproval.id == approval_id)
            )
            if initiative_id is None:
                return UpdateOutcome.NOT_FOUND
            row = self._lock_initiative(session, initiative_id)
            if row is None:
                return UpdateOutcome.NOT_FOUND
            approval = session.get(InitiativeApproval, approval_id, populate_existing=True)
            if approval is None:
                return UpdateOutcome.NOT_FOUND
            if approval.status != "pending":
                return UpdateOutcome.ALREADY_DECIDED
            state_map = sanitize_stage_state_map(json_parse(row.stage_state_json))
            gate = state_map.get(approval.stage_key)
            if gate is None or gate.status != "pending" or gate.round_index != approval.round_index:
                return UpdateOutcome.ROUND_CLOSED

            approval.status = status
            approval.comment = comment
            approval.decided_by_account_id = decided_by
            approval.decided_at = utc_now()
            session.flush()

            round_rows = self._round_rows(session, initiative_id, approval.stage_key, approval.round_index)
            gate_state = resolve(
                [approval_from_row(r) for r in round_rows], gate, approval_from_row(approval),
            )
            state_map[approval.stage_key] = gate_state

            event_id = new_id()
            self._add_event(
                session, row.id, event_id, "approval-decision", f"approvals.{approval.stage_key}.{approval.role}",
                "pending", status, decided_by,
            )
            if gate_state.status == "rejected":
                self._close_rows(
                    session, row, [r for r in round_rows if r.status == "pending"], "rejected",
                    "Gate rejected.", event_id, "approval-decision", decided_by,
                )
            self._write_stage_state(session, row, state_map, event_id, "approval-decision", decided_by)
            row.version += 1
            row.updated_at = utc_now()
            session.flush()
            return record_from_row(row)

    # -- events --------------------------------------------------------------

    def list_events(self, initiative_id: str) -> list[EventOut]:
        with self._transaction() as session:
            rows = session.scalars(
                select(InitiativeEvent)
                .where(InitiativeEvent.initiative_id == initiative_id)
                .order_by(InitiativeEvent.created_at.desc(), InitiativeEvent.field)
            ).all()
            return [event_from_row(r) for r in rows]

    # -- helpers (expect an open session) -------------------------------------

    @staticmethod
    def _lock_initiative(session: Session, initiative_id: str) -> Initiative | None:
        return session.scalar(
            select(Initiative)
            .where(Initiative.id == initiative_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )

    @staticmethod
    def _round_rows(session: Session, initiative_id: str, stage_key: str, round_index: int) -> list[InitiativeApproval]:
        return list(session.scalars(
            select(InitiativeApproval)
            .where(
                InitiativeApproval.initiative_id == initiative_id,
                InitiativeApproval.stage_key == stage_key,
                InitiativeApproval.round_index == round_index,
            )
            .order_by(InitiativeApproval.created_at, InitiativeApproval.role)
        ).all())

    @staticmethod
    def _add_approvals(
        session: Session, initiative_id: str, batch: Iterable[NewApproval],
    ) -> list[InitiativeApproval]:
        rows: list[InitiativeApproval] = []
        now = utc_now()
        for item in batch:
            existing = session.scalar(
                select(InitiativeApproval).where(
                    InitiativeApproval.initiative_id == initiative_id,
                    InitiativeApproval.stage_key == item.stage_key,
                    InitiativeApproval.round_index == item.round_index,
                    InitiativeApproval.role == item.role,
                )
            )
            if existing is not None:
                rows.append(existing)
                continue
            approval = InitiativeApproval(
                id=new_id(),
                initiative_id=initiative_id,
                stage_key=item.stage_key,
                round_index=item.round_index,
                role=item.role,
                status="pending",
                created_at=now,
            )
            session.add(approval)
            rows.append(approval)
        session.flush()
        return rows

    def _close_rows(
        self,
        session: Session,
        row: Initiative,
        approvals: Iterable[InitiativeApproval],
        status: str,
        comment: str,
        event_id: str,
        event_type: str,
        actor_account_id: str | None,
    ) -> None:
        """Move undecided approval rows to *status*; the rows stay on record."""
        now = utc_now()
        for approval in approvals:
            approval.status = status
            approval.comment = comment
            approval.decided_at = now
            self._add_event(
                session, row.id, event_id, event_type, f"approvals.{approval.stage_key}.{approval.role}",
                "pending", status, actor_account_id,
            )
        session.flush()

    def _write_stage_state(
        self,
        session: Session,
        row: Initiative,
        state_map: dict[str, StageState],
        event_id: str,
        event_type: str,
        actor_account_id: str | None,
    ) -> None:
        previous = sanitize_stage_state_map(json_parse(row.stage_state_json))
        for key in STAGE_KEYS:
            if key in state_map and state_map[key] != previous[key]:
                self._add_event(
                    session, row.id, event_id, event_type, f"stage_state.{key}",
                    previous[key].model_dump(), state_map[key].model_dump(), actor_account_id,
                )
        merged = {**previous, **state_map}
        row.stage_state_json = _dump_stage_state(merged)

    @staticmethod
    def _add_event(
        session: Session,
        initiative_id: str,
        event_id: str,
        event_type: str,
        field: str,
        previous_value: Any,
        next_value: Any,
        actor_account_id: str | None,
    ) -> None:
        session.add(InitiativeEvent(
            id=new_id(),
            event_id=event_id,
            initiative_id=initiative_id,
            event_type=event_type,
            field=field,
            previous_value_json=to_json(previous_value) if previous_value is not None else None,
            next_value_json=to_json(next_value) if next_value is not None else None,
            actor_account_id=actor_account_id,
            created_at=utc_now(),
        ))
