"""Stage gate workflow: advancing stages, opening approval rounds, deciding approvals."""
from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Iterable

from stagegate.directory import AccountDirectory, Notifier, WorkstreamDirectory
from stagegate.errors import (
    ApprovalNotFound,
    Forbidden,
    InvalidInput,
    MissingApprovers,
    NotFound,
    VersionConflict,
)
from stagegate.schemas import (
    APPROVAL_STATUSES,
    DECISIONS,
    STAGE_KEYS,
    ApprovalRecord,
    ApprovalTaskOut,
    InitiativeOut,
    InitiativeRecord,
    InitiativeTotals,
    StageState,
    normalize_stage_key,
)
from stagegate.services import initiative_response
from stagegate.store import InitiativeStore, NewApproval, UpdateOutcome
from stagegate.totals import compute_totals
from stagegate.utils import sanitize_optional_string, strict_int

log = logging.getLogger(__name__)


def resolve_round_status(statuses: Iterable[str]) -> str:
    """Unanimous resolution of one approval round.

    Any rejection rejects the gate, then any return sends it back, then the
    gate is approved only once every row is approved. Otherwise it is pending.
    """
    statuses = list(statuses)
    if not statuses:
        return "pending"
    if "rejected" in statuses:
        return "rejected"
    if "returned" in statuses:
        return "returned"
    if all(s == "approved" for s in statuses):
        return "approved"
    return "pending"


def _raise_for_outcome(outcome: UpdateOutcome) -> None:
    if outcome is UpdateOutcome.NOT_FOUND:
        raise NotFound()
    if outcome is UpdateOutcome.VERSION_CONFLICT:
        raise VersionConflict()
    if outcome is UpdateOutcome.ROUND_CLOSED:
        raise InvalidInput("Approval belongs to a round that is no longer open.")
    raise InvalidInput("Approval has already been decided.")


def _expected_version(value: int | None, record: InitiativeRecord) -> int:
    if value is None:
        return record.version
    version = strict_int(value)
    if version is None:
        raise InvalidInput("expected_version must be an integer.")
    return version


class StageWorkflowEngine:
    def __init__(
        self,
        store: InitiativeStore,
        workstreams: WorkstreamDirectory,
        notifier: Notifier,
        require_gate_approval: bool = True,
    ):
        self.store = store
        self.workstreams = workstreams
        self.notifier = notifier
        self.require_gate_approval = require_gate_approval

    def _load(self, initiative_id: str) -> InitiativeRecord:
        record = self.store.get(initiative_id)
        if record is None:
            raise NotFound()
        return record

    @staticmethod
    def _next_stage(record: InitiativeRecord, requested: str | None) -> str:
        current = STAGE_KEYS.index(record.active_stage)
        if requested is None:
            target = STAGE_KEYS[min(current + 1, len(STAGE_KEYS) - 1)]
        else:
            target = normalize_stage_key(requested)
            if target is None:
                raise InvalidInput(f"Unknown stage: {requested!r}.")
        if STAGE_KEYS.index(target) != current + 1:
            raise InvalidInput(f"Cannot move from {record.active_stage} to {target}; stages advance one at a time.")
        return target

    def advance_stage(
        self, initiative_id: str, target_stage: str | None = None, expected_version: int | None = None,
    ) -> InitiativeOut:
        record = self._load(initiative_id)
        version = _expected_version(expected_version, record)
        target = self._next_stage(record, target_stage)
        if self.require_gate_approval and record.stage_state[target].status != "approved":
            raise InvalidInput(f"Gate {target} has not been approved.")

        result = self.store.commit_stage_change(
            initiative_id, version, active_stage=target, event_type="stage-advance",
        )
        if isinstance(result, UpdateOutcome):
            log.warning("advance of %s to %s failed: %s", initiative_id, target, result.value)
            _raise_for_outcome(result)
        log.info("advanced %s to %s", initiative_id, target)
        return initiative_response(result)

    def submit_stage(
        self,
        initiative_id: str,
        expected_version: int | None = None,
        stage_key: str | None = None,
        account_id: str | None = None,
    ) -> InitiativeOut:
        """Open an approval round for the gate after the active stage.

        A draft gate opens its current round, a returned gate opens the next
        one. One pending approval row per configured role is written together
        with the gate state; approvers are notified after the commit.
        """
        record = self._load(initiative_id)
        version = _expected_version(expected_version, record)
        if record.active_stage == STAGE_KEYS[-1] and stage_key is None:
            raise InvalidInput("Initiative is already at the final stage.")
        gate = self._next_stage(record, stage_key)

        state = record.stage_state[gate]
        if state.status == "draft":
            round_index = state.round_index
        elif state.status == "returned":
            round_index = state.round_index + 1
        else:
            raise InvalidInput(f"Gate {gate} is {state.status} and cannot be submitted.")

        roles = self.workstreams.get_approver_roles(record.workstream_id, gate)
        if not roles:
            raise MissingApprovers()

        result = self.store.commit_stage_change(
            initiative_id,
            version,
            stage_state={gate: StageState(status="pending", round_index=round_index)},
            approvals=[NewApproval(gate, round_index, role) for role in roles],
            event_type="stage-submit",
            actor_account_id=account_id,
        )
        if isinstance(result, UpdateOutcome):
            log.warning("submit of %s gate %s failed: %s", initiative_id, gate, result.value)
            _raise_for_outcome(result)
        log.info("submitted %s gate %s round %d to %d approvers", initiative_id, gate, round_index, len(roles))

        for role in roles:
            self._notify(role, initiative_id, gate)
        return initiative_response(result)

    def _notify(self, role: str, initiative_id: str, stage_key: str) -> None:
        try:
            self.notifier.notify_approver(role, initiative_id, stage_key)
        except Exception as exc:
            log.warning("failed to notify %s about %s gate %s: %s", role, initiative_id, stage_key, exc)


class ApprovalCoordinator:
    def __init__(self, store: InitiativeStore, accounts: AccountDirectory, workstreams: WorkstreamDirectory):
        self.store = store
        self.accounts = accounts
        self.workstreams = workstreams

    def list_approval_tasks(self, status: str | None = None, account_id: str | None = None) -> list[ApprovalTaskOut]:
        if status is not None and status not in APPROVAL_STATUSES:
            raise InvalidInput(f"Unknown approval status: {status!r}.")
        account = None
        if account_id:
            account = self.accounts.find_by_id(account_id)
            if account is None:
                return []

        rows = self.store.list_approvals(status)
        initiatives = self.store.get_many(row.initiative_id for row in rows)
        rows = [
            row for row in rows
            if row.initiative_id in initiatives
            and (account is None or account.holds_role(initiatives[row.initiative_id].workstream_id, row.role))
        ]
        rounds = self.store.round_status_counts(row.initiative_id for row in rows)

        totals: dict[str, InitiativeTotals] = {}
        tasks: list[ApprovalTaskOut] = []
        for row in rows:
            initiative = initiatives[row.initiative_id]
            if initiative.id not in totals:
                totals[initiative.id] = compute_totals(initiative.stages)
            counts = rounds.get((row.initiative_id, row.stage_key, row.round_index), Counter())
            tasks.append(ApprovalTaskOut(
                **row.model_dump(),
                initiative_name=initiative.name,
                workstream_id=initiative.workstream_id,
                owner_name=initiative.owner_name,
                owner_account_id=initiative.owner_account_id,
                stage_state=initiative.stage_state[row.stage_key],
                totals=totals[initiative.id],
                round_total=sum(counts.values()),
                round_approved=counts["approved"],
                round_pending=counts["pending"],
            ))
        return tasks

    def decide_approval(
        self,
        approval_id: str,
        decision: str,
        account_id: str | None = None,
        comment: str | None = None,
    ) -> InitiativeOut:
        approval = self.store.find_approval(approval_id)
        if approval is None:
            raise ApprovalNotFound()
        status = DECISIONS.get(decision.strip().lower() if isinstance(decision, str) else "")
        if status is None:
            raise InvalidInput(f"Unknown decision: {decision!r}.")
        if approval.status != "pending":
            raise InvalidInput("Approval has already been decided.")

        initiative = self.store.get(approval.initiative_id)
        if initiative is None:
            raise NotFound()
        if account_id:
            account = self.accounts.find_by_id(account_id)
            if account is None or not account.holds_role(initiative.workstream_id, approval.role):
                raise Forbidden()
        # Raises WorkstreamNotFound before anything is written.
        self.workstreams.get_approver_roles(initiative.workstream_id, approval.stage_key)

        result = self.store.apply_decision(
            approval_id, status, sanitize_optional_string(comment), account_id or None, _resolve_gate,
        )
        if result is UpdateOutcome.NOT_FOUND:
            raise ApprovalNotFound()
        if isinstance(result, UpdateOutcome):
            _raise_for_outcome(result)
        log.info(
            "approval %s (%s) on %s gate %s: %s -> gate %s",
            approval_id, approval.role, approval.initiative_id, approval.stage_key, status,
            result.stage_state[approval.stage_key].status,
        )
        return initiative_response(result)


def _resolve_gate(rows: list[ApprovalRecord], current: StageState, decided: ApprovalRecord) -> StageState:
    if not rows:
        raise MissingApprovers()
    return StageState(
        status=resolve_round_status(r.status for r in rows),
        round_index=decided.round_index,
        comment=decided.comment or current.comment,
    )
