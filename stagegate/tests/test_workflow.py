"""Tests for stage advancement, approval rounds and decision resolution."""
from __future__ import annotations

import pytest
from sqlalchemy.pool import StaticPool

from stagegate.context import build_context
from stagegate.errors import (
    ApprovalNotFound,
    Forbidden,
    InvalidInput,
    MissingApprovers,
    NotFound,
    VersionConflict,
    WorkstreamNotFound,
)
from stagegate.schemas import StageState
from stagegate.store import NewApproval
from stagegate.workflow import resolve_round_status

from conftest import RecordingNotifier, make_payload, make_settings


def _pending(context, initiative_id: str, stage_key: str, round_index: int = 0) -> dict[str, str]:
    rows = context.store.list_approvals_for_stage(initiative_id, stage_key, round_index)
    return {r.role: r.id for r in rows if r.status == "pending"}


def approve_gate(context, initiative_id: str, stage_key: str):
    """Submit *stage_key* and approve every role; returns the resulting initiative."""
    current = context.service.get_initiative(initiative_id)
    submitted = context.workflow.submit_stage(initiative_id, current.version, stage_key=stage_key)
    result = submitted
    for approval_id in _pending(context, initiative_id, stage_key, submitted.stage_state[stage_key].round_index).values():
        result = context.approvals.decide_approval(approval_id, "approve")
    return result


def walk_to(context, initiative_id: str, stage_key: str):
    result = context.service.get_initiative(initiative_id)
    while result.active_stage != stage_key:
        nxt = f"l{int(result.active_stage[1]) + 1}"
        approved = approve_gate(context, initiative_id, nxt)
        result = context.workflow.advance_stage(initiative_id, nxt, approved.version)
    return result


# =========================================================================
# resolve_round_status
# =========================================================================

class TestResolveRoundStatus:
    def test_all_approved(self):
        assert resolve_round_status(["approved", "approved"]) == "approved"

    def test_single_pending_keeps_pending(self):
        for position in range(3):
            statuses = ["approved"] * 3
            statuses[position] = "pending"
            assert resolve_round_status(statuses) == "pending"

    def test_reject_beats_return(self):
        assert resolve_round_status(["returned", "rejected", "approved"]) == "rejected"

    def test_return_beats_pending(self):
        assert resolve_round_status(["pending", "returned"]) == "returned"

    def test_empty_is_pending(self):
        assert resolve_round_status([]) == "pending"


# =========================================================================
# Stage sequencing
# =========================================================================

class TestAdvanceStage:
    def test_same_stage_rejected(self, context, initiative):
        with pytest.raises(InvalidInput):
            context.workflow.advance_stage(initiative.id, "l0")

    def test_skip_rejected(self, context, initiative):
        with pytest.raises(InvalidInput):
            context.workflow.advance_stage(initiative.id, "l2")

    def test_unknown_stage_rejected(self, context, initiative):
        with pytest.raises(InvalidInput):
            context.workflow.advance_stage(initiative.id, "l9")

    def test_unapproved_gate_blocks(self, context, initiative):
        with pytest.raises(InvalidInput):
            context.workflow.advance_stage(initiative.id, "l1")

    def test_advance_after_approval(self, context, initiative):
        approved = approve_gate(context, initiative.id, "l1")
        result = context.workflow.advance_stage(initiative.id, "L1", approved.version)
        assert result.active_stage == "l1"
        assert result.version == approved.version + 1

    def test_default_target_is_next(self, context, initiative):
        approve_gate(context, initiative.id, "l1")
        assert context.workflow.advance_stage(initiative.id).active_stage == "l1"

    def test_backwards_rejected(self, context, initiative):
        walk_to(context, initiative.id, "l2")
        with pytest.raises(InvalidInput):
            context.workflow.advance_stage(initiative.id, "l1")

    def test_final_stage_cannot_advance(self, context, initiative):
        walk_to(context, initiative.id, "l5")
        with pytest.raises(InvalidInput):
            context.workflow.advance_stage(initiative.id)

    def test_stale_version_conflicts(self, context, initiative):
        approved = approve_gate(context, initiative.id, "l1")
        with pytest.raises(VersionConflict):
            context.workflow.advance_stage(initiative.id, "l1", approved.version - 1)
        assert context.service.get_initiative(initiative.id).active_stage == "l0"

    def test_bool_version_rejected(self, context, initiative):
        approve_gate(context, initiative.id, "l1")
        with pytest.raises(InvalidInput):
            context.workflow.advance_stage(initiative.id, "l1", True)

    def test_missing_initiative(self, context):
        with pytest.raises(NotFound):
            context.workflow.advance_stage("ghost")

    def test_gate_check_can_be_disabled(self, tmp_path, directory):
        ctx = build_context(
            make_settings(tmp_path, require_gate_approval=False),
            directory=directory, notifier=RecordingNotifier(), poolclass=StaticPool,
        )
        try:
            created = ctx.service.create_initiative(make_payload())
            assert ctx.workflow.advance_stage(created.id).active_stage == "l1"
        finally:
            ctx.close()


# =========================================================================
# Submission
# =========================================================================

class TestSubmitStage:
    def test_opens_round_with_one_row_per_role(self, context, initiative, notifier):
        result = context.workflow.submit_stage(initiative.id, initiative.version)
        assert result.version == 2
        assert result.stage_state["l1"].status == "pending"
        assert result.stage_state["l1"].round_index == 0
        assert sorted(_pending(context, initiative.id, "l1")) == ["A", "B", "C"]
        assert sorted(call[0] for call in notifier.calls) == ["A", "B", "C"]

    def test_only_next_gate(self, context, initiative):
        with pytest.raises(InvalidInput):
            context.workflow.submit_stage(initiative.id, initiative.version, stage_key="l2")

    def test_pending_gate_cannot_resubmit(self, context, initiative):
        result = context.workflow.submit_stage(initiative.id, initiative.version)
        with pytest.raises(InvalidInput):
            context.workflow.submit_stage(initiative.id, result.version)

    def test_stale_version_writes_nothing(self, context, initiative):
        context.service.update_initiative(initiative.id, make_payload(name="Edited"), initiative.version)
        with pytest.raises(VersionConflict):
            context.workflow.submit_stage(initiative.id, initiative.version)
        assert context.store.list_approvals() == []

    def test_unknown_workstream(self, context):
        created = context.service.create_initiative(make_payload(workstream_id="ws-unknown"))
        with pytest.raises(WorkstreamNotFound):
            context.workflow.submit_stage(created.id, created.version)

    def test_no_roles_configured(self, context):
        created = context.service.create_initiative(make_payload(workstream_id="ws-empty"))
        with pytest.raises(MissingApprovers):
            context.workflow.submit_stage(created.id, created.version)
        assert context.service.get_initiative(created.id).stage_state["l1"].status == "draft"

    def test_notification_failure_is_suppressed(self, tmp_path, directory):
        failing = RecordingNotifier(fail=True)
        ctx = build_context(make_settings(tmp_path), directory=directory, notifier=failing, poolclass=StaticPool)
        try:
            created = ctx.service.create_initiative(make_payload())
            result = ctx.workflow.submit_stage(created.id, created.version)
            assert result.stage_state["l1"].status == "pending"
            assert len(failing.calls) == 3
            assert len(ctx.store.list_approvals("pending")) == 3
        finally:
            ctx.close()


# =========================================================================
# Decisions
# =========================================================================

class TestDecideApproval:
    def test_unanimous_approval(self, context, initiative):
        context.workflow.submit_stage(initiative.id, initiative.version)
        ids = _pending(context, initiative.id, "l1")

        after_a = context.approvals.decide_approval(ids["A"], "approve", account_id="acc-a")
        assert after_a.stage_state["l1"].status == "pending"
        after_b = context.approvals.decide_approval(ids["B"], "approve", account_id="acc-b")
        assert after_b.stage_state["l1"].status == "pending"
        after_c = context.approvals.decide_approval(ids["C"], "approve", account_id="acc-c")
        assert after_c.stage_state["l1"].status == "approved"
        assert after_c.version == after_b.version + 1 == after_a.version + 2

    def test_return_then_resubmit_opens_next_round(self, context, initiative):
        context.workflow.submit_stage(initiative.id, initiative.version)
        ids = _pending(context, initiative.id, "l1")
        context.approvals.decide_approval(ids["A"], "approve")
        returned = context.approvals.decide_approval(ids["B"], "return", comment="Needs a baseline")
        assert returned.stage_state["l1"].status == "returned"
        assert returned.stage_state["l1"].round_index == 0
        assert returned.stage_state["l1"].comment == "Needs a baseline"

        resubmitted = context.workflow.submit_stage(initiative.id, returned.version)
        assert resubmitted.stage_state["l1"].status == "pending"
        assert resubmitted.stage_state["l1"].round_index == 1
        assert sorted(_pending(context, initiative.id, "l1", 1)) == ["A", "B", "C"]
        # The earlier round stays on record.
        assert len(context.store.list_approvals_for_stage(initiative.id, "l1", 0)) == 3

    def test_reject_is_terminal(self, context, initiative):
        context.workflow.submit_stage(initiative.id, initiative.version)
        ids = _pending(context, initiative.id, "l1")
        rejected = context.approvals.decide_approval(ids["A"], "reject")
        assert rejected.stage_state["l1"].status == "rejected"
        # The rest of the round is closed with the gate and cannot revive it.
        rows = context.store.list_approvals_for_stage(initiative.id, "l1", 0)
        assert {r.status for r in rows} == {"rejected"}
        with pytest.raises(InvalidInput):
            context.approvals.decide_approval(ids["B"], "approve")
        assert context.approvals.list_approval_tasks(status="pending") == []
        with pytest.raises(InvalidInput):
            context.workflow.submit_stage(initiative.id, rejected.version)
        assert context.service.get_initiative(initiative.id).stage_state["l1"].status == "rejected"

    def test_row_of_returned_round_cannot_be_decided(self, context, initiative):
        context.workflow.submit_stage(initiative.id, initiative.version)
        ids = _pending(context, initiative.id, "l1")
        returned = context.approvals.decide_approval(ids["A"], "return")
        with pytest.raises(InvalidInput):
            context.approvals.decide_approval(ids["B"], "approve")
        after = context.service.get_initiative(initiative.id)
        assert after.version == returned.version
        assert after.stage_state["l1"].status == "returned"
        assert context.store.find_approval(ids["B"]).status == "pending"

    def test_earlier_round_row_cannot_overwrite_open_round(self, context, initiative):
        context.workflow.submit_stage(initiative.id, initiative.version)
        ids = _pending(context, initiative.id, "l1")
        returned = context.approvals.decide_approval(ids["A"], "return")
        resubmitted = context.workflow.submit_stage(initiative.id, returned.version)
        assert resubmitted.stage_state["l1"] == StageState(status="pending", round_index=1)

        # Superseded rows were closed; a row left pending in round 0 is refused too.
        with pytest.raises(InvalidInput):
            context.approvals.decide_approval(ids["B"], "approve")
        [stray] = context.store.insert_approvals(initiative.id, [NewApproval("l1", 0, "D")])
        with pytest.raises(InvalidInput):
            context.approvals.decide_approval(stray.id, "approve")

        gate = context.service.get_initiative(initiative.id).stage_state["l1"]
        assert gate.status == "pending"
        assert gate.round_index == 1
        # The next round still resolves from its own rows.
        result = None
        for approval_id in _pending(context, initiative.id, "l1", 1).values():
            result = context.approvals.decide_approval(approval_id, "approve")
        assert result.stage_state["l1"] == StageState(status="approved", round_index=1)

    def test_decided_row_cannot_change(self, context, initiative):
        context.workflow.submit_stage(initiative.id, initiative.version)
        ids = _pending(context, initiative.id, "l1")
        context.approvals.decide_approval(ids["A"], "approve")
        with pytest.raises(InvalidInput):
            context.approvals.decide_approval(ids["A"], "reject")

    def test_unknown_approval(self, context):
        with pytest.raises(ApprovalNotFound):
            context.approvals.decide_approval("nope", "approve")

    def test_unknown_decision(self, context, initiative):
        context.workflow.submit_stage(initiative.id, initiative.version)
        ids = _pending(context, initiative.id, "l1")
        with pytest.raises(InvalidInput):
            context.approvals.decide_approval(ids["A"], "maybe")

    def test_account_without_role_forbidden(self, context, initiative):
        context.workflow.submit_stage(initiative.id, initiative.version)
        ids = _pending(context, initiative.id, "l1")
        with pytest.raises(Forbidden):
            context.approvals.decide_approval(ids["A"], "approve", account_id="acc-b")
        with pytest.raises(Forbidden):
            context.approvals.decide_approval(ids["A"], "approve", account_id="acc-unknown")
        assert context.store.find_approval(ids["A"]).status == "pending"

    def test_role_held_in_other_workstream_forbidden(self, context, initiative):
        context.workflow.submit_stage(initiative.id, initiative.version)
        ids = _pending(context, initiative.id, "l1")
        with pytest.raises(Forbidden):
            context.approvals.decide_approval(ids["A"], "approve", account_id="acc-outsider")

    def test_unknown_workstream_on_decision(self, context):
        created = context.service.create_initiative(make_payload(workstream_id="ws-gone"))
        [row] = context.store.insert_approvals(created.id, [NewApproval("l1", 0, "A")])
        with pytest.raises(WorkstreamNotFound):
            context.approvals.decide_approval(row.id, "approve")
        assert context.store.find_approval(row.id).status == "pending"

    def test_decision_recorded_in_history(self, context, initiative):
        context.workflow.submit_stage(initiative.id, initiative.version)
        ids = _pending(context, initiative.id, "l1")
        context.approvals.decide_approval(ids["A"], "approve", account_id="acc-a")
        decisions = [e for e in context.service.list_events(initiative.id) if e.event_type == "approval-decision"]
        assert decisions[0].field == "approvals.l1.A"
        assert decisions[0].next_value == "approved"
        assert decisions[0].actor_account_id == "acc-a"


# =========================================================================
# Task listing
# =========================================================================

class TestListApprovalTasks:
    def test_round_counters_and_projection(self, context):
        created = context.service.create_initiative(make_payload(stages={
            "l1": {"financials": {"recurring-benefits": [{"distribution": {"2025-01": 500}}]}},
        }))
        context.workflow.submit_stage(created.id, created.version)
        ids = _pending(context, created.id, "l1")
        context.approvals.decide_approval(ids["A"], "approve")

        tasks = context.approvals.list_approval_tasks(status="pending")
        assert sorted(t.role for t in tasks) == ["B", "C"]
        task = tasks[0]
        assert task.initiative_name == "Efficiency Program"
        assert task.workstream_id == "ws-1"
        assert task.stage_state.status == "pending"
        assert task.totals.recurring_benefits == 500
        assert (task.round_total, task.round_approved, task.round_pending) == (3, 1, 2)

    def test_account_filter(self, context, initiative):
        context.workflow.submit_stage(initiative.id, initiative.version)
        tasks = context.approvals.list_approval_tasks(account_id="acc-b")
        assert [t.role for t in tasks] == ["B"]

    def test_superseded_round_not_listed_as_pending(self, context, initiative):
        context.workflow.submit_stage(initiative.id, initiative.version)
        ids = _pending(context, initiative.id, "l1")
        returned = context.approvals.decide_approval(ids["A"], "return")
        context.workflow.submit_stage(initiative.id, returned.version)

        tasks = context.approvals.list_approval_tasks(status="pending", account_id="acc-b")
        assert [(t.role, t.round_index) for t in tasks] == [("B", 1)]
        assert (tasks[0].round_total, tasks[0].round_pending) == (3, 3)
        old_b = context.store.find_approval(ids["B"])
        assert old_b.status == "returned"
        assert old_b.comment == "Superseded by round 1."

    def test_unknown_account_sees_nothing(self, context, initiative):
        context.workflow.submit_stage(initiative.id, initiative.version)
        assert context.approvals.list_approval_tasks(account_id="acc-unknown") == []

    def test_invalid_status(self, context):
        with pytest.raises(InvalidInput):
            context.approvals.list_approval_tasks(status="someday")
