from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from typing import Any

from mcp.server.fastmcp import Context, FastMCP
from pydantic import BaseModel

from stagegate.context import AppContext, build_context
from stagegate.errors import StageGateError, StorageError
from stagegate.schemas import STAGE_KEYS

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def stagegate_lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
    context = build_context()
    try:
        yield context
    finally:
        context.close()


mcp = FastMCP(
    "Stagegate",
    instructions=(
        "Stagegate tracks initiatives through stage gates l0 to l5. "
        "Use list_initiatives() to browse, get_initiative(id) for details and totals, "
        "submit_stage(id, expected_version) to request approval of the next gate, "
        "list_approval_tasks() and decide_approval(id, decision) to sign off, "
        "and advance_stage(id) once a gate is approved. Every write needs the "
        "initiative's current version."
    ),
    lifespan=stagegate_lifespan,
    json_response=True,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _dump(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, list):
        return [_dump(v) for v in value]
    return value


def _call(ctx: Context, action: Callable[[AppContext], Any]) -> Any:
    """Run *action* against the shared context; domain errors come back as dicts."""
    app_context: AppContext = ctx.request_context.lifespan_context
    try:
        return _dump(action(app_context))
    except StageGateError as exc:
        log.info("tool call failed: %s (%s)", exc.message, exc.code)
        return {
            "error": exc.message,
            "error_code": exc.code,
            "retryable": exc.retryable if isinstance(exc, StorageError) else False,
        }


# ---------------------------------------------------------------------------
# Resource
# ---------------------------------------------------------------------------


@mcp.resource("stagegate://overview")
def stagegate_overview() -> str:
    """Overview of Stagegate: stages, gate states, and the approval workflow."""
    return json.dumps({
        "system": "Stagegate: stage-gate tracking for organizational initiatives",
        "stages": list(STAGE_KEYS),
        "gate_states": {
            "draft": "Not yet submitted for approval.",
            "pending": "Approval round open; waiting for approvers.",
            "approved": "Every approver role approved; the initiative may advance into this stage.",
            "returned": "Sent back for rework; resubmitting opens the next round.",
            "rejected": "Terminal for this gate.",
        },
        "workflow": [
            "1. create_initiative(initiative) with at least name and workstream_id.",
            "2. submit_stage(id, expected_version) opens an approval round for the next gate.",
            "3. decide_approval(approval_id, 'approve' | 'return' | 'reject') per approver role.",
            "4. advance_stage(id, expected_version) once the gate is approved.",
        ],
        "concurrency": "Writes carry expected_version; a stale version returns error_code 'version-conflict'.",
    }, indent=2)


# ---------------------------------------------------------------------------
# Tools: Initiatives
# ---------------------------------------------------------------------------


@mcp.tool()
def list_initiatives(ctx: Context) -> list[dict] | dict:
    """List all initiatives with totals, most recently updated first."""
    return _call(ctx, lambda c: c.service.list_initiatives())


@mcp.tool()
def get_initiative(initiative_id: str, ctx: Context) -> dict:
    """Get one initiative with its stage payloads, gate states, and financial totals."""
    return _call(ctx, lambda c: c.service.get_initiative(initiative_id))


@mcp.tool()
def create_initiative(initiative: dict[str, Any], ctx: Context) -> dict:
    """Create an initiative. Requires name and workstream_id; starts at l0 with every gate in draft."""
    return _call(ctx, lambda c: c.service.create_initiative(initiative))


@mcp.tool()
def update_initiative(initiative_id: str, initiative: dict[str, Any], expected_version: int, ctx: Context) -> dict:
    """Replace an initiative's fields and stage payloads.

    Args:
        initiative_id: The initiative to update.
        initiative: Full initiative data; omitted stages are cleared.
        expected_version: The version last read. A stale value returns a version-conflict error.
    """
    return _call(ctx, lambda c: c.service.update_initiative(initiative_id, initiative, expected_version))


@mcp.tool()
def delete_initiative(initiative_id: str, ctx: Context) -> dict:
    """Delete an initiative together with its approval rows and history."""
    return _call(ctx, lambda c: {"id": c.service.remove_initiative(initiative_id)})


@mcp.tool()
def list_initiative_events(initiative_id: str, ctx: Context) -> list[dict] | dict:
    """Change history of an initiative, newest first."""
    return _call(ctx, lambda c: c.service.list_events(initiative_id))


# ---------------------------------------------------------------------------
# Tools: Workflow & approvals
# ---------------------------------------------------------------------------


@mcp.tool()
def submit_stage(
    initiative_id: str, ctx: Context, expected_version: int | None = None,
    stage_key: str | None = None, account_id: str | None = None,
) -> dict:
    """Open an approval round for the gate after the active stage."""
    return _call(ctx, lambda c: c.workflow.submit_stage(
        initiative_id, expected_version, stage_key=stage_key, account_id=account_id,
    ))


@mcp.tool()
def advance_stage(
    initiative_id: str, ctx: Context, target_stage: str | None = None, expected_version: int | None = None,
) -> dict:
    """Advance to the next stage. The gate for that stage must be approved."""
    return _call(ctx, lambda c: c.workflow.advance_stage(initiative_id, target_stage, expected_version))


@mcp.tool()
def list_approval_tasks(ctx: Context, status: str | None = None, account_id: str | None = None) -> list[dict] | dict:
    """List approval tasks.

    Args:
        status: pending, approved, returned or rejected.
        account_id: Only tasks whose role this account holds in the initiative's workstream.
    """
    return _call(ctx, lambda c: c.approvals.list_approval_tasks(status=status, account_id=account_id))


@mcp.tool()
def decide_approval(
    approval_id: str, decision: str, ctx: Context,
    account_id: str | None = None, comment: str | None = None,
) -> dict:
    """Record a decision (approve, return or reject) on one approval request."""
    return _call(ctx, lambda c: c.approvals.decide_approval(
        approval_id, decision, account_id=account_id, comment=comment,
    ))


@mcp.tool()
def list_workstreams(ctx: Context) -> list[dict] | dict:
    """List configured workstreams with the approver roles of each gate."""
    return _call(ctx, lambda c: [
        {"id": w.id, "name": w.name, "description": w.description, "gates": w.gates}
        for w in c.workstreams.list_workstreams()
    ])


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main():
    """Run the Stagegate MCP server over stdio."""
    mcp.run()


if __name__ == "__main__":
    main()
