from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from stagegate.config import get_settings
from stagegate.context import AppContext, build_context
from stagegate.errors import InvalidInput, StageGateError
from stagegate.schemas import (
    APPROVAL_STATUSES,
    DECISIONS,
    AdvanceRequest,
    ApprovalTaskOut,
    DecisionRequest,
    EventOut,
    InitiativeCreateRequest,
    InitiativeOut,
    InitiativeUpdateRequest,
    SubmitRequest,
    WorkstreamOut,
)

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    owned = getattr(app.state, "context", None) is None
    if owned:
        app.state.context = build_context()
    yield
    if owned:
        app.state.context.close()
        app.state.context = None


app = FastAPI(
    title="Stagegate",
    version="0.1.0",
    description=(
        "Stage-gate tracking for organizational initiatives. "
        "Initiatives move through gates l0 to l5; each gate needs sign-off from the "
        "workstream's approver roles. Writes are guarded by an expected version."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Initiatives", "description": "Create, edit and remove initiatives."},
        {"name": "Workflow", "description": "Submit gates for approval and advance stages."},
        {"name": "Approvals", "description": "Approval tasks and decisions."},
        {"name": "Workstreams", "description": "Configured workstreams and their gate approvers."},
    ],
)


# ---------------------------------------------------------------------------
# Dependencies & error handling
# ---------------------------------------------------------------------------


def get_context(request: Request) -> AppContext:
    return request.app.state.context


@app.exception_handler(StageGateError)
async def stagegate_error_handler(request: Request, exc: StageGateError) -> JSONResponse:
    if exc.status_code >= 500:
        log.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"code": exc.code, "message": exc.message})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"code": InvalidInput.code, "message": InvalidInput.default_message})


# ---------------------------------------------------------------------------
# Routes: Initiatives
# ---------------------------------------------------------------------------


@app.get("/api/initiatives", response_model=list[InitiativeOut],
         tags=["Initiatives"], summary="List initiatives, most recently updated first")
def list_initiatives(ctx: AppContext = Depends(get_context)):
    return ctx.service.list_initiatives()


@app.post("/api/initiatives", response_model=InitiativeOut, status_code=201,
          tags=["Initiatives"], summary="Create an initiative")
def create_initiative(body: InitiativeCreateRequest, ctx: AppContext = Depends(get_context)):
    if not body.initiative:
        raise InvalidInput("Provide initiative data.")
    return ctx.service.create_initiative(body.initiative, actor_account_id=body.actor_account_id)


@app.get("/api/initiatives/{initiative_id}", response_model=InitiativeOut,
         tags=["Initiatives"], summary="Get one initiative with its totals")
def get_initiative(initiative_id: str, ctx: AppContext = Depends(get_context)):
    return ctx.service.get_initiative(initiative_id)


@app.put("/api/initiatives/{initiative_id}", response_model=InitiativeOut,
         tags=["Initiatives"], summary="Replace an initiative's fields and stage payloads")
def update_initiative(initiative_id: str, body: InitiativeUpdateRequest, ctx: AppContext = Depends(get_context)):
    if not body.initiative:
        raise InvalidInput("Provide initiative data and expected version.")
    return ctx.service.update_initiative(
        initiative_id, body.initiative, body.expected_version, actor_account_id=body.actor_account_id,
    )


@app.delete("/api/initiatives/{initiative_id}", tags=["Initiatives"],
            summary="Delete an initiative with its approvals and events")
def delete_initiative(initiative_id: str, ctx: AppContext = Depends(get_context)):
    return {"id": ctx.service.remove_initiative(initiative_id)}


@app.get("/api/initiatives/{initiative_id}/events", response_model=list[EventOut],
         tags=["Initiatives"], summary="Change history of an initiative, newest first")
def list_events(initiative_id: str, ctx: AppContext = Depends(get_context)):
    return ctx.service.list_events(initiative_id)


# ---------------------------------------------------------------------------
# Routes: Workflow
# ---------------------------------------------------------------------------


@app.post("/api/initiatives/{initiative_id}/advance", response_model=InitiativeOut,
          tags=["Workflow"], summary="Advance to the next stage once its gate is approved")
def advance_initiative(initiative_id: str, body: AdvanceRequest | None = None,
                       ctx: AppContext = Depends(get_context)):
    body = body or AdvanceRequest()
    return ctx.workflow.advance_stage(initiative_id, body.target_stage, body.expected_version)


@app.post("/api/initiatives/{initiative_id}/submit", response_model=InitiativeOut,
          tags=["Workflow"], summary="Open an approval round for the next gate")
def submit_initiative(initiative_id: str, body: SubmitRequest | None = None,
                      ctx: AppContext = Depends(get_context)):
    body = body or SubmitRequest()
    return ctx.workflow.submit_stage(
        initiative_id, body.expected_version, stage_key=body.stage_key, account_id=body.account_id,
    )


# ---------------------------------------------------------------------------
# Routes: Approvals
# ---------------------------------------------------------------------------


@app.get("/api/approvals", response_model=list[ApprovalTaskOut],
         tags=["Approvals"], summary="List approval tasks")
def list_approvals(
    status: str | None = Query(None, description="pending, approved, returned or rejected"),
    account_id: str | None = Query(None, description="Only tasks whose role this account holds"),
    ctx: AppContext = Depends(get_context),
):
    status = status if status in APPROVAL_STATUSES else None
    account_id = account_id.strip() if account_id and account_id.strip() else None
    return ctx.approvals.list_approval_tasks(status=status, account_id=account_id)


@app.post("/api/approvals/{approval_id}/decision", response_model=InitiativeOut,
          tags=["Approvals"], summary="Approve, return or reject an approval request")
def decide_approval(approval_id: str, body: DecisionRequest, ctx: AppContext = Depends(get_context)):
    if body.decision not in DECISIONS:
        raise InvalidInput("Provide a valid decision (approve, return, reject).")
    account_id = body.account_id.strip() if body.account_id else None
    return ctx.approvals.decide_approval(approval_id, body.decision, account_id=account_id, comment=body.comment)


# ---------------------------------------------------------------------------
# Routes: Workstreams
# ---------------------------------------------------------------------------


@app.get("/api/workstreams", response_model=list[WorkstreamOut],
         tags=["Workstreams"], summary="List configured workstreams and gate approver roles")
def list_workstreams(ctx: AppContext = Depends(get_context)):
    return [
        WorkstreamOut(id=w.id, name=w.name, description=w.description, gates=w.gates)
        for w in ctx.workstreams.list_workstreams()
    ]


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main(host: str = "127.0.0.1", port: int = 8000, reload: bool = False):
    import uvicorn
    uvicorn.run("stagegate.app:app", host=host, port=port, reload=reload,
                log_level=get_settings().log_level.lower())


if __name__ == "__main__":
    main()
