"""Pydantic value types and request/response schemas for the Stagegate API.

Stage payloads arrive as loosely-typed JSON. Every type here coerces its input
in a ``mode="before"`` validator, so downstream code only ever sees validated
values: unknown keys are ignored, strings are trimmed, numbers that are not
finite are dropped.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator

from stagegate.utils import (
    new_id,
    sanitize_distribution,
    sanitize_number,
    sanitize_optional_string,
    sanitize_string,
)

STAGE_KEYS = ("l0", "l1", "l2", "l3", "l4", "l5")
FINANCIAL_KINDS = ("recurring-benefits", "recurring-costs", "oneoff-benefits", "oneoff-costs")
STAGE_STATUSES = ("draft", "pending", "approved", "returned", "rejected")
APPROVAL_STATUSES = ("pending", "approved", "returned", "rejected")
DECISIONS = {"approve": "approved", "return": "returned", "reject": "rejected"}

StageKey = Literal["l0", "l1", "l2", "l3", "l4", "l5"]
StageStatus = Literal["draft", "pending", "approved", "returned", "rejected"]
ApprovalStatus = Literal["pending", "approved", "returned", "rejected"]


def normalize_stage_key(value: Any) -> str | None:
    if isinstance(value, str):
        key = value.strip().lower()
        if key in STAGE_KEYS:
            return key
    return None


# ---------------------------------------------------------------------------
# Stage payload
# ---------------------------------------------------------------------------


class FinancialEntry(BaseModel):
    id: str = Field(default_factory=new_id)
    label: str = ""
    category: str = ""
    line_code: str | None = None
    distribution: dict[str, float] = {}
    actuals: dict[str, float] = {}

    @model_validator(mode="before")
    @classmethod
    def _sanitize(cls, data: Any) -> dict[str, Any]:
        if isinstance(data, BaseModel):
            data = data.model_dump()
        if not isinstance(data, dict):
            return {}
        return {
            "id": sanitize_optional_string(data.get("id")) or new_id(),
            "label": sanitize_string(data.get("label")),
            "category": sanitize_string(data.get("category")),
            "line_code": sanitize_optional_string(data.get("line_code")),
            "distribution": sanitize_distribution(data.get("distribution")),
            "actuals": sanitize_distribution(data.get("actuals")),
        }


def _empty_financials() -> dict[str, list[FinancialEntry]]:
    return {kind: [] for kind in FINANCIAL_KINDS}


def _empty_calculation_logic() -> dict[str, str]:
    return {kind: "" for kind in FINANCIAL_KINDS}


class StagePayload(BaseModel):
    name: str = ""
    description: str = ""
    period_month: int | None = None
    period_year: int | None = None
    l4_date: str | None = None
    additional_commentary: str = ""
    calculation_logic: dict[str, str] = Field(default_factory=_empty_calculation_logic)
    financials: dict[str, list[FinancialEntry]] = Field(default_factory=_empty_financials)

    @model_validator(mode="before")
    @classmethod
    def _sanitize(cls, data: Any) -> dict[str, Any]:
        if isinstance(data, BaseModel):
            data = data.model_dump()
        if not isinstance(data, dict):
            return {}
        month = sanitize_number(data.get("period_month"))
        year = sanitize_number(data.get("period_year"))
        logic_source = data.get("calculation_logic")
        logic_source = logic_source if isinstance(logic_source, dict) else {}
        financial_source = data.get("financials")
        financial_source = financial_source if isinstance(financial_source, dict) else {}
        financials = {}
        for kind in FINANCIAL_KINDS:
            entries = financial_source.get(kind)
            financials[kind] = list(entries) if isinstance(entries, list) else []
        return {
            "name": sanitize_string(data.get("name")),
            "description": sanitize_string(data.get("description")),
            "period_month": int(month) if month is not None and 1 <= month <= 12 else None,
            "period_year": int(year) if year else None,
            "l4_date": sanitize_optional_string(data.get("l4_date")),
            "additional_commentary": sanitize_string(data.get("additional_commentary")),
            "calculation_logic": {kind: sanitize_string(logic_source.get(kind)) for kind in FINANCIAL_KINDS},
            "financials": financials,
        }


class StageState(BaseModel):
    status: StageStatus = "draft"
    round_index: int = 0
    comment: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _sanitize(cls, data: Any) -> dict[str, Any]:
        if isinstance(data, BaseModel):
            data = data.model_dump()
        if not isinstance(data, dict):
            return {}
        status = data.get("status")
        round_index = data.get("round_index")
        comment = data.get("comment")
        return {
            "status": status if status in STAGE_STATUSES else "draft",
            "round_index": round_index if isinstance(round_index, int) and not isinstance(round_index, bool)
            and round_index >= 0 else 0,
            "comment": comment if isinstance(comment, str) else None,
        }


def sanitize_stage_map(value: Any) -> dict[str, StagePayload]:
    """Build a payload for every stage key; missing or malformed stages are empty."""
    source = value if isinstance(value, dict) else {}
    return {key: StagePayload.model_validate(source.get(key) or {}) for key in STAGE_KEYS}


def sanitize_stage_state_map(value: Any) -> dict[str, StageState]:
    source = value if isinstance(value, dict) else {}
    return {key: StageState.model_validate(source.get(key) or {}) for key in STAGE_KEYS}


def default_stage_state_map() -> dict[str, StageState]:
    return {key: StageState() for key in STAGE_KEYS}


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


class InitiativeWriteModel(BaseModel):
    """Sanitized initiative ready for the store."""
    id: str
    workstream_id: str
    name: str
    description: str = ""
    owner_account_id: str | None = None
    owner_name: str | None = None
    current_status: str = "draft"
    active_stage: StageKey = "l0"
    l4_date: str | None = None
    stages: dict[str, StagePayload] = Field(default_factory=lambda: sanitize_stage_map({}))
    stage_state: dict[str, StageState] = Field(default_factory=default_stage_state_map)


class InitiativeRecord(InitiativeWriteModel):
    version: int
    created_at: datetime
    updated_at: datetime


class InitiativeTotals(BaseModel):
    recurring_benefits: float = 0.0
    recurring_costs: float = 0.0
    oneoff_benefits: float = 0.0
    oneoff_costs: float = 0.0
    recurring_impact: float = 0.0


class InitiativeOut(InitiativeRecord):
    totals: InitiativeTotals


class ApprovalRecord(BaseModel):
    id: str
    initiative_id: str
    stage_key: StageKey
    round_index: int
    role: str
    status: ApprovalStatus
    comment: str | None = None
    decided_by_account_id: str | None = None
    created_at: datetime
    decided_at: datetime | None = None


class ApprovalTaskOut(ApprovalRecord):
    initiative_name: str
    workstream_id: str
    owner_name: str | None = None
    owner_account_id: str | None = None
    stage_state: StageState
    totals: InitiativeTotals
    round_total: int
    round_approved: int
    round_pending: int


class EventOut(BaseModel):
    id: str
    event_id: str
    initiative_id: str
    event_type: str
    field: str
    previous_value: Any = None
    next_value: Any = None
    actor_account_id: str | None = None
    created_at: datetime


class WorkstreamOut(BaseModel):
    id: str
    name: str
    description: str = ""
    gates: dict[str, list[str]] = {}


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


# expected_version stays untyped here; the service rejects anything but a real int.
class InitiativeCreateRequest(BaseModel):
    initiative: Any = None
    actor_account_id: str | None = None


class InitiativeUpdateRequest(BaseModel):
    initiative: Any = None
    expected_version: Any = None
    actor_account_id: str | None = None


class AdvanceRequest(BaseModel):
    target_stage: str | None = None
    expected_version: Any = None


class SubmitRequest(BaseModel):
    stage_key: str | None = None
    expected_version: Any = None
    account_id: str | None = None


class DecisionRequest(BaseModel):
    decision: str | None = None
    account_id: str | None = None
    comment: str | None = None
