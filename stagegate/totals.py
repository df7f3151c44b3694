"""Financial totals derived from stage payloads. Never persisted."""
from __future__ import annotations

import math
from collections.abc import Mapping

from stagegate.schemas import FINANCIAL_KINDS, STAGE_KEYS, InitiativeTotals, StagePayload
from stagegate.utils import is_finite_number


def compute_totals(stages: Mapping[str, StagePayload]) -> InitiativeTotals:
    """Sum every finite distribution value per financial kind across all stages.

    Actuals are not included. ``math.fsum`` keeps the result independent of the
    order entries are stored in.
    """
    buckets: dict[str, list[float]] = {kind: [] for kind in FINANCIAL_KINDS}
    for key in STAGE_KEYS:
        stage = stages.get(key)
        if stage is None:
            continue
        for kind in FINANCIAL_KINDS:
            for entry in stage.financials.get(kind, []):
                buckets[kind].extend(v for v in entry.distribution.values() if is_finite_number(v))

    sums = {kind.replace("-", "_"): math.fsum(values) for kind, values in buckets.items()}
    return InitiativeTotals(
        **sums,
        recurring_impact=sums["recurring_benefits"] - sums["recurring_costs"],
    )
