from __future__ import annotations

from fastapi import APIRouter, Depends

from marketplace_ledger.core.metrics import ledger_counters, request_metrics
from marketplace_ledger.deps import require_admin

router = APIRouter(prefix="/internal/metrics", tags=["internal-metrics"])


@router.get("")
def service_metrics(_admin: str = Depends(require_admin)):
    return {"requests": request_metrics.snapshot(), "ledger": ledger_counters.snapshot()}
