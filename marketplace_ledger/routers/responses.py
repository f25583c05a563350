from __future__ import annotations

from decimal import Decimal

from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from marketplace_ledger.services.errors import ServiceResult

STATUS_BY_KIND = {
    "validation": 400,
    "authorization": 403,
    "not_found": 404,
    "conflict": 409,
    "external": 502,
    "persistence": 500,
    "internal": 500,
}


def respond(result: ServiceResult, success_status: int = 200) -> JSONResponse:
    """Serialise a service outcome as ``{success, data}`` or ``{success, error}``.

    Amounts are already quantized to cents and are sent as strings.
    """
    status_code = success_status if result.success else STATUS_BY_KIND.get(result.error_kind or "internal", 500)
    return JSONResponse(status_code=status_code, content=jsonable_encoder(result.to_dict(), custom_encoder={Decimal: str}))
