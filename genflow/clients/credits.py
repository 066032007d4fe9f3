"""HTTP client for the remote credit service (``credits-reserve`` / ``credits-finalize``)."""

from __future__ import annotations

import httpx
import structlog

from genflow.clients.http import malformed_response, raise_for_status, send
from genflow.errors import InsufficientFundsError
from genflow.models.contracts import Disposition, FinalizeResponse, ReserveResponse

logger = structlog.get_logger()

RESERVE_PATH = "credits-reserve"
FINALIZE_PATH = "credits-finalize"


def _is_insufficient(status_code: int, body: dict) -> bool:
    if status_code == 402:
        return True
    text = f"{body.get('error', '')} {body.get('code', '')}"
    return "INSUFFICIENT_CREDITS" in text or "credits but only have" in text


class HttpCreditService:
    def __init__(self, client: httpx.AsyncClient) -> None:
        self._client = client

    async def reserve(self, cost: int, action: str, request_id: str) -> ReserveResponse:
        status_code, body = await send(
            self._client,
            "POST",
            RESERVE_PATH,
            json={"cost": cost, "action": action, "request_id": request_id},
        )
        try:
            if status_code >= 400 and _is_insufficient(status_code, body):
                raise InsufficientFundsError(
                    balance=int(body.get("currentBalance") or 0),
                    required=int(body.get("requiredCredits") or cost),
                )
            raise_for_status(RESERVE_PATH, status_code, body)
            return ReserveResponse(
                request_id=body.get("request_id") or request_id,
                balance=int(body["balance"]),
            )
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("credits_reserve_malformed", request_id=request_id, keys=sorted(body))
            raise malformed_response(RESERVE_PATH, exc) from exc

    async def finalize(self, request_id: str, disposition: Disposition) -> FinalizeResponse:
        status_code, body = await send(
            self._client,
            "POST",
            FINALIZE_PATH,
            json={"request_id": request_id, "disposition": disposition},
        )
        raise_for_status(FINALIZE_PATH, status_code, body)
        try:
            balance = body.get("balance", body.get("newCredits"))
            return FinalizeResponse(
                request_id=request_id,
                disposition=body.get("disposition") or disposition,
                balance=int(balance) if balance is not None else None,
            )
        except (TypeError, ValueError) as exc:
            # pydantic's ValidationError is a ValueError (unknown disposition strings)
            logger.warning("credits_finalize_malformed", request_id=request_id, keys=sorted(body))
            raise malformed_response(FINALIZE_PATH, exc) from exc
