"""Shared httpx plumbing for the remote credit and generation services.

Classifies failures the same way for every endpoint: timeouts, network
errors, 429 and 5xx are retryable; every other 4xx is not.
"""

from __future__ import annotations

from typing import Any

import httpx

from genflow.config import Settings
from genflow.errors import TransportError


def build_client(settings: Settings) -> httpx.AsyncClient:
    headers = {"Content-Type": "application/json"}
    if settings.api_token:
        headers["Authorization"] = f"Bearer {settings.api_token}"
    return httpx.AsyncClient(
        base_url=settings.api_base_url.rstrip("/") + "/",
        headers=headers,
        timeout=settings.request_timeout_seconds,
    )


async def send(
    client: httpx.AsyncClient,
    method: str,
    path: str,
    *,
    json: dict[str, Any] | None = None,
    params: dict[str, str] | None = None,
) -> tuple[int, dict[str, Any]]:
    """Issue a request and return ``(status_code, decoded_body)``.

    Non-JSON or empty bodies decode to ``{}``; status handling is left to the
    caller (see ``raise_for_status``) because some endpoints give 402/404
    a domain meaning.
    """
    try:
        response = await client.request(method, path, json=json, params=params)
    except httpx.TimeoutException as exc:
        raise TransportError(f"Timeout calling {path}", retryable=True) from exc
    except httpx.RequestError as exc:
        raise TransportError(
            f"Network error calling {path}: {type(exc).__name__}", retryable=True
        ) from exc

    try:
        body = response.json() if response.content else {}
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {"data": body}
    return response.status_code, body


def raise_for_status(path: str, status_code: int, body: dict[str, Any]) -> None:
    if status_code < 400:
        return
    # 429 is throttling; other 4xx are client errors that will not heal on retry
    retryable = status_code >= 500 or status_code == 429
    detail = body.get("error") or body.get("message") or ""
    raise TransportError(
        f"HTTP {status_code} from {path}" + (f": {str(detail)[:200]}" if detail else ""),
        retryable=retryable,
        status_code=status_code,
    )


def malformed_response(path: str, exc: Exception) -> TransportError:
    """A body that does not match the endpoint's contract. Retrying will not fix it."""
    return TransportError(
        f"Malformed response from {path}: {type(exc).__name__}: {str(exc)[:200]}",
        retryable=False,
    )
