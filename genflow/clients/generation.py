"""HTTP client for remote job submission (``unified-generate``) and status (``getMediaByRunId``).

The status endpoint answers in two shapes: a finished media record
(``{"success": true, "media": {"url": ...}}``) or a bare status
(``{"status": "processing" | "pending" | "failed", "progress": ..., "error": ...}``).
Both normalise to ``StatusResponse``. A 404 means the result does not exist
yet and raises ``JobNotFoundError``.
"""

from __future__ import annotations

from typing import Any

import httpx
import structlog

from genflow.clients.http import malformed_response, raise_for_status, send
from genflow.errors import JobNotFoundError, SubmissionError, TransportError
from genflow.models.contracts import InputSpec, StatusResponse, SubmitResponse

logger = structlog.get_logger()

SUBMIT_PATH = "unified-generate"
STATUS_PATH = "getMediaByRunId"


def _submit_payload(input_spec: InputSpec, run_id: str) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "runId": run_id,
        "mode": input_spec.mode,
        "sourceUrl": input_spec.source_url,
        **input_spec.parameters,
    }
    if input_spec.preset_id:
        payload["presetId"] = input_spec.preset_id
    if input_spec.custom_prompt:
        payload["prompt"] = input_spec.custom_prompt
    return payload


def normalize_status(body: dict[str, Any]) -> StatusResponse:
    media = body.get("media") or {}
    url = media.get("url") or body.get("image_url") or body.get("imageUrl")
    if body.get("success") and url:
        return StatusResponse(status="completed", progress=100, result_reference=url)

    raw = str(body.get("status") or "processing").lower()
    if raw in ("completed", "done"):
        # Completed without a reference: keep waiting for the media record
        if url:
            return StatusResponse(status="completed", progress=100, result_reference=url)
        return StatusResponse(status="processing", progress=body.get("progress"))
    if raw == "failed":
        return StatusResponse(status="failed", error=body.get("error") or "Generation failed")
    return StatusResponse(status="processing", progress=body.get("progress"))


class HttpGenerationService:
    """Implements both ``SubmissionService`` and ``StatusService``."""

    def __init__(self, client: httpx.AsyncClient) -> None:
        self._client = client

    async def submit(self, input_spec: InputSpec, run_id: str) -> SubmitResponse:
        try:
            status_code, body = await send(
                self._client, "POST", SUBMIT_PATH, json=_submit_payload(input_spec, run_id)
            )
            # Background functions accept with 202 and no body; the run id is the job id
            if status_code == 202:
                return _submit_response(body, run_id)
            raise_for_status(SUBMIT_PATH, status_code, body)
        except TransportError as exc:
            raise SubmissionError(str(exc), retryable=exc.retryable) from exc

        if body.get("success") is False or body.get("status") == "failed":
            raise SubmissionError(
                str(body.get("error") or body.get("message") or "Generation rejected"),
                retryable=False,
            )
        logger.info("generation_submitted", run_id=run_id, mode=input_spec.mode)
        return _submit_response(body, run_id)

    async def get_status(self, job_id: str) -> StatusResponse:
        status_code, body = await send(
            self._client, "GET", STATUS_PATH, params={"runId": job_id}
        )
        if status_code == 404:
            raise JobNotFoundError(job_id)
        raise_for_status(STATUS_PATH, status_code, body)
        try:
            return normalize_status(body)
        except (AttributeError, TypeError, ValueError) as exc:
            raise malformed_response(STATUS_PATH, exc) from exc


def _submit_response(body: dict[str, Any], run_id: str) -> SubmitResponse:
    try:
        return SubmitResponse(
            job_id=body.get("jobId") or body.get("runId") or run_id,
            estimated_seconds=body.get("estimatedTime") or body.get("estimated_seconds"),
        )
    except ValueError as exc:
        raise SubmissionError(str(malformed_response(SUBMIT_PATH, exc)), retryable=False) from exc
