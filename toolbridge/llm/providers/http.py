"""Shared ``httpx`` plumbing for the wire adapters.  Nothing here retries."""

from __future__ import annotations

import json
import logging
from typing import AsyncIterator

import httpx

from toolbridge.llm.errors import BackendAPIError, BackendProtocolError

logger = logging.getLogger(__name__)

SSE_DONE = "[DONE]"


async def raise_for_api_error(response: httpx.Response, prefix: str) -> None:
    """
    Raise ``BackendAPIError`` for a non-2xx response.

    The backend's own ``{"error": {"code", "message"}}`` payload is preferred
    over the HTTP reason phrase when present.
    """
    if response.is_success:
        return

    body = (await response.aread()).decode("utf-8", errors="replace")
    message: str = response.reason_phrase
    code: str | int = response.status_code
    try:
        payload = json.loads(body)
    except ValueError:
        payload = None
    if isinstance(payload, dict) and isinstance(payload.get("error"), dict):
        message = payload["error"].get("message") or message
        code = payload["error"].get("code") or code

    logger.warning("%s API error: status=%d body=%s", prefix, response.status_code, body[:200])
    raise BackendAPIError(
        f"{prefix} API error: {code} {message}",
        status=response.status_code,
        error_code=code,
    )


def read_json(response: httpx.Response, prefix: str) -> dict:
    """Decode a non-streaming response body, which must be a JSON object."""
    try:
        data = response.json()
    except ValueError:
        raise BackendProtocolError(
            f"{prefix} failed to return valid JSON. Response: {response.text[:500]}"
        ) from None
    if not isinstance(data, dict):
        raise BackendProtocolError(f"{prefix} returned a non-object JSON body")
    return data


def decode_event(data: str, prefix: str) -> dict:
    """Decode one SSE ``data`` payload."""
    try:
        payload = json.loads(data)
    except ValueError:
        raise BackendProtocolError(
            f"{prefix} sent an undecodable stream event: {data[:200]}"
        ) from None
    if not isinstance(payload, dict):
        raise BackendProtocolError(f"{prefix} sent a non-object stream event")
    return payload


async def iter_sse_data(response: httpx.Response) -> AsyncIterator[str]:
    """
    Yield the ``data`` payload of each Server-Sent Event.

    Each SSE event has the form::

        data: {json}\\n\\n

    Multi-line ``data`` fields are joined with ``\\n``.  Comment lines
    (``: keep-alive``) are skipped.
    """
    data_lines: list[str] = []
    async for line in response.aiter_lines():
        line = line.rstrip("\r")
        if not line:
            # Empty line -- SSE event boundary.
            if data_lines:
                yield "\n".join(data_lines)
                data_lines = []
            continue
        if line.startswith(":"):
            continue
        if line.startswith("data:"):
            data_lines.append(line[len("data:"):].strip())

    if data_lines:
        yield "\n".join(data_lines)
