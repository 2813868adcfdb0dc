"""Size-capped JSON request body reading."""

import json
from typing import Any, Dict, Optional

from starlette.requests import Request

from dreamstate.core.config import settings
from dreamstate.core.errors import PayloadTooLargeError, ValidationError


async def read_body_capped(request: Request, max_bytes: Optional[int] = None) -> bytes:
    """
    Read the raw body, stopping as soon as it exceeds `max_bytes`.

    Raises:
        PayloadTooLargeError (413) on a declared or streamed oversize body
    """
    limit = max_bytes or settings.INGEST_MAX_BODY_BYTES

    declared = request.headers.get("content-length")
    if declared and declared.isdigit() and int(declared) > limit:
        raise PayloadTooLargeError("Payload too large")

    size = 0
    chunks = []
    async for chunk in request.stream():
        size += len(chunk)
        if size > limit:
            raise PayloadTooLargeError("Payload too large")
        chunks.append(chunk)
    return b"".join(chunks)


async def read_json_object(request: Request, max_bytes: Optional[int] = None) -> Dict[str, Any]:
    """Read a capped body and decode it as a JSON object (400 otherwise)."""
    body = await read_body_capped(request, max_bytes)
    if not body:
        raise ValidationError("Request body is required")
    try:
        payload = json.loads(body)
    except (ValueError, RecursionError):
        raise ValidationError("Malformed JSON body")
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object")
    return payload
