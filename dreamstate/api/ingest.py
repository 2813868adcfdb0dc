"""
dreamstate/api/ingest.py

Telemetry ingestion gateway.

POST /api/telemetry/ingest   generic UI telemetry; token in header or body
POST /api/telemetry/score    AI-generation outcomes; header token required

Pipeline: auth -> capped body read -> JSON parse -> validate ->
(rate limit + queue entry, one transaction) -> advisory stats -> dispatch.
"""

import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from starlette.concurrency import run_in_threadpool

from dreamstate.core.auth import TokenVerifier, authenticate, extract_bearer_token, get_token_verifier
from dreamstate.core.documents import DocumentStore, get_store
from dreamstate.core.errors import EventValidationError
from dreamstate.core.logging import log_event
from dreamstate.core.metrics import telemetry_batches_rejected_total
from dreamstate.core.request_body import read_json_object
from dreamstate.features.telemetry.service import ingest_batch
from dreamstate.features.telemetry.validators import validate_batch
from dreamstate.queue_client import dispatch_consolidation

logger = logging.getLogger("dreamstate")

router = APIRouter(prefix="/api/telemetry", tags=["telemetry"])


async def _ingest(
    request: Request,
    background_tasks: BackgroundTasks,
    store: DocumentStore,
    verifier: TokenVerifier,
    *,
    surface: str,
    allow_body_token: bool,
) -> dict:
    header_token = extract_bearer_token(request.headers.get("authorization"))
    user_id: Optional[str] = None
    if header_token or not allow_body_token:
        user_id = await run_in_threadpool(authenticate, verifier, header_token)

    payload = await read_json_object(request)

    if user_id is None:
        body_token = payload.get("token")
        user_id = await run_in_threadpool(authenticate, verifier, body_token if isinstance(body_token, str) else None)

    try:
        events = validate_batch(payload.get("events"), vocabulary=surface)
    except EventValidationError as exc:
        telemetry_batches_rejected_total.inc(labels={"surface": surface, "reason": exc.reason})
        log_event("info", "ingest.rejected", user_id=user_id, error_code=exc.reason, extra={"surface": surface})
        raise

    result = await run_in_threadpool(
        ingest_batch,
        store,
        user_id,
        events,
        surface=surface,
        client_timestamp=payload.get("clientTimestamp"),
    )

    try:
        dispatch_consolidation(result.entry_path, store=store, background_tasks=background_tasks)
    except Exception as exc:
        # Entry is durable; the sweep worker will pick it up
        log_event("warning", "ingest.dispatch_failed", user_id=user_id, entry_id=result.entry_path, extra={"error": exc})

    return {"ok": True, "queued": result.queued}


@router.post("/ingest")
async def ingest_telemetry(
    request: Request,
    background_tasks: BackgroundTasks,
    store: DocumentStore = Depends(get_store),
    verifier: TokenVerifier = Depends(get_token_verifier),
):
    """Accept a batch of generic UI telemetry events."""
    return await _ingest(request, background_tasks, store, verifier, surface="simple", allow_body_token=True)


@router.post("/score")
async def ingest_scoring(
    request: Request,
    background_tasks: BackgroundTasks,
    store: DocumentStore = Depends(get_store),
    verifier: TokenVerifier = Depends(get_token_verifier),
):
    """Accept a batch of scoring events (generation outcomes included)."""
    return await _ingest(request, background_tasks, store, verifier, surface="scoring", allow_body_token=False)
