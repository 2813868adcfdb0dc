"""
dreamstate/api/state.py

Per-user behavioral state.

GET   /v1/me/state  normalized state (defaults filled in)
PATCH /v1/me/state  merge client-owned fields; engine-owned fields are read-only
"""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from starlette.concurrency import run_in_threadpool

from dreamstate.core.auth import require_user
from dreamstate.core.documents import DocumentStore, Transaction, get_store
from dreamstate.core.logging import log_event
from dreamstate.features.consolidation.engine import core_memory_path
from dreamstate.models.state import BehavioralState, Credits, PromptVariant, normalize_state

router = APIRouter(prefix="/v1/me", tags=["state"])


class StatePatch(BaseModel):
    """Client-owned fields; anything else in the body is rejected."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid", use_enum_values=True)

    user_archetype: Optional[str] = None
    active_prompt_variant: Optional[PromptVariant] = None
    telemetry_enabled: Optional[bool] = None
    keyword_weights: Optional[Dict[str, float]] = None
    negative_constraints: Optional[Dict[str, List[str]]] = None
    golden_templates: Optional[Dict[str, List[Any]]] = None
    credits: Optional[Credits] = None


def load_state(store: DocumentStore, user_id: str) -> BehavioralState:
    return normalize_state(store.get(core_memory_path(user_id)).data)


def patch_state(store: DocumentStore, user_id: str, patch: StatePatch) -> BehavioralState:
    path = core_memory_path(user_id)
    updates = patch.model_dump(mode="json", by_alias=True, exclude_unset=True, exclude_none=True)

    def _apply(txn: Transaction) -> BehavioralState:
        document = normalize_state(txn.get(path).data).to_document()
        document.update(updates)
        state = BehavioralState.model_validate(document)
        txn.set(path, state.to_document(), merge=True)
        return state

    return store.run_transaction(_apply)


@router.get("/state")
async def get_state(user_id: str = Depends(require_user), store: DocumentStore = Depends(get_store)):
    state = await run_in_threadpool(load_state, store, user_id)
    return state.to_document()


@router.patch("/state")
async def update_state(
    body: StatePatch,
    user_id: str = Depends(require_user),
    store: DocumentStore = Depends(get_store),
):
    state = await run_in_threadpool(patch_state, store, user_id, body)
    log_event("info", "state.patched", user_id=user_id, extra={"fields": sorted(body.model_fields_set)})
    return state.to_document()
