"""
dreamstate/api/userdata.py

User data tree writes with counter/stats bookkeeping.
"""

from fastapi import APIRouter, Depends, Request
from starlette.concurrency import run_in_threadpool

from dreamstate.core.auth import require_user
from dreamstate.core.documents import DocumentStore, get_store
from dreamstate.core.request_body import read_json_object
from dreamstate.features.userdata.service import count_documents, delete_document, save_document

router = APIRouter(prefix="/v1/me/stores", tags=["userdata"])


@router.put("/{store_name}/{doc_id}")
async def put_document(
    store_name: str,
    doc_id: str,
    request: Request,
    user_id: str = Depends(require_user),
    store: DocumentStore = Depends(get_store),
):
    data = await read_json_object(request)
    result = await run_in_threadpool(save_document, store, user_id, store_name, doc_id, data)
    return {"ok": True, "id": doc_id, "created": result.created}


@router.delete("/{store_name}/{doc_id}")
async def remove_document(
    store_name: str,
    doc_id: str,
    user_id: str = Depends(require_user),
    store: DocumentStore = Depends(get_store),
):
    result = await run_in_threadpool(delete_document, store, user_id, store_name, doc_id)
    return {"ok": True, "id": doc_id, "deleted": result.deleted}


@router.get("/{store_name}/count")
async def get_document_count(
    store_name: str,
    user_id: str = Depends(require_user),
    store: DocumentStore = Depends(get_store),
):
    count = await run_in_threadpool(count_documents, store, user_id, store_name)
    return {"store": store_name, "count": count}
