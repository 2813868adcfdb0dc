"""
dreamstate/api/ai_normalize.py

POST /api/ai/normalize  {schema, text} -> {data}

`text` is raw generated output; unparseable text normalizes as null input.
Only an invalid schema is an error (400).
"""

from fastapi import APIRouter, Depends, Request

from dreamstate.core.auth import require_user
from dreamstate.core.request_body import read_json_object
from dreamstate.features.normalizer.schema import normalize

router = APIRouter(prefix="/api/ai", tags=["ai"])


@router.post("/normalize")
async def normalize_output(request: Request, user_id: str = Depends(require_user)):
    payload = await read_json_object(request)
    text = payload.get("text")
    return {"data": normalize(payload.get("schema"), text if isinstance(text, str) else "")}
