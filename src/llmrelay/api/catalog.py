import time

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from llmrelay.providers import list_models

router = APIRouter(prefix="/v1", tags=["models"])


@router.get("/models")
async def models() -> JSONResponse:
    """List every routable model id with its owning provider (OpenAI list format)."""
    created = int(time.time())
    data = [
        {"id": model_id, "object": "model", "created": created, "owned_by": str(provider)}
        for model_id, provider in list_models()
    ]
    return JSONResponse(content={"object": "list", "data": data})
