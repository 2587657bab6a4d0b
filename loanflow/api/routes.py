from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from loanflow.api.auth import require_api_key
from loanflow.api.schemas import ChatRequest, ChatResponse
from loanflow.core.orchestrator import Orchestrator, build_orchestrator

router = APIRouter()

_orchestrator = None


def get_orchestrator() -> Orchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = build_orchestrator()
    return _orchestrator


@router.post("/api/chat", response_model=ChatResponse, dependencies=[Depends(require_api_key)])
async def chat(req: ChatRequest, orchestrator: Orchestrator = Depends(get_orchestrator)):
    out = await orchestrator.handle_message(req.userId, req.message, mode=req.mode, opportunity_id=req.opportunityId)
    error = out.get("error") or {}
    if error.get("code") == "RateLimitError":
        retry_after = int(error.get("retryAfterSec") or 60)
        return JSONResponse(
            status_code=429,
            content=ChatResponse(**out).model_dump(),
            headers={"Retry-After": str(retry_after)},
        )
    return ChatResponse(**out)
