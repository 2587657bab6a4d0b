from typing import Any, Dict, Literal, Optional
from pydantic import BaseModel, Field

Mode = Literal["guided", "assistant"]
TurnStatus = Literal["PROCESSING", "SENT", "DELIVERED", "ERROR"]


class ChatRequest(BaseModel):
    userId: str = Field(min_length=1, max_length=128)
    message: str = Field(default="", max_length=5000)
    mode: Optional[Mode] = None
    # Resume an application created elsewhere
    opportunityId: Optional[str] = None


class ChatResponse(BaseModel):
    messageId: str
    reply: str
    currentStep: Optional[str] = None
    status: TurnStatus
    data: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[Dict[str, Any]] = None
