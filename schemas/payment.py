from pydantic import BaseModel
from typing import Any, Dict, Optional


class WebhookData(BaseModel):
    id: Optional[str] = None
    status: Optional[str] = None
    amount: Optional[int] = None
    currency: Optional[str] = None
    metadata: Dict[str, Any] = {}


class WebhookEvent(BaseModel):
    event: Optional[str] = None
    data: WebhookData


class WebhookAck(BaseModel):
    received: bool = True
    action: str
