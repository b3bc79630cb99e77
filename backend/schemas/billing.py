from pydantic import BaseModel


class WebhookAckResponse(BaseModel):
    received: bool = True
    event_id: str
    status: str
