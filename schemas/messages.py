from pydantic import BaseModel, ConfigDict, Field
from typing import Optional

from schemas.chat import StoredMessage


class SendMessageRequest(BaseModel):
    model_config = ConfigDict(coerce_numbers_to_str=True)

    content: Optional[str] = None
    room: Optional[str] = None
    receiver_id: Optional[str] = None
    reply_to: Optional[str] = None

class EditMessageRequest(BaseModel):
    content: Optional[str] = None

class ReactionRequest(BaseModel):
    emoji: Optional[str] = None

class HistoryPage(BaseModel):
    messages: list[StoredMessage] = Field(default_factory=list)
    total_pages: int
    current_page: int
    total_messages: int

class DeleteMessageResponse(BaseModel):
    message: str
