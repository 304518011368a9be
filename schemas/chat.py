from pydantic import BaseModel, ConfigDict, Field
from typing import Optional
from datetime import datetime, timezone
import uuid


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_message_id() -> str:
    return uuid.uuid4().hex


class Identity(BaseModel):
    """An authenticated participant. Stable across connections."""
    model_config = ConfigDict(frozen=True, coerce_numbers_to_str=True)

    id: str
    display_name: str


class Envelope(BaseModel):
    """Canonical in-flight representation of a chat message.

    The sender fields always come from the authenticated connection,
    never from the client payload.
    """
    model_config = ConfigDict(coerce_numbers_to_str=True)

    id: str = Field(default_factory=new_message_id)
    room: str
    content: str
    kind: str = "text"
    sender_id: str
    sender_name: str
    target_id: Optional[str] = None
    is_private: bool = False
    reply_to: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)

    def to_payload(self) -> dict:
        return self.model_dump(mode="json")

    def visible_to(self, identity_id: str) -> bool:
        if not self.is_private:
            return True
        return identity_id in (self.sender_id, self.target_id)


class Reaction(BaseModel):
    model_config = ConfigDict(coerce_numbers_to_str=True)

    user_id: str
    user_name: str
    emoji: str
    created_at: datetime = Field(default_factory=utcnow)


class StoredMessage(Envelope):
    """An envelope after a successful durable write."""
    is_edited: bool = False
    edited_at: Optional[datetime] = None
    is_deleted: bool = False
    deleted_at: Optional[datetime] = None
    reactions: list[Reaction] = Field(default_factory=list)
    revision: int = 0


class OnlineUser(BaseModel):
    id: str
    display_name: str
    endpoint_id: str
    connected_at: str
