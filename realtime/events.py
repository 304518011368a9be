"""Inbound WebSocket events.

Every frame is ``{"event": <name>, "data": {...}}``. Each event name maps to
exactly one model below; a frame is validated once here and handlers only
ever see typed models. Older clients sent camelCase keys (``targetUserId``,
``isTyping``, ``msg``), which are accepted as aliases.
"""
import json
from typing import Any, ClassVar, Dict, Optional, Type, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, model_validator

from realtime.errors import MalformedEvent

TARGET_ALIASES = AliasChoices("target_id", "targetUserId", "receiverId", "targetIdentity")


class InboundEvent(BaseModel):
    model_config = ConfigDict(populate_by_name=True, coerce_numbers_to_str=True, str_strip_whitespace=True)

    event: ClassVar[str]


class Addressed(InboundEvent):
    """An event that goes to a room or to a single identity."""
    room: Optional[str] = None
    target_id: Optional[str] = Field(default=None, validation_alias=TARGET_ALIASES)

    @model_validator(mode="after")
    def _require_address(self):
        if not self.room and not self.target_id:
            raise ValueError("either room or target_id is required")
        return self


class JoinRoom(InboundEvent):
    event: ClassVar[str] = "join-room"
    room: str = Field(min_length=1)


class ChatMessage(InboundEvent):
    event: ClassVar[str] = "message"
    room: str = Field(min_length=1)
    content: str = Field(min_length=1, validation_alias=AliasChoices("content", "msg", "message"))
    reply_to: Optional[str] = Field(default=None, validation_alias=AliasChoices("reply_to", "replyToId"))


class PrivateMessage(InboundEvent):
    event: ClassVar[str] = "private-message"
    target_id: str = Field(min_length=1, validation_alias=TARGET_ALIASES)
    content: str = Field(min_length=1, validation_alias=AliasChoices("content", "msg", "message"))
    reply_to: Optional[str] = Field(default=None, validation_alias=AliasChoices("reply_to", "replyToId"))


class JoinPrivateChat(InboundEvent):
    event: ClassVar[str] = "join-private-chat"
    other_id: str = Field(min_length=1, validation_alias=AliasChoices("other_id", "otherUserId", "otherIdentity"))


class Typing(Addressed):
    event: ClassVar[str] = "typing"
    is_typing: bool = Field(default=True, validation_alias=AliasChoices("is_typing", "isTyping"))


class Pong(InboundEvent):
    event: ClassVar[str] = "pong"


class SignalingEvent(Addressed):
    """Call negotiation. Everything besides the address is opaque and forwarded as-is."""
    model_config = ConfigDict(extra="allow")

    def forwarded_payload(self) -> Dict[str, Any]:
        payload = dict(self.model_extra or {})
        if self.room:
            payload["room"] = self.room
        else:
            payload["target_id"] = self.target_id
        return payload


class CallRequest(SignalingEvent):
    event: ClassVar[str] = "call-request"


class PrivateCallRequest(SignalingEvent):
    event: ClassVar[str] = "private-call-request"


class CallOffer(SignalingEvent):
    event: ClassVar[str] = "call-offer"


class CallAnswer(SignalingEvent):
    event: ClassVar[str] = "call-answer"


class IceCandidate(SignalingEvent):
    event: ClassVar[str] = "ice-candidate"


class CallEnded(SignalingEvent):
    event: ClassVar[str] = "call-ended"


class CallRejected(SignalingEvent):
    event: ClassVar[str] = "call-rejected"


class CallAccepted(SignalingEvent):
    event: ClassVar[str] = "call-accepted"


class PrivateCallRejected(SignalingEvent):
    event: ClassVar[str] = "private-call-rejected"


class PrivateCallAccepted(SignalingEvent):
    event: ClassVar[str] = "private-call-accepted"


EVENT_TYPES: Dict[str, Type[InboundEvent]] = {
    cls.event: cls
    for cls in (
        JoinRoom,
        ChatMessage,
        PrivateMessage,
        JoinPrivateChat,
        Typing,
        Pong,
        CallRequest,
        PrivateCallRequest,
        CallOffer,
        CallAnswer,
        IceCandidate,
        CallEnded,
        CallRejected,
        CallAccepted,
        PrivateCallRejected,
        PrivateCallAccepted,
    )
}

SIGNALING_EVENTS = frozenset(name for name, cls in EVENT_TYPES.items() if issubclass(cls, SignalingEvent))


def parse_event(frame: Union[str, bytes, dict]) -> InboundEvent:
    """Turn a raw frame into its event model, raising MalformedEvent on any violation."""
    if isinstance(frame, (str, bytes)):
        try:
            frame = json.loads(frame)
        except json.JSONDecodeError as e:
            raise MalformedEvent(f"frame is not valid JSON: {e}") from e
    if not isinstance(frame, dict):
        raise MalformedEvent("frame must be a JSON object")

    name = frame.get("event")
    if not isinstance(name, str):
        raise MalformedEvent("frame has no event name")
    event_type = EVENT_TYPES.get(name)
    if event_type is None:
        raise MalformedEvent(f"unknown event {name!r}", event=name)

    data = frame.get("data")
    if data is None:
        data = {}
    if event_type is JoinRoom and isinstance(data, str):
        data = {"room": data}
    if not isinstance(data, dict):
        raise MalformedEvent(f"{name} data must be an object", event=name)

    try:
        return event_type.model_validate(data)
    except ValidationError as e:
        raise MalformedEvent(f"invalid {name}: {e.errors(include_url=False)}", event=name) from e
