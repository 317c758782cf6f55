from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class Message(BaseModel):
    """One entry of a room log. Serialized with wire names (username/message/isSystem)."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    author: str = Field(alias="username")
    body: str = Field(alias="message")
    room: str
    timestamp: datetime
    is_system: bool = Field(default=False, alias="isSystem")

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)


class InboundEnvelope(BaseModel):
    event: str
    data: Any = None


class ChatMessageEvent(BaseModel):
    room: Optional[str] = None
    username: Optional[str] = None
    message: str


class JoinRoomEvent(BaseModel):
    roomId: str


class LeaveRoomEvent(BaseModel):
    roomId: str


class UpdateUsernameEvent(BaseModel):
    name: Optional[str] = None
