from pydantic import BaseModel, Field
from typing import Any, List, Optional


class RoomRequest(BaseModel):
    room: str
    id: str

class Room(BaseModel):
    room: str
    owner: str
    members: List[str] = Field(default_factory=list)
    readPos: int = Field(default=0, ge=0)
    writePos: int = Field(default=0, ge=0)

class PollRequest(BaseModel):
    room: str
    message: Optional[Any] = None
    last: int = Field(default=0, ge=0)

class PollResponse(BaseModel):
    room: str
    messages: List[Any] = Field(default_factory=list)
    last: int

class ErrorResponse(BaseModel):
    error: str
