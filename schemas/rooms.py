from pydantic import BaseModel, Field
from typing import Dict, List, Literal, Optional


class User(BaseModel):
    id: str
    username: str
    typing: str = ""
    composing: str = ""
    is_typing: bool = False
    last_update: int = 0
    joined_at: int = 0
    color: str
    status: Literal["active", "disconnected"] = "active"


class Room(BaseModel):
    id: str
    name: str
    users: Dict[str, User] = Field(default_factory=dict)
    created_at: int = 0
    last_activity: int = 0
    message_count: int = 0
    is_private: bool = False
    # Kept server side for the join check, never serialized
    password: Optional[str] = Field(default=None, exclude=True)

    @property
    def occupant_count(self) -> int:
        return len(self.users)


class ChatMessage(BaseModel):
    id: str
    user_id: str
    username: str
    text: str
    timestamp: int
    color: str
    type: Optional[Literal["join", "leave", "system"]] = None


class JoinResult(BaseModel):
    success: bool
    user_id: Optional[str] = None
    error: Optional[str] = None
    code: Optional[str] = None


class CreateAndJoinResult(BaseModel):
    success: bool
    room_id: Optional[str] = None
    user_id: Optional[str] = None
    error: Optional[str] = None
    code: Optional[str] = None


class CreateRoomRequest(BaseModel):
    name: str
    is_private: bool = False
    password: Optional[str] = None

class CreateRoomResponse(BaseModel):
    room_id: str
    ws_url: str

class RoomDetailsResponse(BaseModel):
    room_id: str
    name: str
    created_at: int
    last_activity: int
    message_count: int
    online_users_count: int
    online_users: List[User]
    is_private: bool

class MessagesResponse(BaseModel):
    room_id: str
    messages: List[ChatMessage]
