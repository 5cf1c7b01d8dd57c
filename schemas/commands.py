from pydantic import BaseModel, model_validator
from typing import Literal, Optional

# Fields each websocket action cannot do without
REQUIRED_FIELDS = {
    "create_room": ("name",),
    "create_and_join_room": ("name", "username"),
    "join_room": ("room_id", "username"),
    "leave_room": ("room_id", "user_id", "username"),
    "update_typing": ("room_id", "user_id"),
    "send_message": ("room_id", "user_id", "username", "text", "color"),
    "clear_messages": ("room_id",),
    "listen_rooms": (),
    "listen_room": ("room_id",),
    "listen_messages": ("room_id",),
    "unlisten": ("subscription_id",),
}


class WsCommand(BaseModel):
    action: Literal[
        "create_room", "create_and_join_room", "join_room", "leave_room", "update_typing",
        "send_message", "clear_messages", "listen_rooms", "listen_room", "listen_messages", "unlisten",
    ]
    request_id: Optional[str] = None
    room_id: Optional[str] = None
    name: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    is_private: bool = False
    user_id: Optional[str] = None
    typing: str = ""
    composing: str = ""
    text: Optional[str] = None
    color: Optional[str] = None
    subscription_id: Optional[str] = None

    @model_validator(mode="after")
    def check_required_fields(self):
        missing = [field for field in REQUIRED_FIELDS[self.action] if getattr(self, field) is None]
        if missing:
            raise ValueError(f"{self.action} requires {', '.join(missing)}")
        return self
