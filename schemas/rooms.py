from pydantic import BaseModel


class CreateRoomResponse(BaseModel):
    room_id: str
    ws_url: str

class RoomDetailsResponse(BaseModel):
    room_id: str
    active: bool
    online_users_count: int
