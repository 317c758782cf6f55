from typing import Dict

from pydantic import BaseModel


class RoomSummary(BaseModel):
    id: str
    userCount: int

class RoomsResponse(BaseModel):
    totalRooms: int
    totalUsers: int
    rooms: list[RoomSummary]

class MessageStatsResponse(BaseModel):
    totalMessages: int
    messagesPerRoom: Dict[str, int]
    cleanupRuns: int

class HealthResponse(BaseModel):
    status: str
    keepAliveEnabled: bool
    backend: str
    sessions: int
