from fastapi import APIRouter, Request
from schemas.rooms import HealthResponse, MessageStatsResponse, RoomsResponse, RoomSummary
from logging_config import get_logger

logger = get_logger(__name__)

rooms_router = APIRouter(prefix="/api", tags=["rooms"])


@rooms_router.get("/rooms", response_model=RoomsResponse)
async def get_rooms(request: Request):
    """
    Rooms that currently have occupants.

    Returns:
    - totalRooms: Number of occupied rooms
    - totalUsers: Number of connected sessions
    - rooms: Occupied rooms ordered by id, with their user counts
    """
    relay = request.app.state.relay
    rooms = [RoomSummary(**room) for room in relay.room_list()]
    logger.debug(f"Room stats requested: {len(rooms)} rooms occupied")
    return RoomsResponse(
        totalRooms=len(rooms),
        totalUsers=relay.registry.count(),
        rooms=rooms,
    )


@rooms_router.get("/message-stats", response_model=MessageStatsResponse)
async def get_message_stats(request: Request):
    relay = request.app.state.relay
    per_room = await relay.message_counts()
    return MessageStatsResponse(
        totalMessages=sum(per_room.values()),
        messagesPerRoom=per_room,
        cleanupRuns=relay.store.sweep_runs,
    )


@rooms_router.get("/health", response_model=HealthResponse)
async def get_health(request: Request):
    relay = request.app.state.relay
    return HealthResponse(
        status="ok",
        keepAliveEnabled=relay.keep_alive.enabled,
        backend=relay.store.backend_name,
        sessions=relay.registry.count(),
    )
