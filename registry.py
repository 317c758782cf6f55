import math
import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Iterator, List, Optional, Set, Tuple

from constants import DEFAULT_ROOM, DEFAULT_USERNAME, MAX_ROOM, MIN_ROOM
from errors import ValidationError
from logging_config import get_logger

logger = get_logger(__name__)

ROOM_ID_PATTERN = re.compile(r"^\d{3}$")


def normalize_room_id(raw) -> str:
    """Validate a client supplied room id and return it in 001-100 form."""
    if not isinstance(raw, str) or not ROOM_ID_PATTERN.fullmatch(raw):
        raise ValidationError(f"Invalid room ID. Must be 3 digits ({MIN_ROOM:03d}-{MAX_ROOM:03d}).")
    number = int(raw)
    if number < MIN_ROOM or number > MAX_ROOM:
        raise ValidationError(f"Room must be between {MIN_ROOM:03d} and {MAX_ROOM:03d}.")
    return f"{number:03d}"


def all_room_ids() -> List[str]:
    return [f"{n:03d}" for n in range(MIN_ROOM, MAX_ROOM + 1)]


@dataclass
class Session:
    id: str
    display_name: str = DEFAULT_USERNAME
    room_id: str = DEFAULT_ROOM
    is_privileged: bool = False
    mute_until: Optional[datetime] = None

    def is_muted(self, now: datetime) -> bool:
        return self.mute_until is not None and self.mute_until > now

    def mute_remaining(self, now: datetime) -> int:
        """Whole seconds left on the mute, rounded up. 0 when not muted."""
        if not self.is_muted(now):
            return 0
        return math.ceil((self.mute_until - now).total_seconds())

    def mute_for(self, seconds: int, now: datetime) -> datetime:
        self.mute_until = now + timedelta(seconds=seconds)
        return self.mute_until


class RoomIndex:
    """room id -> set of session ids. Derived from sessions, kept for fanout."""

    def __init__(self):
        self._members: Dict[str, Set[str]] = {}

    def join(self, session_id: str, room: str) -> None:
        self._members.setdefault(room, set()).add(session_id)

    def leave(self, session_id: str, room: str) -> None:
        members = self._members.get(room)
        if members is None:
            return
        members.discard(session_id)
        if not members:
            del self._members[room]
            logger.debug(f"Room {room} is empty, dropped from index")

    def members_of(self, room: str) -> Set[str]:
        return set(self._members.get(room, ()))

    def list_rooms(self) -> List[Tuple[str, int]]:
        return [(room, len(self._members[room])) for room in sorted(self._members)]

    def __contains__(self, room: str) -> bool:
        return room in self._members


class SessionRegistry:
    """Owns every live Session and keeps the RoomIndex in step with it.

    Every method completes without awaiting, so callers on the event loop see
    a session in exactly one room at all times.
    """

    def __init__(self, room_index: Optional[RoomIndex] = None):
        self.rooms = room_index if room_index is not None else RoomIndex()
        self._sessions: Dict[str, Session] = {}

    def connect(self, session_id: Optional[str] = None) -> Session:
        session = Session(id=session_id or str(uuid.uuid4()))
        if session.id in self._sessions:
            raise ValueError(f"Session {session.id} already connected")
        self._sessions[session.id] = session
        self.rooms.join(session.id, session.room_id)
        logger.info(f"Session {session.id} connected to room {session.room_id}")
        return session

    def get(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    def set_name(self, session_id: str, name: Optional[str]) -> Optional[Session]:
        session = self._sessions.get(session_id)
        if session is None:
            return None
        session.display_name = name or DEFAULT_USERNAME
        return session

    def move(self, session_id: str, room: str) -> Optional[str]:
        """Move a session to `room`. Returns the previous room, or None if nothing moved."""
        session = self._sessions.get(session_id)
        if session is None or session.room_id == room:
            return None
        previous = session.room_id
        self.rooms.leave(session_id, previous)
        self.rooms.join(session_id, room)
        session.room_id = room
        logger.info(f"Session {session_id} moved from room {previous} to {room}")
        return previous

    def remove(self, session_id: str) -> Optional[Session]:
        """Drop a session, its membership and its moderation state in one step."""
        session = self._sessions.pop(session_id, None)
        if session is None:
            return None
        self.rooms.leave(session_id, session.room_id)
        session.is_privileged = False
        session.mute_until = None
        logger.info(f"Session {session_id} removed from room {session.room_id}")
        return session

    def find_by_name(self, name: str) -> Optional[Session]:
        for session in self._sessions.values():
            if session.display_name == name:
                return session
        return None

    def sessions_in(self, room: str) -> List[Session]:
        members = self.rooms.members_of(room)
        return [session for session in self._sessions.values() if session.id in members]

    def count(self) -> int:
        return len(self._sessions)

    def __iter__(self) -> Iterator[Session]:
        return iter(list(self._sessions.values()))

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions
