import asyncio
from typing import Any, Dict, Optional

from pydantic import ValidationError as PydanticValidationError

from clock import Clock, utcnow
from commands import CommandInterpreter
from constants import DEFAULT_ROOM, DISCONNECT_GRACE_SECONDS, MAX_MESSAGE_LENGTH, SWEEP_INTERVAL_SECONDS
from errors import ChatError, ValidationError
from keepalive import KeepAliveController
from logging_config import get_logger
from registry import Session, SessionRegistry, all_room_ids, normalize_room_id
from schemas.messages import (
    ChatMessageEvent,
    InboundEnvelope,
    JoinRoomEvent,
    LeaveRoomEvent,
    Message,
    UpdateUsernameEvent,
)
from store import ResilientMessageStore

logger = get_logger(__name__)

SYSTEM_AUTHOR = "System"


class ChatRelay:
    """Handles inbound session events against the registry, message store and keep-alive.

    `transport` needs `send(session_id, event, data)`, `send_many(session_ids,
    event, data)` and `close(session_id)` coroutines.

    Registry mutations for an event finish before the first await, so other
    events never observe a half-moved session.
    """

    def __init__(
        self,
        transport,
        store: ResilientMessageStore,
        registry: Optional[SessionRegistry] = None,
        keep_alive: Optional[KeepAliveController] = None,
        credentials: Optional[Dict[str, str]] = None,
        clock: Clock = utcnow,
        disconnect_grace: float = DISCONNECT_GRACE_SECONDS,
    ):
        self.transport = transport
        self.store = store
        self.registry = registry if registry is not None else SessionRegistry()
        self.rooms = self.registry.rooms
        self.keep_alive = keep_alive if keep_alive is not None else KeepAliveController(self.send_keep_alive_ping)
        self.commands = CommandInterpreter(self, credentials)
        self.clock = clock
        self.disconnect_grace = disconnect_grace
        self._pending_disconnects: Dict[str, asyncio.Task] = {}
        self._sweep_task: Optional[asyncio.Task] = None

        self._handlers = {
            "chat-message": self.chat_message,
            "join-room": self.join_room,
            "leave-room": self.leave_room,
            "update-username": self.update_username,
            "get-rooms": self.get_rooms,
        }

    # -- lifecycle ----------------------------------------------------------

    async def start(self, sweep_interval: float = SWEEP_INTERVAL_SECONDS) -> None:
        self.keep_alive.start()
        self._sweep_task = asyncio.create_task(self.store.sweep_forever(sweep_interval))
        logger.info("Chat relay started")

    async def shutdown(self) -> None:
        self.keep_alive.stop()
        tasks = list(self._pending_disconnects.values())
        if self._sweep_task is not None:
            tasks.append(self._sweep_task)
            self._sweep_task = None
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._pending_disconnects.clear()
        await self.store.close()
        logger.info("Chat relay stopped")

    # -- outbound helpers ---------------------------------------------------

    async def send(self, session_id: str, event: str, data: Any) -> None:
        await self.transport.send(session_id, event, data)

    async def fanout(self, room: str, event: str, data: Any, exclude: Optional[str] = None) -> None:
        targets = self.rooms.members_of(room)
        targets.discard(exclude)
        await self.transport.send_many(targets, event, data)

    def system_message(self, room: str, text: str) -> Message:
        return Message(author=SYSTEM_AUTHOR, body=text, room=room, timestamp=self.clock(), is_system=True)

    async def notify(self, session_id: str, text: str) -> None:
        """Private system notice. Never stored."""
        session = self.registry.get(session_id)
        if session is None:
            return
        await self.send(session_id, "chat-message", self.system_message(session.room_id, text).to_wire())

    async def announce(self, room: str, text: str) -> None:
        """System notice to everyone in `room`. Never stored."""
        await self.fanout(room, "chat-message", self.system_message(room, text).to_wire())

    async def send_history(self, session_id: str, room: str) -> None:
        for message in await self.store.recent(room):
            await self.send(session_id, "chat-message", message.to_wire())

    async def send_keep_alive_ping(self) -> None:
        session_ids = [session.id for session in self.registry]
        logger.info(f"Keep-alive ping to {len(session_ids)} sessions")
        await self.transport.send_many(session_ids, "keep-alive-ping", {"timestamp": self.clock().isoformat()})

    # -- inbound events -----------------------------------------------------

    async def connect(self, session_id: Optional[str] = None) -> Session:
        session = self.registry.connect(session_id)
        await self.send_history(session.id, session.room_id)
        await self.send(session.id, "room-joined", {"roomId": session.room_id})
        self.keep_alive.kick()
        return session

    async def handle_frame(self, session_id: str, raw: str) -> bool:
        """Parse one `{"event": ..., "data": ...}` frame. Returns False when the client asked to disconnect."""
        try:
            envelope = InboundEnvelope.model_validate_json(raw)
        except PydanticValidationError:
            await self.send(session_id, "error", {"message": "Malformed event."})
            return True
        if envelope.event == "disconnect":
            return False
        await self.handle_event(session_id, envelope.event, envelope.data)
        return True

    async def handle_event(self, session_id: str, event: str, data: Any = None) -> None:
        session = self.registry.get(session_id)
        if session is None:
            logger.debug(f"Ignoring {event} from unknown session {session_id}")
            return

        handler = self._handlers.get(event)
        if handler is None:
            await self.send(session_id, "error", {"message": f"Unknown event: {event}"})
            return

        try:
            await handler(session, data if data is not None else {})
        except PydanticValidationError:
            await self.send(session_id, "error", {"message": f"Invalid payload for {event}."})
        except ValidationError as e:
            await self.send(session_id, "error", {"message": e.message})
        except ChatError as e:
            await self.notify(session_id, e.message)

    async def chat_message(self, session: Session, data: Any) -> None:
        payload = ChatMessageEvent.model_validate(data)
        if payload.username and payload.username.strip():
            self.registry.set_name(session.id, payload.username.strip())

        body = payload.message
        if not body.strip():
            return
        if len(body) > MAX_MESSAGE_LENGTH:
            raise ValidationError(f"Message is too long (max {MAX_MESSAGE_LENGTH} characters).")

        self.keep_alive.kick()
        await self.commands.dispatch(session, body)

    async def publish_chat(self, session: Session, body: str) -> Message:
        """Store, then deliver to the sender's room."""
        room = session.room_id
        message = await self.store.append(room, session.display_name, body)
        await self.fanout(room, "chat-message", message.to_wire())
        logger.debug(f"Message in room {room}: {message.author}: {len(body)} chars")
        return message

    async def join_room(self, session: Session, data: Any) -> None:
        room = normalize_room_id(JoinRoomEvent.model_validate(data).roomId)
        if session.room_id == room:
            return
        await self._move(session, room)

    async def leave_room(self, session: Session, data: Any) -> None:
        room = normalize_room_id(LeaveRoomEvent.model_validate(data).roomId)
        if session.room_id != room:
            return
        if room == DEFAULT_ROOM:
            raise ValidationError(f"You cannot leave room {DEFAULT_ROOM}. Join another room instead.")
        await self._move(session, DEFAULT_ROOM)

    async def _move(self, session: Session, room: str) -> None:
        previous = self.registry.move(session.id, room)
        if previous is None:
            return
        self.keep_alive.kick()

        await self.send(session.id, "room-left", {"roomId": previous})
        await self.fanout(previous, "user-left", {"username": session.display_name, "room": previous})

        await self.send_history(session.id, room)
        await self.send(session.id, "room-joined", {"roomId": room})
        await self.fanout(room, "user-joined", {"username": session.display_name, "room": room}, exclude=session.id)

    async def update_username(self, session: Session, data: Any) -> None:
        payload = UpdateUsernameEvent.model_validate(data)
        name = payload.name.strip() if payload.name else None
        self.registry.set_name(session.id, name)
        self.keep_alive.kick()

    async def get_rooms(self, session: Session, data: Any) -> None:
        self.keep_alive.kick()
        await self.send(session.id, "rooms-list", self.room_list())

    async def disconnect(self, session_id: str) -> None:
        pending = self._pending_disconnects.pop(session_id, None)
        if pending is not None and pending is not asyncio.current_task():
            pending.cancel()

        session = self.registry.remove(session_id)
        if session is None:
            return
        await self.fanout(session.room_id, "user-left", {"username": session.display_name, "room": session.room_id})

    def schedule_disconnect(self, session_id: str) -> None:
        """Disconnect after the grace delay so notices sent now reach the client first."""
        if session_id in self._pending_disconnects:
            return
        self._pending_disconnects[session_id] = asyncio.create_task(self._disconnect_later(session_id))

    async def _disconnect_later(self, session_id: str) -> None:
        await asyncio.sleep(self.disconnect_grace)
        logger.info(f"Forcing disconnect of session {session_id}")
        await self.transport.close(session_id)
        await self.disconnect(session_id)

    # -- read-only snapshots ------------------------------------------------

    def room_list(self):
        return [{"id": room, "userCount": count} for room, count in self.rooms.list_rooms()]

    async def message_counts(self) -> Dict[str, int]:
        return await self.store.counts(all_room_ids())
