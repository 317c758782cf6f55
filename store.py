import asyncio
from collections import defaultdict, deque
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Deque, Dict, Iterable, List, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError
from redis.exceptions import RedisError

from backend import RedisBackend
from clock import Clock, utcnow
from constants import (
    BACKEND_RETRY_SECONDS,
    BACKEND_TIMEOUT_SECONDS,
    MESSAGE_LIMIT,
    MESSAGE_TTL_BUFFER_SECONDS,
    MESSAGE_TTL_SECONDS,
    SWEEP_INTERVAL_SECONDS,
)
from errors import BackendUnavailable
from logging_config import get_logger
from schemas.messages import Message

logger = get_logger(__name__)


class MessageLog:
    """Storage for already-built messages. Implementations: Redis and in-memory."""

    name = "abstract"

    async def append_message(self, message: Message) -> None:
        raise NotImplementedError

    async def recent(self, room: str) -> List[Message]:
        raise NotImplementedError

    async def clear(self, room: str) -> None:
        raise NotImplementedError

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None


class InMemoryMessageStore(MessageLog):
    """Process-local log. Lost on restart."""

    name = "fallback"

    def __init__(self, limit: int = MESSAGE_LIMIT, ttl_seconds: int = MESSAGE_TTL_SECONDS, clock: Clock = utcnow):
        self.limit = limit
        self.ttl = timedelta(seconds=ttl_seconds)
        self.clock = clock
        self._logs: Dict[str, Deque[Message]] = {}

    async def append_message(self, message: Message) -> None:
        log = self._logs.setdefault(message.room, deque(maxlen=self.limit))
        log.append(message)

    async def recent(self, room: str) -> List[Message]:
        cutoff = self.clock() - self.ttl
        return [m for m in self._logs.get(room, ()) if m.timestamp > cutoff]

    async def clear(self, room: str) -> None:
        self._logs.pop(room, None)

    def sweep(self) -> int:
        """Physically drop expired entries and empty rooms. Returns entries removed."""
        cutoff = self.clock() - self.ttl
        removed = 0
        for room in list(self._logs):
            log = self._logs[room]
            live = [m for m in log if m.timestamp > cutoff]
            removed += len(log) - len(live)
            if live:
                self._logs[room] = deque(live, maxlen=self.limit)
            else:
                del self._logs[room]
        return removed

    def rooms(self) -> List[str]:
        return sorted(self._logs)


class RedisMessageStore(MessageLog):
    """One Redis list per room. Redis expires the list itself; entries are filtered on read."""

    name = "redis"

    def __init__(
        self,
        backend: RedisBackend,
        limit: int = MESSAGE_LIMIT,
        ttl_seconds: int = MESSAGE_TTL_SECONDS,
        ttl_buffer_seconds: int = MESSAGE_TTL_BUFFER_SECONDS,
    ):
        self.backend = backend
        self.limit = limit
        self.list_ttl = ttl_seconds + ttl_buffer_seconds

    async def append_message(self, message: Message) -> None:
        try:
            await self.backend.push_message(message.room, message.to_json(), self.limit, self.list_ttl)
        except (RedisError, OSError) as e:
            raise BackendUnavailable(f"append to room {message.room} failed: {e}") from e

    async def recent(self, room: str) -> List[Message]:
        try:
            raw_entries = await self.backend.get_messages(room)
        except (RedisError, OSError) as e:
            raise BackendUnavailable(f"read of room {room} failed: {e}") from e

        messages = []
        for raw in raw_entries:
            try:
                message = Message.model_validate_json(raw)
            except PydanticValidationError:
                logger.warning(f"Skipping unreadable message entry in room {room}: {raw[:80]!r}")
                continue
            if message.timestamp.tzinfo is None:
                # entries written without an offset are taken as UTC
                message = message.model_copy(update={"timestamp": message.timestamp.replace(tzinfo=timezone.utc)})
            messages.append(message)
        return messages

    async def clear(self, room: str) -> None:
        try:
            await self.backend.delete_messages(room)
        except (RedisError, OSError) as e:
            raise BackendUnavailable(f"clear of room {room} failed: {e}") from e

    async def ping(self) -> bool:
        return await self.backend.ping()

    async def close(self) -> None:
        await self.backend.close()


class ResilientMessageStore:
    """Message store facade used by the relay.

    Tries the durable log first and substitutes the in-memory log whenever the
    durable one errors or times out. After a failure the durable log is skipped
    for `retry_seconds` before it is tried again. None of the public methods
    raise because of backend trouble.

    Appends to one room are serialized so append/trim/expire never interleave.
    A clear that cannot reach the durable log hides everything older than the
    clear until a later clear succeeds there.
    """

    def __init__(
        self,
        durable: Optional[MessageLog] = None,
        fallback: Optional[InMemoryMessageStore] = None,
        *,
        limit: int = MESSAGE_LIMIT,
        ttl_seconds: int = MESSAGE_TTL_SECONDS,
        timeout: float = BACKEND_TIMEOUT_SECONDS,
        retry_seconds: float = BACKEND_RETRY_SECONDS,
        clock: Clock = utcnow,
    ):
        self.durable = durable
        self.fallback = fallback if fallback is not None else InMemoryMessageStore(limit, ttl_seconds, clock)
        self.limit = limit
        self.ttl = timedelta(seconds=ttl_seconds)
        self.timeout = timeout
        self.retry = timedelta(seconds=retry_seconds)
        self.clock = clock
        self.sweep_runs = 0
        self._open_until: Optional[datetime] = None
        self._cleared_at: Dict[str, datetime] = {}
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    @property
    def backend_name(self) -> str:
        return self.durable.name if self._durable_available() else self.fallback.name

    def _durable_available(self) -> bool:
        if self.durable is None:
            return False
        return self._open_until is None or self.clock() >= self._open_until

    async def _try_durable(
        self, operation: str, room: str, call: Callable[[], Awaitable], force: bool = False
    ) -> Tuple[bool, object]:
        """Run `call` on the durable log. `force` ignores an open circuit."""
        if self.durable is None or not (force or self._durable_available()):
            return False, None
        try:
            result = await asyncio.wait_for(call(), timeout=self.timeout)
        except asyncio.TimeoutError:
            self._trip(operation, room, f"timed out after {self.timeout}s")
            return False, None
        except BackendUnavailable as e:
            self._trip(operation, room, e.message)
            return False, None
        except Exception as e:
            logger.error(f"Unexpected durable store error during {operation} for room {room}: {e}", exc_info=True)
            self._trip(operation, room, str(e))
            return False, None

        if self._open_until is not None:
            logger.info(f"Durable message backend recovered during {operation} for room {room}")
            self._open_until = None
        return True, result

    def _trip(self, operation: str, room: str, reason: str) -> None:
        self._open_until = self.clock() + self.retry
        logger.warning(
            f"Durable message backend unavailable ({operation}, room {room}): {reason}; "
            f"using in-memory fallback for {self.retry.total_seconds():.0f}s"
        )

    def _is_live(self, message: Message, now: datetime) -> bool:
        if message.timestamp <= now - self.ttl:
            return False
        cleared_at = self._cleared_at.get(message.room)
        return cleared_at is None or message.timestamp > cleared_at

    async def append(self, room: str, author: str, body: str, is_system: bool = False) -> Message:
        async with self._locks[room]:
            message = Message(author=author, body=body, room=room, timestamp=self.clock(), is_system=is_system)
            stored, _ = await self._try_durable("append", room, lambda: self.durable.append_message(message))
            if not stored:
                await self.fallback.append_message(message)
            logger.debug(f"Stored message in room {room} via {'durable' if stored else 'fallback'} log")
            return message

    async def recent(self, room: str) -> List[Message]:
        """Live messages for `room`, oldest first, at most `limit` of them."""
        messages: List[Message] = []
        ok, durable_messages = await self._try_durable("recent", room, lambda: self.durable.recent(room))
        if ok:
            messages.extend(durable_messages)
        messages.extend(await self.fallback.recent(room))

        now = self.clock()
        live = []
        seen = set()
        for m in messages:
            # a timed-out durable write may have landed and also been written to the fallback
            key = (m.timestamp, m.author, m.body, m.is_system)
            if key in seen or not self._is_live(m, now):
                continue
            seen.add(key)
            live.append(m)
        live.sort(key=lambda m: m.timestamp)
        return live[-self.limit:]

    async def clear(self, room: str) -> None:
        async with self._locks[room]:
            cleared, _ = await self._try_durable("clear", room, lambda: self.durable.clear(room), force=True)
            await self.fallback.clear(room)
            if cleared or self.durable is None:
                self._cleared_at.pop(room, None)
            else:
                self._cleared_at[room] = self.clock()
        logger.info(f"Cleared message log for room {room}")

    async def counts(self, rooms: Iterable[str]) -> Dict[str, int]:
        """Live message count per room, rooms with no messages omitted."""
        result = {}
        for room in rooms:
            count = len(await self.recent(room))
            if count:
                result[room] = count
        return result

    def sweep(self) -> int:
        removed = self.fallback.sweep()
        self.sweep_runs += 1
        logger.info(f"Swept {removed} expired messages from the in-memory log")
        return removed

    async def sweep_forever(self, interval: float = SWEEP_INTERVAL_SECONDS) -> None:
        logger.info(f"Starting message sweep task (every {interval}s)")
        while True:
            await asyncio.sleep(interval)
            try:
                self.sweep()
            except Exception as e:
                logger.error(f"Error during message sweep: {e}", exc_info=True)

    async def close(self) -> None:
        if self.durable is not None:
            try:
                await self.durable.close()
            except Exception as e:
                logger.debug(f"Error closing durable message store: {e}")
