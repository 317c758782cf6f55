import secrets
from enum import Enum
from typing import TYPE_CHECKING, Dict, Optional, Tuple

from constants import AUTH_PREFIX, BAN_SECONDS, COMMAND_PREFIX, MUTE_SECONDS
from errors import ChatError, NotFoundError, PermissionDenied
from logging_config import get_logger
from registry import Session

if TYPE_CHECKING:
    from relay import ChatRelay

logger = get_logger(__name__)

POWER_COMMANDS = ("power-down", "power-on", "status", "help")
MODERATION_COMMANDS = ("clear", "mute", "kick", "ban", "list")

USAGE = f"Unknown command. Type {COMMAND_PREFIX}help for the list of commands."


class CommandKind(str, Enum):
    AUTH = "auth"
    POWER = "power"
    MODERATION = "moderation"
    UNKNOWN = "unknown"
    PLAIN = "plain"


def load_credentials(raw: Optional[str]) -> Dict[str, str]:
    """Parse "user:pass,user2:pass2" into a lookup table. Bad pairs are skipped."""
    credentials = {}
    for pair in (raw or "").split(","):
        user, sep, password = pair.strip().partition(":")
        if sep and user and password:
            credentials[user] = password
    return credentials


def _parse_auth(text: str) -> Optional[Tuple[str, str]]:
    fields = text.split("#")
    if len(fields) != 2 or f"{fields[0]}#" != AUTH_PREFIX:
        return None
    pair = fields[1].split(":")
    if len(pair) != 2:
        return None
    return pair[0], pair[1]


def classify(text: str) -> Tuple[CommandKind, str, str]:
    """Return (kind, command, argument) for an inbound chat body.

    The reserved prefix is matched case-sensitively; power literals are not.
    Auth payloads with the wrong number of fields are plain chat.
    """
    if text.startswith(AUTH_PREFIX):
        if _parse_auth(text) is not None:
            return CommandKind.AUTH, "admin-login", text[len(AUTH_PREFIX):]
        return CommandKind.PLAIN, "", text

    if not text.startswith(COMMAND_PREFIX):
        return CommandKind.PLAIN, "", text

    rest = text[len(COMMAND_PREFIX):].strip()
    if rest.startswith(AUTH_PREFIX):
        if _parse_auth(rest) is not None:
            return CommandKind.AUTH, "admin-login", rest[len(AUTH_PREFIX):]
        return CommandKind.UNKNOWN, rest, ""

    word, _, argument = rest.partition(" ")
    if word.lower() in POWER_COMMANDS:
        return CommandKind.POWER, word.lower(), argument.strip()
    if word in MODERATION_COMMANDS:
        return CommandKind.MODERATION, word, argument.strip()
    return CommandKind.UNKNOWN, word, argument.strip()


class CommandInterpreter:
    """Routes every chat body: admin login, power and moderation commands, or plain chat."""

    def __init__(self, relay: "ChatRelay", credentials: Optional[Dict[str, str]] = None):
        self.relay = relay
        self.credentials = credentials or {}

    async def dispatch(self, session: Session, text: str) -> CommandKind:
        kind, command, argument = classify(text)
        try:
            if kind is CommandKind.AUTH:
                await self.admin_login(session, argument)
            elif kind is CommandKind.POWER:
                await self.power(session, command)
            elif kind is CommandKind.MODERATION:
                await self.moderate(session, command, argument)
            elif kind is CommandKind.UNKNOWN:
                logger.debug(f"Unknown command {command!r} from session {session.id}")
                await self.relay.notify(session.id, USAGE)
            else:
                await self.plain_message(session, text)
        except ChatError as e:
            await self.relay.notify(session.id, e.message)
        return kind

    # -- auth ---------------------------------------------------------------

    async def admin_login(self, session: Session, argument: str) -> None:
        if session.is_privileged:
            await self.relay.notify(session.id, "You are already logged in as admin.")
            return

        user, _, password = argument.partition(":")
        expected = self.credentials.get(user)
        if expected is None or not secrets.compare_digest(expected.encode(), password.encode()):
            logger.warning(f"Failed admin login for user {user!r} from session {session.id}")
            await self.relay.notify(session.id, "Admin login failed.")
            return

        session.is_privileged = True
        logger.info(f"Session {session.id} ({session.display_name}) logged in as admin {user!r}")
        await self.relay.notify(session.id, f"Admin login successful. Type {COMMAND_PREFIX}help for commands.")

    # -- power --------------------------------------------------------------

    async def power(self, session: Session, command: str) -> None:
        keep_alive = self.relay.keep_alive

        if command == "status":
            state = "enabled" if keep_alive.enabled else "disabled"
            await self.relay.notify(
                session.id,
                f"Keep-alive is {state}. Message backend: {self.relay.store.backend_name}. "
                f"Users online: {self.relay.registry.count()}.",
            )
            return

        if command == "help":
            await self.relay.notify(session.id, self.help_text(session))
            return

        if command == "power-down":
            changed, state = keep_alive.disable(), "disabled"
        else:
            changed, state = keep_alive.enable(), "enabled"

        if not changed:
            await self.relay.notify(session.id, f"Keep-alive is already {state}.")
            return

        logger.info(f"Keep-alive {state} by session {session.id} ({session.display_name})")
        await self.relay.announce(session.room_id, f"Keep-alive {state} by {session.display_name}.")
        await self.relay.notify(session.id, f"Keep-alive {state}.")

    def help_text(self, session: Session) -> str:
        lines = [
            "Commands:",
            f"{COMMAND_PREFIX}status - show keep-alive status",
            f"{COMMAND_PREFIX}power-down - disable keep-alive",
            f"{COMMAND_PREFIX}power-on - enable keep-alive",
            f"{COMMAND_PREFIX}help - show this help",
        ]
        if session.is_privileged:
            lines += [
                "Moderation:",
                f"{COMMAND_PREFIX}clear - clear this room's history",
                f"{COMMAND_PREFIX}mute <name> - mute a user for {MUTE_SECONDS // 60} minutes",
                f"{COMMAND_PREFIX}kick <name> - disconnect a user",
                f"{COMMAND_PREFIX}ban <name> - mute for {BAN_SECONDS // 3600} hours and disconnect",
                f"{COMMAND_PREFIX}list - list users in this room",
            ]
        return "\n".join(lines)

    # -- moderation ---------------------------------------------------------

    async def moderate(self, session: Session, command: str, argument: str) -> None:
        if not session.is_privileged:
            logger.warning(f"Session {session.id} ({session.display_name}) denied {command}: not admin")
            raise PermissionDenied("Permission denied. Admin login required.")

        if command == "clear":
            await self.relay.store.clear(session.room_id)
            await self.relay.announce(session.room_id, f"Chat history cleared by {session.display_name}.")
            return

        if command == "list":
            occupants = [
                f"{s.display_name} (admin)" if s.is_privileged else s.display_name
                for s in self.relay.registry.sessions_in(session.room_id)
            ]
            await self.relay.notify(session.id, f"Users in room {session.room_id}: {', '.join(occupants)}")
            return

        if not argument:
            await self.relay.notify(session.id, f"Usage: {COMMAND_PREFIX}{command} <name>")
            return

        target = self.relay.registry.find_by_name(argument)
        if target is None:
            raise NotFoundError(f"User '{argument}' not found.")

        now = self.relay.clock()
        if command == "mute":
            target.mute_for(MUTE_SECONDS, now)
            await self.relay.notify(target.id, f"You have been muted for {MUTE_SECONDS // 60} minutes.")
            await self.relay.announce(target.room_id, f"{target.display_name} has been muted.")
        elif command == "kick":
            await self.relay.notify(target.id, "You have been kicked from the server.")
            await self.relay.announce(target.room_id, f"{target.display_name} has been kicked.")
            self.relay.schedule_disconnect(target.id)
        else:
            target.mute_for(BAN_SECONDS, now)
            await self.relay.notify(target.id, "You have been banned and kicked from the server.")
            await self.relay.announce(target.room_id, f"{target.display_name} has been banned.")
            self.relay.schedule_disconnect(target.id)

        logger.info(f"Admin {session.display_name} ({session.id}) used {command} on {target.display_name} ({target.id})")
        await self.relay.notify(session.id, f"{command.capitalize()} applied to {target.display_name}.")

    # -- plain chat ---------------------------------------------------------

    async def plain_message(self, session: Session, text: str) -> None:
        now = self.relay.clock()
        if session.is_muted(now):
            remaining = session.mute_remaining(now)
            logger.debug(f"Dropped message from muted session {session.id} ({remaining}s left)")
            await self.relay.notify(session.id, f"You are muted. Try again in {remaining} seconds.")
            return
        await self.relay.publish_chat(session, text)
