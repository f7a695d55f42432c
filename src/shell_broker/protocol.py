"""
Control protocol for the broker.

Inbound messages are newline-delimited JSON documents of the form
``{"type": "...", "payload": {...}}``. ``MessageFramer`` turns the raw
byte stream into complete lines; ``ControlProtocolHandler`` parses each
line and dispatches it. Every reply is a single observation line; no
error ever closes the connection.
"""

import json
from dataclasses import dataclass
from typing import Optional, TypeVar

import structlog
from pydantic import BaseModel, ValidationError

from .config import Settings, get_settings
from .exceptions import (
    BrokerError,
    MalformedMessageError,
    NoActiveSessionError,
    UnknownSessionError,
    UnsupportedMessageType,
)
from .models import (
    CloseShellPayload,
    ControlMessage,
    HistoryPayload,
    MessageType,
    OpenShellPayload,
    RunCommandPayload,
    SwitchShellPayload,
)
from .process import ProcessSupervisor
from .registry import SessionRegistry
from .relay import OutputRelay

logger = structlog.get_logger()

PayloadT = TypeVar("PayloadT", bound=BaseModel)


@dataclass
class Frame:
    """One complete inbound unit. ``oversized`` frames carry no data."""

    data: bytes
    oversized: bool = False


class MessageFramer:
    """Reassembles newline-delimited messages from arbitrary read sizes."""

    def __init__(self, max_message_bytes: int = 1024 * 1024):
        self.max_message_bytes = max_message_bytes
        self._buffer = bytearray()
        self._discarding = False

    @property
    def pending(self) -> int:
        """Bytes buffered without a terminating newline yet."""
        return len(self._buffer)

    def feed(self, data: bytes) -> list[Frame]:
        """Add bytes and return every message they complete."""
        frames: list[Frame] = []
        self._buffer.extend(data)

        while True:
            end = self._buffer.find(b"\n")
            if end < 0:
                break
            line = bytes(self._buffer[:end]).rstrip(b"\r")
            del self._buffer[: end + 1]

            if self._discarding:
                self._discarding = False
                frames.append(Frame(b"", oversized=True))
            elif len(line) > self.max_message_bytes:
                frames.append(Frame(b"", oversized=True))
            elif line.strip():
                frames.append(Frame(line))

        if len(self._buffer) > self.max_message_bytes:
            # Drop the partial line now; report it once its newline arrives.
            self._buffer.clear()
            self._discarding = True

        return frames

    def flush(self) -> list[Frame]:
        """Return whatever is left when the peer closes its side."""
        if self._discarding:
            self._discarding = False
            self._buffer.clear()
            return [Frame(b"", oversized=True)]
        line = bytes(self._buffer).strip()
        self._buffer.clear()
        return [Frame(line)] if line else []


def parse_message(data: bytes) -> ControlMessage:
    """
    Parse one framed control message.

    Raises:
        MalformedMessageError: with a short, peer-safe reason.
    """
    try:
        document = json.loads(data.decode("utf-8"))
    except UnicodeDecodeError:
        raise MalformedMessageError("message is not valid UTF-8")
    except json.JSONDecodeError:
        raise MalformedMessageError("message is not valid JSON")
    except RecursionError:
        raise MalformedMessageError("message is nested too deeply")

    if not isinstance(document, dict):
        raise MalformedMessageError("expected a JSON object")

    try:
        return ControlMessage.model_validate(document)
    except ValidationError as e:
        fields = sorted({str(err["loc"][0]) for err in e.errors() if err["loc"]})
        raise MalformedMessageError(f"invalid or missing field(s): {', '.join(fields)}")


def parse_payload(message: ControlMessage, model: type[PayloadT]) -> PayloadT:
    try:
        return model.model_validate(message.payload)
    except ValidationError as e:
        fields = sorted({str(err["loc"][0]) for err in e.errors() if err["loc"]})
        raise MalformedMessageError(
            f"invalid or missing payload field(s) for '{message.type}': {', '.join(fields)}"
        )


class ControlProtocolHandler:
    """Dispatches control messages for one connection."""

    def __init__(
        self,
        registry: SessionRegistry,
        supervisor: ProcessSupervisor,
        relay: OutputRelay,
        settings: Optional[Settings] = None,
    ):
        self.registry = registry
        self.supervisor = supervisor
        self.relay = relay
        self.settings = settings or get_settings()

        self._handlers = {
            MessageType.OPEN_NEW_SHELL.value: self._open_new_shell,
            MessageType.RUN_COMMAND.value: self._run_command,
            MessageType.SWITCH_TO_SHELL.value: self._switch_to_shell,
            MessageType.CLOSE_SHELL.value: self._close_shell,
            MessageType.LIST_SHELLS.value: self._list_shells,
            MessageType.GET_HISTORY.value: self._get_history,
        }

    async def handle_frame(self, frame: Frame) -> None:
        """Handle one framed message, replying with exactly one observation on failure."""
        if frame.oversized:
            error = MalformedMessageError(
                f"message exceeds {self.settings.max_message_bytes} bytes"
            )
            logger.warning("Oversized control message discarded", limit=self.settings.max_message_bytes)
            self.relay.send(error.observation)
            return

        message_type = "unknown"
        try:
            message = parse_message(frame.data)
            message_type = message.type
            await self.dispatch(message)
        except UnsupportedMessageType as e:
            logger.warning("Unsupported message type", message_type=e.message_type)
            if self.settings.reply_to_unknown_types:
                self.relay.send(e.observation)
        except BrokerError as e:
            logger.info("Control message rejected", message_type=message_type, error=str(e))
            self.relay.send(e.observation)
        except Exception:
            logger.error("Error handling control message", message_type=message_type, exc_info=True)
            self.relay.send(f"observation: internal error while handling '{message_type}'")

    async def dispatch(self, message: ControlMessage) -> None:
        handler = self._handlers.get(message.type)
        if handler is None:
            raise UnsupportedMessageType(message.type)
        logger.debug("Handling control message", message_type=message.type)
        await handler(message)

    async def _open_new_shell(self, message: ControlMessage) -> None:
        payload = parse_payload(message, OpenShellPayload)
        session_id = await self.registry.create(
            payload.shellID,
            payload.shellPath,
            payload.shellArgs,
        )
        self.relay.send(
            f"observation: created and shell with ID {session_id} and made it the active shell."
        )

    async def _run_command(self, message: ControlMessage) -> None:
        session = self.registry.active_session()
        if session is None:
            raise NoActiveSessionError()
        payload = parse_payload(message, RunCommandPayload)
        self.supervisor.write_input(session, payload.command.encode("utf-8"))

    async def _switch_to_shell(self, message: ControlMessage) -> None:
        payload = parse_payload(message, SwitchShellPayload)
        self.registry.switch_active(payload.id)
        # The unbalanced quote is part of the established reply text.
        self.relay.send(f"observation: switched to shell '{payload.id}")

    async def _close_shell(self, message: ControlMessage) -> None:
        payload = parse_payload(message, CloseShellPayload)
        session_id = payload.id or self.registry.active_session_id
        if session_id is None:
            raise NoActiveSessionError()
        await self.registry.close(session_id)
        self.relay.send(f"observation: closed shell '{session_id}'")

    async def _list_shells(self, message: ControlMessage) -> None:
        sessions = self.registry.list_all()
        if not sessions:
            raise NoActiveSessionError()

        active_id = self.registry.active_session_id
        entries = []
        for session in sessions:
            flags = [session.status]
            if session.id == active_id:
                flags.insert(0, "active")
            entries.append(f"{session.id} ({', '.join(flags)})")
        self.relay.send(f"observation: open shells: {', '.join(entries)}")

    async def _get_history(self, message: ControlMessage) -> None:
        payload = parse_payload(message, HistoryPayload)
        session_id = payload.id or self.registry.active_session_id
        if session_id is None:
            raise NoActiveSessionError()
        session = self.registry.get(session_id)
        if session is None:
            raise UnknownSessionError(session_id)
        self.relay.send(f"observation: history of shell '{session_id}':\n" + "".join(session.history))
