"""
Output relay - forwards shell events to the control connection.

Every line written to the peer is an observation. Output chunks are
tagged with the id of the shell that produced them, whichever shell is
currently active.
"""

from typing import Protocol

import structlog

logger = structlog.get_logger()

OBSERVATION_PREFIX = "observation:"


class Transport(Protocol):
    """The part of ``asyncio.StreamWriter`` the relay needs."""

    def write(self, data: bytes) -> None: ...

    def is_closing(self) -> bool: ...


def format_output(session_id: str, text: str) -> str:
    return f"{OBSERVATION_PREFIX} shell {session_id}:\n{text}"


def format_exited(session_id: str) -> str:
    return f"{OBSERVATION_PREFIX} shell '{session_id}' exited."


def format_signalled(session_id: str, signal: str) -> str:
    return f"{OBSERVATION_PREFIX} shell '{session_id}' terminated due to receipt of signal {signal}"


class OutputRelay:
    """Writes observations to one control connection."""

    def __init__(self, transport: Transport):
        self._transport = transport

    def send(self, observation: str) -> None:
        """Write one observation, newline-terminated. Never blocks."""
        if self._transport.is_closing():
            logger.debug("Dropping observation for closed connection", size=len(observation))
            return
        if not observation.endswith("\n"):
            observation += "\n"
        self._transport.write(observation.encode("utf-8"))

    def shell_output(self, session_id: str, text: str) -> None:
        self.send(format_output(session_id, text))

    def shell_exited(self, session_id: str) -> None:
        self.send(format_exited(session_id))

    def shell_signalled(self, session_id: str, signal: str) -> None:
        self.send(format_signalled(session_id, signal))
