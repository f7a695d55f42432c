"""
Data models for shell-broker.

``Session`` is the passive record for one spawned shell. The pydantic
models describe the control messages accepted on the wire.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

if TYPE_CHECKING:
    from .process import ProcessHandle


class MessageType(str, Enum):
    """Control message types understood by the broker."""
    OPEN_NEW_SHELL = "openNewShell"
    RUN_COMMAND = "runCommand"
    SWITCH_TO_SHELL = "switchToShell"
    CLOSE_SHELL = "closeShell"
    LIST_SHELLS = "listShells"
    GET_HISTORY = "getHistory"


@dataclass
class Session:
    """One supervised shell plus the output it has produced."""

    id: str
    shell_path: str
    shell_args: list[str] = field(default_factory=list)
    process: ProcessHandle | None = None
    history: list[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    exit_code: int | None = None
    exit_signal: str | None = None

    @property
    def is_running(self) -> bool:
        """Whether the shell process is still alive."""
        return self.process is not None and self.process.is_running

    @property
    def status(self) -> str:
        if self.is_running:
            return "running"
        if self.exit_signal is not None:
            return f"killed by {self.exit_signal}"
        if self.exit_code is not None:
            return f"exited {self.exit_code}"
        return "stopped"


class ControlMessage(BaseModel):
    """Envelope of every inbound control message."""

    model_config = ConfigDict(extra="ignore")

    type: str = Field(min_length=1)
    payload: dict[str, Any] = Field(default_factory=dict)

    @field_validator("payload", mode="before")
    @classmethod
    def default_payload(cls, v: Any) -> Any:
        return {} if v is None else v


class OpenShellPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    shellID: str | None = Field(default=None, min_length=1)
    shellPath: str | None = Field(default=None, min_length=1)
    shellArgs: list[str] = Field(default_factory=list)


class RunCommandPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    command: str


class SwitchShellPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str


class CloseShellPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str | None = None


class HistoryPayload(BaseModel):
    """Defaults to the active shell when ``id`` is omitted."""

    model_config = ConfigDict(extra="ignore")

    id: str | None = None
