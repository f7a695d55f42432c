"""
shell-broker - a session-multiplexing shell broker.

Includes:
- BrokerServer: TCP control socket and connection lifecycle
- SessionRegistry: shells owned by a connection, plus the active pointer
- ProcessSupervisor: spawns shells and relays their events
- ControlProtocolHandler: parses and dispatches control messages
"""

from .config import Settings, get_settings
from .models import Session
from .process import ProcessHandle, ProcessSupervisor, SubprocessHandle
from .protocol import ControlProtocolHandler, MessageFramer
from .registry import SessionRegistry
from .relay import OutputRelay
from .server import BrokerServer

__version__ = "0.1.0"

__all__ = [
    "BrokerServer",
    "ControlProtocolHandler",
    "MessageFramer",
    "OutputRelay",
    "ProcessHandle",
    "ProcessSupervisor",
    "Session",
    "SessionRegistry",
    "Settings",
    "SubprocessHandle",
    "get_settings",
]
